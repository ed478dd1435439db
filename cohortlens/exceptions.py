"""
CohortLens Exceptions.

Centralized exception definitions with:
- Error codes for operator and caller handling
- Structured details for logs and job records
- Remote-call classification (retryable vs. not)

Propagation:
- InsufficientDataError → returned to caller, analysis not attempted
- EngineFailure → logged by the orchestrator, insight block omitted
- SynthesisFailure → surfaced to the job, eligible for job-level retry
- PersistenceFailure → logged, never invalidates a computed result
- DecryptionFailure → per member row, data treated as absent
"""

from enum import Enum
from typing import Any, Dict, Optional


# ============================================================================
# ERROR CODES
# ============================================================================


class ErrorCode(str, Enum):
    """Application error codes."""

    # General errors (1xxx)
    INTERNAL_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    NOT_FOUND = "E1002"

    # Analysis errors (2xxx)
    INSUFFICIENT_DATA = "E2000"
    ENGINE_FAILURE = "E2001"

    # External service errors (5xxx)
    SYNTHESIS_FAILURE = "E5000"
    CIRCUIT_BREAKER_OPEN = "E5001"
    REMOTE_TRANSIENT = "E5002"
    REMOTE_REJECTED = "E5003"

    # Data errors (6xxx)
    PERSISTENCE_FAILURE = "E6000"
    DECRYPTION_FAILURE = "E6001"


# ============================================================================
# BASE EXCEPTION
# ============================================================================


class CohortLensError(Exception):
    """Base exception for CohortLens."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# ANALYSIS EXCEPTIONS
# ============================================================================


class InsufficientDataError(CohortLensError):
    """Fewer than the minimum number of members have shared data."""

    def __init__(self, group_id: str, member_count: int, required: int = 2):
        super().__init__(
            message=(
                f"Insufficient member data for analysis of group {group_id}: "
                f"{member_count} member(s), minimum {required} required"
            ),
            code=ErrorCode.INSUFFICIENT_DATA,
            details={
                "group_id": group_id,
                "member_count": member_count,
                "required": required,
            },
        )


class EngineFailure(CohortLensError):
    """A single scoring engine raised during an analysis run."""

    def __init__(self, engine: str, cause: BaseException):
        super().__init__(
            message=f"Engine '{engine}' failed: {cause}",
            code=ErrorCode.ENGINE_FAILURE,
            details={"engine": engine, "error_type": type(cause).__name__},
        )
        self.engine = engine
        self.cause = cause


class SynthesisFailure(CohortLensError):
    """Remote synthesis exhausted retries or returned an invalid response."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.SYNTHESIS_FAILURE,
            details=details,
        )


class PersistenceFailure(CohortLensError):
    """A store write failed."""

    def __init__(self, operation: str, group_id: str, cause: BaseException):
        super().__init__(
            message=f"Persistence failed during {operation} for group {group_id}: {cause}",
            code=ErrorCode.PERSISTENCE_FAILURE,
            details={"operation": operation, "group_id": group_id},
        )


class DecryptionFailure(CohortLensError):
    """Ciphertext failed integrity verification for a member."""

    def __init__(self, user_id: str, group_id: str, reason: str = "integrity check failed"):
        super().__init__(
            message=f"Decryption failed for user {str(user_id)[:8]} in group {group_id}: {reason}",
            code=ErrorCode.DECRYPTION_FAILURE,
            details={"user_id": user_id, "group_id": group_id},
        )


class JobNotFoundError(CohortLensError):
    """Analysis job does not exist."""

    def __init__(self, job_id: str):
        super().__init__(
            message=f"Analysis job not found: {job_id}",
            code=ErrorCode.NOT_FOUND,
            details={"job_id": job_id},
        )


# ============================================================================
# REMOTE CALL CLASSIFICATION
# ============================================================================


class RemoteCallError(CohortLensError):
    """Base for errors raised by the remote synthesis endpoint."""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message=message,
            code=code,
            details={"status_code": status_code} if status_code is not None else {},
        )
        self.status_code = status_code


class TransientRemoteError(RemoteCallError):
    """Timeout, transport error, HTTP 5xx or 429. Retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, ErrorCode.REMOTE_TRANSIENT, status_code)


class RemoteRequestError(RemoteCallError):
    """HTTP 4xx other than 429. Not retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, ErrorCode.REMOTE_REJECTED, status_code)
