"""
Health checks for the analysis pipeline components.

Each check returns a ComponentHealth with status healthy, degraded or
unhealthy:
- synthesizer: mode plus circuit state and failure count; an OPEN or
  HALF_OPEN breaker is degraded (template fallback is serving)
- queue: pending / processing / failed-last-hour / average processing
  time; a DB error is unhealthy, failures or backlog over limit degraded
- cache: redis ping; unreachable is degraded (analysis still runs uncached)
- database: SELECT 1 through a session; any error is unhealthy
"""

import time
from typing import AsyncContextManager, Callable, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from cohortlens.config import settings
from cohortlens.db.engine import get_db_session
from cohortlens.services.cache import AnalysisCache
from cohortlens.services.job_queue import JobQueue
from cohortlens.services.resilience import CircuitState
from cohortlens.services.synthesis import NarrativeSynthesizer

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

_STATUS_RANK = {HEALTHY: 0, DEGRADED: 1, UNHEALTHY: 2}


class ComponentHealth(BaseModel):
    """Health status of a component."""

    name: str
    status: str  # healthy, degraded, unhealthy
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    details: Optional[dict] = None


def check_synthesizer(synthesizer: NarrativeSynthesizer) -> ComponentHealth:
    details = synthesizer.health()
    state = synthesizer.breaker.state
    if synthesizer.mode == "remote" and state != CircuitState.CLOSED:
        return ComponentHealth(
            name="synthesizer",
            status=DEGRADED,
            message=f"Circuit {state.value}; template fallback active",
            details=details,
        )
    return ComponentHealth(name="synthesizer", status=HEALTHY, details=details)


async def check_queue(
    queue: JobQueue,
    backlog_warning: Optional[int] = None,
    failure_warning: Optional[int] = None,
) -> ComponentHealth:
    if backlog_warning is None:
        backlog_warning = settings.queue_backlog_warning
    if failure_warning is None:
        failure_warning = settings.queue_failure_warning

    start = time.perf_counter()
    try:
        stats = await queue.queue_stats()
    except Exception as e:
        logger.error("queue_health_check_failed", error=str(e))
        return ComponentHealth(
            name="job_queue",
            status=UNHEALTHY,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
            message=f"Database error: {str(e)[:100]}",
        )

    latency = round((time.perf_counter() - start) * 1000, 2)
    problems = []
    if stats.failed_last_hour > failure_warning:
        problems.append(f"{stats.failed_last_hour} jobs failed in the last hour")
    if stats.pending > backlog_warning:
        problems.append(f"{stats.pending} jobs pending")
    return ComponentHealth(
        name="job_queue",
        status=DEGRADED if problems else HEALTHY,
        latency_ms=latency,
        message="; ".join(problems) or None,
        details=stats.model_dump(),
    )


async def check_cache(cache: AnalysisCache) -> ComponentHealth:
    start = time.perf_counter()
    ok = await cache.ping()
    latency = round((time.perf_counter() - start) * 1000, 2)
    if ok:
        return ComponentHealth(name="cache", status=HEALTHY, latency_ms=latency)
    return ComponentHealth(
        name="cache",
        status=DEGRADED,
        latency_ms=latency,
        message="Redis unreachable; results are not cached",
    )


async def check_database(
    session_provider: Callable[[], AsyncContextManager[AsyncSession]] = get_db_session,
) -> ComponentHealth:
    start = time.perf_counter()
    try:
        async with session_provider() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return ComponentHealth(
            name="database",
            status=UNHEALTHY,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
            message=f"Database error: {str(e)[:100]}",
        )
    return ComponentHealth(
        name="database",
        status=HEALTHY,
        latency_ms=round((time.perf_counter() - start) * 1000, 2),
    )


def overall_status(components: list[ComponentHealth]) -> str:
    """Worst status across components; healthy when there are none."""
    worst = HEALTHY
    for component in components:
        if _STATUS_RANK.get(component.status, 2) > _STATUS_RANK[worst]:
            worst = component.status
    return worst
