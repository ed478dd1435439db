"""Pydantic schemas for analysis jobs."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalysisJobView(BaseModel):
    id: str
    group_id: str
    analysis_type: str
    trigger_event: Optional[str]
    priority: int
    status: JobStatus
    retry_count: int
    next_retry_at: Optional[datetime]
    last_error: Optional[str]
    result_summary: Optional[dict]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    model_config = {"from_attributes": True}


class QueueStats(BaseModel):
    pending: int
    processing: int
    failed_last_hour: int
    completed_last_hour: int
    avg_processing_seconds: Optional[float]
