"""
Durable analysis job queue.

Jobs live in analysis_jobs. The row is the source of truth; the pub/sub
notification published after enqueue is only a wake-up hint, so losing it
never loses the job (the poll finds it).

Lifecycle:
    pending → processing → completed
    processing → pending      (failure, retries remaining, next_retry_at set)
    processing → failed       (failure, retries exhausted; terminal)
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cohortlens.config import settings
from cohortlens.db.models import AnalysisJob, utcnow
from cohortlens.exceptions import JobNotFoundError
from cohortlens.schemas.job import AnalysisJobView, JobStatus, QueueStats
from cohortlens.services.notifications import NotificationBus

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 2000


class JobQueue:
    """Enqueue, claim and settle analysis jobs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: Optional[NotificationBus] = None,
        channel: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.bus = bus
        self.channel = channel or settings.queue_channel

    async def enqueue(
        self,
        group_id: str,
        trigger_event: str,
        priority: int = 5,
        analysis_type: str = "full_analysis",
    ) -> str:
        """Persist a pending job, then publish a best-effort wake-up."""
        async with self.session_factory() as session:
            async with session.begin():
                job = AnalysisJob(
                    group_id=group_id,
                    analysis_type=analysis_type,
                    trigger_event=trigger_event,
                    priority=priority,
                    status=JobStatus.PENDING.value,
                    retry_count=0,
                )
                session.add(job)
                await session.flush()
                job_id = job.id

        logger.info(
            "job_enqueued",
            job_id=job_id,
            group_id=group_id,
            trigger=trigger_event,
            priority=priority,
        )

        if self.bus is not None:
            published = await self.bus.publish(
                self.channel,
                {"job_id": job_id, "group_id": group_id, "priority": priority},
            )
            if not published:
                logger.warning("job_notification_not_published", job_id=job_id)
        return job_id

    async def get_job(self, job_id: str) -> AnalysisJobView:
        async with self.session_factory() as session:
            job = await session.get(AnalysisJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return AnalysisJobView.model_validate(job)

    async def claim(self, job_id: str, now: Optional[datetime] = None) -> Optional[AnalysisJobView]:
        """
        Move a job from pending to processing.

        The update is conditional on the row still being pending and due,
        so a second worker process racing for the same row gets None.
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(AnalysisJob)
                    .where(
                        AnalysisJob.id == job_id,
                        AnalysisJob.status == JobStatus.PENDING.value,
                        or_(AnalysisJob.next_retry_at.is_(None), AnalysisJob.next_retry_at <= now),
                    )
                    .values(status=JobStatus.PROCESSING.value, started_at=now)
                )
                if result.rowcount != 1:
                    return None
                job = await session.get(AnalysisJob, job_id)
                return AnalysisJobView.model_validate(job)

    async def mark_completed(self, job_id: str, summary: dict) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(AnalysisJob)
                    .where(AnalysisJob.id == job_id)
                    .values(
                        status=JobStatus.COMPLETED.value,
                        completed_at=utcnow(),
                        result_summary=summary,
                        last_error=None,
                        next_retry_at=None,
                    )
                )
        logger.info("job_completed", job_id=job_id, **summary)

    async def mark_failed_attempt(
        self,
        job_id: str,
        error: str,
        max_retries: int,
        retry_delay_seconds: float,
        now: Optional[datetime] = None,
    ) -> JobStatus:
        """
        Record one failed attempt.

        While the incremented retry count is below max_retries the job goes
        back to pending with next_retry_at = now + delay; otherwise it is
        marked failed with the error kept verbatim.
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                job = await session.get(AnalysisJob, job_id)
                if job is None:
                    raise JobNotFoundError(job_id)
                job.retry_count += 1
                job.last_error = error[:MAX_ERROR_LENGTH]
                if job.retry_count < max_retries:
                    job.status = JobStatus.PENDING.value
                    job.next_retry_at = now + timedelta(seconds=retry_delay_seconds)
                else:
                    job.status = JobStatus.FAILED.value
                    job.completed_at = now
                    job.next_retry_at = None
                status = JobStatus(job.status)
                retry_count = job.retry_count

        if status == JobStatus.FAILED:
            logger.error("job_failed", job_id=job_id, retry_count=retry_count, error=error)
        else:
            logger.warning(
                "job_retry_scheduled",
                job_id=job_id,
                retry_count=retry_count,
                delay_seconds=retry_delay_seconds,
                error=error,
            )
        return status

    async def fetch_pending(self, limit: int, now: Optional[datetime] = None) -> list[str]:
        """Due pending job IDs, highest priority first, then oldest first."""
        if limit <= 0:
            return []
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                select(AnalysisJob.id)
                .where(
                    AnalysisJob.status == JobStatus.PENDING.value,
                    or_(AnalysisJob.next_retry_at.is_(None), AnalysisJob.next_retry_at <= now),
                )
                .order_by(AnalysisJob.priority.desc(), AnalysisJob.created_at.asc())
                .limit(limit)
            )
            return [row[0] for row in result.all()]

    async def queue_stats(self, now: Optional[datetime] = None) -> QueueStats:
        now = now or utcnow()
        hour_ago = now - timedelta(hours=1)
        async with self.session_factory() as session:
            counts = dict(
                (
                    await session.execute(
                        select(AnalysisJob.status, func.count())
                        .where(
                            AnalysisJob.status.in_(
                                [JobStatus.PENDING.value, JobStatus.PROCESSING.value]
                            )
                        )
                        .group_by(AnalysisJob.status)
                    )
                ).all()
            )
            failed = (
                await session.execute(
                    select(func.count()).where(
                        AnalysisJob.status == JobStatus.FAILED.value,
                        AnalysisJob.completed_at >= hour_ago,
                    )
                )
            ).scalar_one()
            finished = (
                await session.execute(
                    select(AnalysisJob.started_at, AnalysisJob.completed_at).where(
                        and_(
                            AnalysisJob.status == JobStatus.COMPLETED.value,
                            AnalysisJob.completed_at >= hour_ago,
                            AnalysisJob.started_at.is_not(None),
                        )
                    )
                )
            ).all()

        durations = [(done - started).total_seconds() for started, done in finished]
        return QueueStats(
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            failed_last_hour=failed,
            completed_last_hour=len(durations),
            avg_processing_seconds=round(sum(durations) / len(durations), 3) if durations else 0.0,
        )
