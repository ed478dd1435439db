"""
Job Queue Processor — consumes analysis jobs with bounded concurrency.

Two discovery paths feed the same launcher:
- push: a queue notification names one job, started at once if capacity allows
- poll: every few seconds, up to (max_concurrent - running) due pending jobs,
  highest priority first, then oldest first

A job ID in the in-flight map is never started twice. The membership check
and the insert happen with no await in between, so both paths can observe
the same job and only one launches it. Across processes the conditional
pending → processing claim plays the same role.

Jobs beyond the cap stay pending until a later tick.

The same scheduler also runs maintenance: deleting insight rows past the
retention window and logging a health report of the pipeline components.
"""

import asyncio
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cohortlens.config import settings
from cohortlens.schemas.analysis import AnalysisOptions
from cohortlens.services.cache import AnalysisCache
from cohortlens.services.health import (
    HEALTHY,
    check_cache,
    check_database,
    check_queue,
    check_synthesizer,
    overall_status,
)
from cohortlens.services.insight_store import InsightStore
from cohortlens.services.job_queue import JobQueue
from cohortlens.services.notifications import NotificationBus
from cohortlens.services.orchestrator import AnalysisOrchestrator
from cohortlens.services.synthesis import NarrativeSynthesizer

logger = structlog.get_logger(__name__)


class JobQueueProcessor:
    """Background worker driving the job lifecycle."""

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: AnalysisOrchestrator,
        bus: Optional[NotificationBus] = None,
        max_concurrent: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        stats_interval_seconds: Optional[int] = None,
        channel: Optional[str] = None,
        insight_store: Optional[InsightStore] = None,
        synthesizer: Optional[NarrativeSynthesizer] = None,
        cache: Optional[AnalysisCache] = None,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.bus = bus
        self.max_concurrent = max_concurrent or settings.queue_max_concurrent
        self.max_retries = settings.queue_max_retries if max_retries is None else max_retries
        self.retry_delay_seconds = (
            settings.queue_retry_delay_seconds if retry_delay_seconds is None else retry_delay_seconds
        )
        self.poll_interval_seconds = poll_interval_seconds or settings.queue_poll_interval_seconds
        self.stats_interval_seconds = stats_interval_seconds or settings.stats_log_interval_seconds
        self.channel = channel or settings.queue_channel
        self.options = AnalysisOptions(force_refresh=True)

        # maintenance only
        self.insight_store = insight_store
        self.synthesizer = synthesizer
        self.cache = cache

        self.running: dict[str, asyncio.Task] = {}
        self.accepting = False
        self.scheduler = AsyncIOScheduler()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self.running)

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        self.accepting = True
        if self.bus is not None:
            await self.bus.subscribe(self.channel, self.handle_notification)

        self.scheduler.add_job(
            self.poll_once,
            IntervalTrigger(seconds=self.poll_interval_seconds),
            id="queue_poll",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.log_stats,
            IntervalTrigger(seconds=self.stats_interval_seconds),
            id="queue_stats",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.report_health,
            IntervalTrigger(seconds=settings.health_log_interval_seconds),
            id="health_report",
            max_instances=1,
            replace_existing=True,
        )
        if self.insight_store is not None:
            self.scheduler.add_job(
                self.cleanup_insights,
                IntervalTrigger(hours=settings.insight_cleanup_interval_hours),
                id="insight_cleanup",
                max_instances=1,
                replace_existing=True,
            )
        self.scheduler.start()
        logger.info(
            "job_processor_started",
            max_concurrent=self.max_concurrent,
            poll_interval=self.poll_interval_seconds,
            max_retries=self.max_retries,
        )
        await self.poll_once()

    async def stop(self, timeout: Optional[float] = None) -> list[str]:
        """
        Stop accepting jobs and wait up to `timeout` for in-flight ones.

        Returns the IDs still running at the deadline; they are reported,
        not cancelled.
        """
        timeout = settings.queue_shutdown_timeout_seconds if timeout is None else timeout
        self.accepting = False
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        tasks = list(self.running.values())
        logger.info("job_processor_stopping", in_flight=len(tasks), timeout=timeout)
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

        remaining = sorted(job_id for job_id, task in self.running.items() if not task.done())
        if remaining:
            logger.warning("shutdown_jobs_still_running", job_ids=remaining, timeout=timeout)
        logger.info("job_processor_stopped")
        return remaining

    async def wait_idle(self) -> None:
        """Wait until every in-flight job has settled."""
        while self.running:
            await asyncio.gather(*list(self.running.values()), return_exceptions=True)
            # let done callbacks prune the map
            await asyncio.sleep(0)

    # ── Discovery ────────────────────────────────────────────────────────

    async def handle_notification(self, message: dict) -> None:
        """Push path: start the named job now if there is capacity."""
        job_id = message.get("job_id")
        if not job_id or not self.accepting:
            return
        if len(self.running) >= self.max_concurrent:
            logger.info("job_deferred_to_poll", job_id=job_id, running=len(self.running))
            return
        self._launch(str(job_id))

    async def poll_once(self) -> int:
        """Poll path: fill free slots with due pending jobs."""
        if not self.accepting:
            return 0
        capacity = self.max_concurrent - len(self.running)
        if capacity <= 0:
            return 0

        try:
            # Over-fetch by the in-flight count: pushed jobs may not be claimed yet
            job_ids = await self.queue.fetch_pending(capacity + len(self.running))
        except Exception as e:
            logger.error("queue_poll_failed", error=str(e))
            return 0

        launched = 0
        for job_id in job_ids:
            if len(self.running) >= self.max_concurrent:
                break
            if self._launch(job_id):
                launched += 1
        if launched:
            logger.info("queue_poll_launched", launched=launched, running=len(self.running))
        return launched

    def _launch(self, job_id: str) -> bool:
        if job_id in self.running:
            logger.debug("job_already_running", job_id=job_id)
            return False
        task = asyncio.create_task(self._process(job_id), name=f"analysis-job-{job_id}")
        self.running[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self.running.pop(jid, None))
        return True

    # ── Execution ────────────────────────────────────────────────────────

    async def _process(self, job_id: str) -> None:
        try:
            job = await self.queue.claim(job_id)
            if job is None:
                logger.debug("job_not_claimable", job_id=job_id)
                return

            log = logger.bind(job_id=job_id, group_id=job.group_id, attempt=job.retry_count + 1)
            log.info("job_processing", trigger=job.trigger_event)
            try:
                result = await self.orchestrator.analyze_group(job.group_id, self.options)
            except Exception as e:
                log.warning("job_attempt_failed", error=str(e), error_type=type(e).__name__)
                await self.queue.mark_failed_attempt(
                    job_id,
                    str(e) or type(e).__name__,
                    max_retries=self.max_retries,
                    retry_delay_seconds=self.retry_delay_seconds,
                )
                return

            await self.queue.mark_completed(
                job_id,
                {
                    "analysis_id": result.analysis_id,
                    "overall_confidence": round(result.metadata.overall_confidence, 4),
                    "processing_time_ms": result.metadata.processing_time_ms,
                },
            )
        except Exception as e:
            logger.error("job_processing_error", job_id=job_id, error=str(e))

    async def log_stats(self) -> None:
        try:
            stats = await self.queue.queue_stats()
        except Exception as e:
            logger.error("queue_stats_failed", error=str(e))
            return
        logger.info("queue_stats", in_flight=len(self.running), **stats.model_dump())

    # ── Maintenance ──────────────────────────────────────────────────────

    async def cleanup_insights(self) -> int:
        """Delete insight rows older than the retention window."""
        if self.insight_store is None:
            return 0
        try:
            return await self.insight_store.cleanup_old()
        except Exception as e:
            logger.error("insight_cleanup_failed", error=str(e), error_type=type(e).__name__)
            return 0

    async def report_health(self) -> str:
        components = [await check_database(), await check_queue(self.queue)]
        if self.synthesizer is not None:
            components.append(check_synthesizer(self.synthesizer))
        if self.cache is not None:
            components.append(await check_cache(self.cache))

        status = overall_status(components)
        log = logger.info if status == HEALTHY else logger.warning
        log(
            "health_report",
            status=status,
            components={c.name: c.status for c in components},
            in_flight=len(self.running),
        )
        return status
