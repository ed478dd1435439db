"""
Job processor tests.

Tests: single launch per job across push and poll, concurrency cap,
retry state machine, lifecycle start/stop, scheduled maintenance.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from cohortlens.db.engine import close_db
from cohortlens.db.models import GroupInsight, utcnow
from cohortlens.schemas.job import JobStatus
from cohortlens.services.health import DEGRADED, HEALTHY
from cohortlens.services.insight_store import InsightStore
from cohortlens.services.job_queue import JobQueue
from cohortlens.services.llm_gateway import LLMGateway
from cohortlens.services.resilience import CircuitBreaker
from cohortlens.services.synthesis import NarrativeSynthesizer
from cohortlens.services.worker import JobQueueProcessor
from factories import analysis_result


class ScriptedOrchestrator:
    """Stands in for AnalysisOrchestrator; blocks until released."""

    def __init__(self, failures: int = 0, error: Exception = None, block: bool = True):
        self.release = asyncio.Event()
        if not block:
            self.release.set()
        self.failures = failures
        self.error = error or RuntimeError("boom")
        self.calls: list = []
        self.active = 0
        self.peak = 0

    async def analyze_group(self, group_id, options=None):
        self.calls.append((group_id, options))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release.wait()
            if len(self.calls) <= self.failures:
                raise self.error
            return analysis_result(group_id)
        finally:
            self.active -= 1


def processor_for(queue, orchestrator, **kwargs) -> JobQueueProcessor:
    kwargs.setdefault("max_concurrent", 3)
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("retry_delay_seconds", 0)
    processor = JobQueueProcessor(queue, orchestrator, poll_interval_seconds=60, **kwargs)
    processor.accepting = True
    return processor


async def drain(processor: JobQueueProcessor) -> None:
    await processor.poll_once()
    await processor.wait_idle()


# ── Exclusion ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestSingleLaunch:
    async def test_push_then_poll_runs_once(self, session_factory):
        """A job seen by both discovery paths is analyzed once."""
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "profile_shared")
        orchestrator = ScriptedOrchestrator()
        processor = processor_for(queue, orchestrator)

        await processor.handle_notification({"job_id": job_id, "group_id": "g1"})
        assert await processor.poll_once() == 0
        assert processor.in_flight == frozenset({job_id})

        orchestrator.release.set()
        await processor.wait_idle()
        assert len(orchestrator.calls) == 1
        assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED

    async def test_repeated_notifications(self, session_factory):
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "profile_shared")
        orchestrator = ScriptedOrchestrator()
        processor = processor_for(queue, orchestrator)

        for _ in range(3):
            await processor.handle_notification({"job_id": job_id})
        orchestrator.release.set()
        await processor.wait_idle()
        assert len(orchestrator.calls) == 1

    async def test_completed_job_not_rerun(self, session_factory):
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "profile_shared")
        orchestrator = ScriptedOrchestrator(block=False)
        processor = processor_for(queue, orchestrator)

        await drain(processor)
        await processor.handle_notification({"job_id": job_id})
        await processor.wait_idle()
        assert len(orchestrator.calls) == 1

    async def test_ignores_malformed_notification(self, session_factory):
        processor = processor_for(JobQueue(session_factory), ScriptedOrchestrator())
        await processor.handle_notification({"group_id": "g1"})
        assert processor.in_flight == frozenset()


# ── Capacity ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestCapacity:
    async def test_never_exceeds_max_concurrent(self, session_factory):
        queue = JobQueue(session_factory)
        job_ids = [await queue.enqueue(f"g{i}", "t") for i in range(5)]
        orchestrator = ScriptedOrchestrator()
        processor = processor_for(queue, orchestrator, max_concurrent=2)

        assert await processor.poll_once() == 2
        await processor.handle_notification({"job_id": job_ids[4]})
        assert len(processor.in_flight) == 2
        assert await processor.poll_once() == 0

        orchestrator.release.set()
        await processor.wait_idle()
        await drain(processor)
        await drain(processor)

        assert orchestrator.peak <= 2
        assert len(orchestrator.calls) == 5
        for job_id in job_ids:
            assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED

    async def test_priority_order(self, session_factory):
        queue = JobQueue(session_factory)
        await queue.enqueue("low", "t", priority=1)
        await queue.enqueue("high", "t", priority=9)
        orchestrator = ScriptedOrchestrator(block=False)
        processor = processor_for(queue, orchestrator, max_concurrent=1)

        await drain(processor)
        assert orchestrator.calls[0][0] == "high"

    async def test_runs_with_forced_refresh(self, session_factory):
        queue = JobQueue(session_factory)
        await queue.enqueue("g1", "t")
        orchestrator = ScriptedOrchestrator(block=False)
        await drain(processor_for(queue, orchestrator))
        assert orchestrator.calls[0][1].force_refresh is True


# ── Retry state machine ───────────────────────────────────────────────────


@pytest.mark.asyncio
class TestRetries:
    async def test_failure_then_success(self, session_factory):
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "t")
        orchestrator = ScriptedOrchestrator(failures=1, block=False)
        processor = processor_for(queue, orchestrator)

        await drain(processor)
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 1
        assert job.last_error == "boom"

        await drain(processor)
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.retry_count == 1
        assert job.result_summary["analysis_id"] == "analysis-1"

    async def test_exhausted_retries_fail_terminally(self, session_factory):
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "t")
        orchestrator = ScriptedOrchestrator(failures=10, block=False)
        processor = processor_for(queue, orchestrator, max_retries=2)

        await drain(processor)
        await drain(processor)
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 2

        await drain(processor)
        assert len(orchestrator.calls) == 2

    async def test_retry_waits_for_delay(self, session_factory):
        queue = JobQueue(session_factory)
        await queue.enqueue("g1", "t")
        orchestrator = ScriptedOrchestrator(failures=1, block=False)
        processor = processor_for(queue, orchestrator, retry_delay_seconds=600)

        await drain(processor)
        assert await processor.poll_once() == 0
        assert len(orchestrator.calls) == 1

    async def test_error_without_message_records_type(self, session_factory):
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "t")
        orchestrator = ScriptedOrchestrator(failures=1, error=TimeoutError(), block=False)
        await drain(processor_for(queue, orchestrator))
        assert (await queue.get_job(job_id)).last_error == "TimeoutError"


# ── Lifecycle ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_polls_and_stop_reports_stragglers(self, session_factory):
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "t")
        orchestrator = ScriptedOrchestrator()
        processor = JobQueueProcessor(queue, orchestrator, poll_interval_seconds=60, max_concurrent=2)

        await processor.start()
        assert processor.scheduler.get_job("queue_poll") is not None
        assert processor.in_flight == frozenset({job_id})

        remaining = await processor.stop(timeout=0.05)
        assert remaining == [job_id]
        assert processor.accepting is False

        late = await queue.enqueue("g2", "t")
        await processor.handle_notification({"job_id": late})
        assert await processor.poll_once() == 0

        orchestrator.release.set()
        await processor.wait_idle()
        assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED
        assert (await queue.get_job(late)).status == JobStatus.PENDING

    async def test_stop_when_idle(self, session_factory):
        processor = JobQueueProcessor(JobQueue(session_factory), ScriptedOrchestrator(), poll_interval_seconds=60)
        await processor.start()
        assert await processor.stop(timeout=1) == []

    async def test_log_stats(self, session_factory):
        processor = processor_for(JobQueue(session_factory), ScriptedOrchestrator())
        await processor.log_stats()


# ── Maintenance ───────────────────────────────────────────────────────────


class FailingStore:
    async def cleanup_old(self, days=None):
        raise RuntimeError("database is gone")


@pytest.mark.asyncio
class TestMaintenance:
    async def test_start_schedules_maintenance(self, session_factory):
        processor = JobQueueProcessor(
            JobQueue(session_factory),
            ScriptedOrchestrator(),
            poll_interval_seconds=60,
            insight_store=InsightStore(session_factory),
        )
        await processor.start()
        try:
            assert processor.scheduler.get_job("insight_cleanup") is not None
            assert processor.scheduler.get_job("health_report") is not None
        finally:
            await processor.stop(timeout=1)

    async def test_cleanup_without_store_is_not_scheduled(self, session_factory):
        processor = JobQueueProcessor(JobQueue(session_factory), ScriptedOrchestrator(), poll_interval_seconds=60)
        await processor.start()
        try:
            assert processor.scheduler.get_job("insight_cleanup") is None
        finally:
            await processor.stop(timeout=1)
        assert await processor.cleanup_insights() == 0

    async def test_cleanup_removes_stale_insights(self, session_factory):
        store = InsightStore(session_factory)
        await store.save_analysis(analysis_result("g1"))
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(GroupInsight).values(generated_at=utcnow() - timedelta(days=400))
                )
        processor = processor_for(JobQueue(session_factory), ScriptedOrchestrator(), insight_store=store)

        assert await processor.cleanup_insights() == 5
        assert await store.get_latest("g1") is None

    async def test_cleanup_failure_is_contained(self, session_factory):
        processor = processor_for(JobQueue(session_factory), ScriptedOrchestrator(), insight_store=FailingStore())
        assert await processor.cleanup_insights() == 0

    async def test_health_report(self, session_factory, cache):
        cb = CircuitBreaker("synthesis-test", failure_threshold=1)
        synthesizer = NarrativeSynthesizer(cb, gateway=LLMGateway(endpoint="http://synthesis.test"), enabled=True)
        processor = processor_for(
            JobQueue(session_factory), ScriptedOrchestrator(), synthesizer=synthesizer, cache=cache
        )
        try:
            assert await processor.report_health() == HEALTHY
            cb._on_failure(RuntimeError("down"))
            assert await processor.report_health() == DEGRADED
        finally:
            await close_db()
