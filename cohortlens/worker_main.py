"""
Worker Entry Point — runs in a separate container.

Usage:
    python -m cohortlens.worker_main

This does NOT run a web server. It consumes analysis jobs from the
durable queue (push notifications plus periodic poll) until SIGINT or
SIGTERM, then stops gracefully.
"""

import asyncio
import signal

import structlog

from cohortlens.config import settings
from cohortlens.db.engine import close_db, get_session_factory, init_db
from cohortlens.exceptions import RemoteCallError
from cohortlens.logging_config import configure_logging
from cohortlens.services.cache import AnalysisCache, close_redis
from cohortlens.services.encryption import GroupCipher
from cohortlens.services.insight_store import InsightStore
from cohortlens.services.job_queue import JobQueue
from cohortlens.services.llm_gateway import LLMGateway
from cohortlens.services.notifications import NotificationBus
from cohortlens.services.orchestrator import AnalysisOrchestrator
from cohortlens.services.profile_source import ProfileSource
from cohortlens.services.resilience import CircuitBreaker
from cohortlens.services.synthesis import NarrativeSynthesizer
from cohortlens.services.worker import JobQueueProcessor

logger = structlog.get_logger(__name__)


async def main():
    """Build the collaborators and run the job processor."""
    configure_logging(settings.log_level, settings.log_format)
    logger.info("worker_starting", version=settings.app_version, environment=settings.environment)

    await init_db()
    session_factory = get_session_factory()

    cache = AnalysisCache()
    bus = NotificationBus(redis_url=settings.redis_url)
    gateway = LLMGateway() if settings.synthesis_enabled else None
    breaker = CircuitBreaker(
        "narrative_synthesis",
        failure_threshold=settings.breaker_failure_threshold,
        recovery_timeout=settings.breaker_recovery_timeout,
        counted_exceptions=(RemoteCallError,),
    )
    synthesizer = NarrativeSynthesizer(breaker, gateway=gateway)

    insight_store = InsightStore(session_factory, cache=cache)
    orchestrator = AnalysisOrchestrator(
        profile_source=ProfileSource(session_factory, GroupCipher()),
        insight_store=insight_store,
        cache=cache,
        bus=bus,
        synthesizer=synthesizer,
    )
    queue = JobQueue(session_factory, bus=bus)
    processor = JobQueueProcessor(
        queue,
        orchestrator,
        bus=bus,
        insight_store=insight_store,
        synthesizer=synthesizer,
        cache=cache,
    )

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    await processor.start()
    logger.info("worker_running", synthesis_mode=synthesizer.mode)

    # Block until shutdown signal
    await stop_event.wait()

    # Cleanup
    await processor.stop(settings.queue_shutdown_timeout_seconds)
    await bus.close()
    if gateway is not None:
        await gateway.aclose()
    await close_redis()
    await close_db()
    logger.info("worker_shutdown_complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
