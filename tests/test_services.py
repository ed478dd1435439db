"""
Service tests.

Tests: retry and circuit breaker, encryption, legacy transform, profile
source merge, cache, notifications, LLM gateway error classification,
narrative synthesis, insight store, job queue, health.
"""

import asyncio
import json
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cohortlens.config import settings
from cohortlens.db.engine import close_db, create_tables, get_db_session, get_engine, get_session_factory
from cohortlens.db.models import AnalysisJob, GroupInsight, utcnow
from cohortlens.exceptions import (
    DecryptionFailure,
    JobNotFoundError,
    PersistenceFailure,
    RemoteCallError,
    RemoteRequestError,
    SynthesisFailure,
    TransientRemoteError,
)
from cohortlens.schemas.job import JobStatus
from cohortlens.services import legacy
from cohortlens.services.encryption import GroupCipher
from cohortlens.services.health import (
    DEGRADED,
    HEALTHY,
    UNHEALTHY,
    ComponentHealth,
    check_cache,
    check_database,
    check_queue,
    check_synthesizer,
    overall_status,
)
from cohortlens.services.insight_store import FULL_ANALYSIS, InsightStore
from cohortlens.services.job_queue import JobQueue
from cohortlens.services.llm_gateway import LLMGateway, extract_text
from cohortlens.services.notifications import NotificationBus
from cohortlens.services.profile_source import ProfileSource, parse_payload
from cohortlens.services.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    retry_with_backoff,
)
from cohortlens.services.synthesis import (
    NarrativeSynthesizer,
    build_prompt,
    parse_response,
    template_synthesis,
)
from factories import analysis_result, stored_payloads

ENDPOINT = "http://synthesis.test/v1/completions"

VALID_REPLY = {
    "overview": "A well balanced group.",
    "key_insights": ["Shared listening habits"],
    "recommendations": ["Agree on conflict ground rules"],
    "narratives": {
        "compatibility": "c",
        "strengths": "s",
        "challenges": "ch",
        "opportunities": "o",
    },
}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def gateway_for(handler) -> LLMGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LLMGateway(endpoint=ENDPOINT, api_key="test-key", model="m", timeout=5, client=client)


def breaker(clock=None) -> CircuitBreaker:
    return CircuitBreaker(
        "synthesis-test",
        failure_threshold=3,
        recovery_timeout=60,
        counted_exceptions=(RemoteCallError,),
        clock=clock or FakeClock(),
    )


# ── Resilience ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestRetryWithBackoff:
    async def test_exponential_delays(self):
        """Delays double from the base: 1s, 2s, 4s."""
        sleep = SleepRecorder()
        calls = 0

        async def fn():
            nonlocal calls
            calls += 1
            raise TransientRemoteError("flaky")

        with pytest.raises(TransientRemoteError):
            await retry_with_backoff(fn, max_retries=3, base_delay=1.0, jitter=0, sleep=sleep)
        assert calls == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    async def test_succeeds_after_retries(self):
        calls = 0

        async def fn():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientRemoteError("flaky")
            return "ok"

        result = await retry_with_backoff(fn, jitter=0, sleep=SleepRecorder())
        assert result == "ok"
        assert calls == 3

    async def test_unlisted_errors_not_retried(self):
        calls = 0

        async def fn():
            nonlocal calls
            calls += 1
            raise RemoteRequestError("bad request", status_code=400)

        with pytest.raises(RemoteRequestError):
            await retry_with_backoff(fn, retry_on=(TransientRemoteError,), sleep=SleepRecorder())
        assert calls == 1


@pytest.mark.asyncio
class TestCircuitBreaker:
    async def test_opens_after_threshold_and_fails_fast(self):
        cb = breaker()
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            raise TransientRemoteError("down")

        for _ in range(3):
            with pytest.raises(TransientRemoteError):
                await cb.call(failing)

        assert cb.state == CircuitState.OPEN
        assert cb.failure_count == 3
        with pytest.raises(CircuitOpenError):
            await cb.call(failing)
        assert calls == 3

    async def test_half_open_single_probe_then_closed(self):
        clock = FakeClock()
        cb = breaker(clock)

        async def failing():
            raise TransientRemoteError("down")

        for _ in range(3):
            with pytest.raises(TransientRemoteError):
                await cb.call(failing)

        clock.now = 61
        assert cb.state == CircuitState.HALF_OPEN
        assert not cb.is_open()

        release = asyncio.Event()
        probes = 0

        async def probe():
            nonlocal probes
            probes += 1
            await release.wait()
            return "ok"

        first = asyncio.create_task(cb.call(probe))
        await asyncio.sleep(0)
        assert cb.is_open()
        with pytest.raises(CircuitOpenError):
            await cb.call(probe)

        release.set()
        assert await first == "ok"
        assert probes == 1
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    async def test_failed_probe_reopens(self):
        clock = FakeClock()
        cb = breaker(clock)

        async def failing():
            raise TransientRemoteError("down")

        for _ in range(3):
            with pytest.raises(TransientRemoteError):
                await cb.call(failing)
        clock.now = 61
        with pytest.raises(TransientRemoteError):
            await cb.call(failing)
        assert cb.state == CircuitState.OPEN

    async def test_uncounted_errors_leave_counter(self):
        cb = breaker()

        async def broken():
            raise ValueError("not a remote failure")

        with pytest.raises(ValueError):
            await cb.call(broken)
        assert cb.failure_count == 0

    async def test_reset(self):
        cb = breaker()

        async def failing():
            raise TransientRemoteError("down")

        for _ in range(3):
            with pytest.raises(TransientRemoteError):
                await cb.call(failing)
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.snapshot()["failure_count"] == 0


# ── Encryption and profiles ───────────────────────────────────────────────


class TestGroupCipher:
    def test_round_trip(self, cipher):
        token = cipher.encrypt_for_user('{"a": 1}', "user-1", "group-1")
        assert cipher.decrypt_for_user(token, "user-1", "group-1") == b'{"a": 1}'

    def test_wrong_member_fails_closed(self, cipher):
        token = cipher.encrypt_for_user("secret", "user-1", "group-1")
        with pytest.raises(DecryptionFailure):
            cipher.decrypt_for_user(token, "user-2", "group-1")
        with pytest.raises(DecryptionFailure):
            cipher.decrypt_for_user(token, "user-1", "group-2")

    def test_garbage_token(self, cipher):
        with pytest.raises(DecryptionFailure):
            cipher.decrypt_for_user("not-a-token", "user-1", "group-1")

    def test_requires_master_key(self):
        with pytest.raises(ValueError):
            GroupCipher("")

    def test_derived_keys_stay_with_their_cipher(self):
        first = GroupCipher("master-key-one")
        second = GroupCipher("master-key-two")
        token = first.encrypt_for_user("secret", "user-1", "group-1")
        assert first.decrypt_for_user(token, "user-1", "group-1") == b"secret"
        with pytest.raises(DecryptionFailure):
            second.decrypt_for_user(token, "user-1", "group-1")


class TestLegacyTransform:
    def test_full_profile(self):
        payload = {
            "personality": {
                "bigFive": {"openness": 80, "conscientiousness": 60, "extraversion": 75},
                "mbti": "ENFP",
                "dominantTraits": ["curious"],
            },
            "collaboration": {"empathyLevel": "High"},
        }
        parsed = parse_payload("full_profile", payload)
        personality = parsed["personality"]
        assert personality.embedding == [0.8, 0.6, 0.75, 0.5, 0.5]
        assert personality.communication_style is None
        assert personality.conflict_style is None
        assert parsed["behavioral"].social_energy == 75.0
        assert parsed["behavioral"].empathy_level == 70.0
        assert parsed["cognitive"] is None
        assert parsed["values"].core == ["curious"]

    def test_legacy_cognitive_is_absent(self):
        assert parse_payload("cognitive", {"iqScore": 120}) == {"cognitive": None}

    def test_legacy_cognitive_keeps_learning_style(self):
        cognitive = parse_payload("cognitive", {"iqScore": 120, "learningStyle": "visual"})["cognitive"]
        assert cognitive.learning_style == "visual"
        assert cognitive.problem_solving_style is None

    def test_big_five_without_scores_has_no_embedding(self):
        assert legacy.big_five_embedding({"openness": "high"}) is None
        personality = parse_payload("personality", {"bigFive": {"openness": "high"}})["personality"]
        assert personality.embedding is None

    def test_empathy_labels(self):
        assert legacy.parse_empathy_level("very high") == 90.0
        assert legacy.parse_empathy_level(42) == 42.0
        assert legacy.parse_empathy_level("unmeasured") is None


@pytest.mark.asyncio
class TestProfileSource:
    async def test_newest_row_wins(self, session_factory, cipher, share):
        now = utcnow()
        payloads = stored_payloads()
        await share("g1", "u1", "personality", {**payloads["personality"], "communicationStyle": "indirect"},
                    shared_at=now - timedelta(hours=2))
        await share("g1", "u1", "personality", payloads["personality"], shared_at=now)
        await share("g1", "u2", "behavioral", payloads["behavioral"], shared_at=now)

        profiles = await ProfileSource(session_factory, cipher).fetch_member_profiles("g1")
        by_id = {p.member_id: p for p in profiles}
        assert set(by_id) == {"u1", "u2"}
        assert by_id["u1"].communication_style == "direct"
        assert by_id["u1"].behavioral is None
        assert by_id["u2"].social_energy == 55.0

    async def test_unreadable_row_dropped_alone(self, session_factory, cipher, share):
        payloads = stored_payloads()
        await share("g1", "u1", "personality", payloads["personality"])
        await share("g1", "u1", "behavioral", None, raw_token="corrupted-ciphertext")
        await share("g1", "u1", "values", None, raw_token=cipher.encrypt_for_user("{not json", "u1", "g1"))

        profiles = await ProfileSource(session_factory, cipher).fetch_member_profiles("g1")
        assert len(profiles) == 1
        assert profiles[0].personality is not None
        assert profiles[0].behavioral is None
        assert profiles[0].values is None

    async def test_other_group_rows_ignored(self, session_factory, cipher, share):
        await share("g2", "u1", "personality", stored_payloads()["personality"])
        assert await ProfileSource(session_factory, cipher).fetch_member_profiles("g1") == []


# ── Cache and notifications ───────────────────────────────────────────────


@pytest.mark.asyncio
class TestCacheAndBus:
    async def test_cache_round_trip_and_pattern_delete(self, cache, fake_redis):
        key = cache.analysis_key("g1")
        assert await cache.set(key, {"x": 1}, ttl_seconds=3600)
        assert fake_redis.ttls[key] == 3600
        assert await cache.get(key) == {"x": 1}
        assert await cache.delete_pattern(cache.group_pattern("g1")) == 1
        assert await cache.get(key) is None

    async def test_publish(self, bus, fake_redis):
        assert await bus.publish("chan", {"type": "ping"})
        assert fake_redis.published == [("chan", {"type": "ping"})]

    async def test_publish_without_redis(self):
        assert await NotificationBus().publish("chan", {"type": "ping"}) is False


# ── LLM gateway ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestLLMGateway:
    async def test_text_shape_and_auth(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"text": "hello"})

        gateway = gateway_for(handler)
        assert await gateway.complete("prompt", 100, 0.2) == "hello"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["max_tokens"] == 100
        assert seen["body"]["temperature"] == 0.2

    async def test_choices_shapes(self):
        assert extract_text({"choices": [{"text": "a"}]}) == "a"
        assert extract_text({"choices": [{"message": {"content": "b"}}]}) == "b"
        with pytest.raises(SynthesisFailure):
            extract_text({"result": "c"})

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_statuses(self, status):
        gateway = gateway_for(lambda request: httpx.Response(status))
        with pytest.raises(TransientRemoteError) as exc:
            await gateway.complete("p", 10, 0.1)
        assert exc.value.status_code == status

    async def test_client_errors_not_transient(self):
        gateway = gateway_for(lambda request: httpx.Response(404))
        with pytest.raises(RemoteRequestError):
            await gateway.complete("p", 10, 0.1)

    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientRemoteError):
            await gateway_for(handler).complete("p", 10, 0.1)

    async def test_non_json_body(self):
        gateway = gateway_for(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(SynthesisFailure):
            await gateway.complete("p", 10, 0.1)


# ── Synthesis ─────────────────────────────────────────────────────────────


class TestTemplateSynthesis:
    def test_deterministic_four_sections(self):
        result = analysis_result()
        first = template_synthesis(result)
        assert first == template_synthesis(result)
        assert first.source == "template"
        assert first.overview.startswith("This 3-member group analysis reveals")
        assert "Analysis confidence: 80% based on 100% data completeness." in first.overview
        assert first.key_insights
        assert first.recommendations
        for text in first.narratives.model_dump().values():
            assert text

    def test_no_risks(self):
        result = analysis_result()
        calm = result.model_copy(update={"insights": result.insights.model_copy(update={"risks": []})})
        synthesis = template_synthesis(calm)
        assert "no significant conflict risks" in synthesis.overview
        assert synthesis.narratives.challenges.startswith("No significant conflict risks")

    def test_prompt_mentions_insights(self):
        prompt = build_prompt(analysis_result())
        assert "Members: 3" in prompt
        assert "Average pairwise compatibility" in prompt
        assert "group cohesion" in prompt
        assert "key_insights" in prompt


class TestParseResponse:
    def test_fenced_json(self):
        synthesis = parse_response("```json\n" + json.dumps(VALID_REPLY) + "\n```")
        assert synthesis.overview == "A well balanced group."
        assert synthesis.source == "remote"

    @pytest.mark.parametrize(
        "text",
        ["no json here", "{not json}", json.dumps({"overview": "only this"}), json.dumps({**VALID_REPLY, "overview": ""})],
    )
    def test_invalid_replies_raise(self, text):
        with pytest.raises(SynthesisFailure):
            parse_response(text)


@pytest.mark.asyncio
class TestNarrativeSynthesizer:
    async def test_remote_success(self):
        gateway = gateway_for(
            lambda request: httpx.Response(
                200, json={"choices": [{"message": {"content": json.dumps(VALID_REPLY)}}]}
            )
        )
        synthesizer = NarrativeSynthesizer(breaker(), gateway=gateway, enabled=True, sleep=SleepRecorder())
        synthesis = await synthesizer.synthesize(analysis_result())
        assert synthesis.source == "remote"
        assert synthesis.recommendations == ["Agree on conflict ground rules"]

    async def test_disabled_uses_template(self):
        synthesizer = NarrativeSynthesizer(breaker(), gateway=None, enabled=True)
        assert synthesizer.mode == "template"
        synthesis = await synthesizer.synthesize(analysis_result())
        assert synthesis.source == "template"

    async def test_open_breaker_falls_back_without_network(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"text": json.dumps(VALID_REPLY)})

        cb = breaker()
        for _ in range(3):
            cb._on_failure(TransientRemoteError("down"))
        synthesizer = NarrativeSynthesizer(cb, gateway=gateway_for(handler), enabled=True)
        synthesis = await synthesizer.synthesize(analysis_result())
        assert synthesis.source == "template_fallback"
        assert calls == 0

    async def test_timeouts_exhaust_into_failure(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            raise httpx.ReadTimeout("timed out", request=request)

        cb = breaker()
        sleep = SleepRecorder()
        synthesizer = NarrativeSynthesizer(
            cb, gateway=gateway_for(handler), enabled=True, max_retries=3, base_delay=1.0, sleep=sleep
        )
        with pytest.raises(SynthesisFailure):
            await synthesizer.synthesize(analysis_result())
        assert calls == 3
        assert cb.failure_count == 3
        assert cb.state == CircuitState.OPEN
        assert sleep.delays == [1.0, 2.0, 4.0]

    async def test_group_that_opened_breaker_gets_no_fallback(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            raise httpx.ReadTimeout("timed out", request=request)

        cb = breaker()
        synthesizer = NarrativeSynthesizer(
            cb, gateway=gateway_for(handler), enabled=True, max_retries=3, sleep=SleepRecorder()
        )
        with pytest.raises(SynthesisFailure):
            await synthesizer.synthesize(analysis_result("g1"))
        assert cb.state == CircuitState.OPEN

        with pytest.raises(SynthesisFailure):
            await synthesizer.synthesize(analysis_result("g1"))
        other = await synthesizer.synthesize(analysis_result("g2"))
        assert other.source == "template_fallback"
        assert calls == 3

    async def test_remote_success_clears_failed_groups(self):
        clock = FakeClock()
        replies = iter([httpx.ReadTimeout, httpx.ReadTimeout, httpx.ReadTimeout, None])

        def handler(request):
            error = next(replies)
            if error is not None:
                raise error("timed out", request=request)
            return httpx.Response(200, json={"text": json.dumps(VALID_REPLY)})

        cb = breaker(clock)
        synthesizer = NarrativeSynthesizer(
            cb, gateway=gateway_for(handler), enabled=True, max_retries=3, sleep=SleepRecorder()
        )
        with pytest.raises(SynthesisFailure):
            await synthesizer.synthesize(analysis_result("g1"))

        clock.now = 61
        recovered = await synthesizer.synthesize(analysis_result("g1"))
        assert recovered.source == "remote"
        assert cb.state == CircuitState.CLOSED

        for _ in range(3):
            cb._on_failure(TransientRemoteError("down"))
        fallback = await synthesizer.synthesize(analysis_result("g1"))
        assert fallback.source == "template_fallback"

    async def test_client_error_not_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(400)

        synthesizer = NarrativeSynthesizer(
            breaker(), gateway=gateway_for(handler), enabled=True, sleep=SleepRecorder()
        )
        with pytest.raises(SynthesisFailure):
            await synthesizer.synthesize(analysis_result())
        assert calls == 1

    async def test_invalid_reply_is_hard_error(self):
        cb = breaker()
        gateway = gateway_for(lambda request: httpx.Response(200, json={"text": "Sorry, I cannot."}))
        synthesizer = NarrativeSynthesizer(cb, gateway=gateway, enabled=True, sleep=SleepRecorder())
        with pytest.raises(SynthesisFailure):
            await synthesizer.synthesize(analysis_result())
        assert cb.failure_count == 0


# ── Insight store ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestInsightStore:
    async def test_save_and_read_back(self, session_factory):
        store = InsightStore(session_factory)
        result = analysis_result("g1")
        await store.save_analysis(result)

        restored = await store.get_latest_result("g1")
        assert restored is not None
        assert restored.analysis_id == result.analysis_id
        assert restored.insights.compatibility.matrix == result.insights.compatibility.matrix
        compatibility = await store.get_latest("g1", "compatibility")
        assert compatibility["analysis_id"] == result.analysis_id

    async def test_upsert_is_idempotent(self, session_factory):
        store = InsightStore(session_factory)
        result = analysis_result("g1")
        await store.save_analysis(result)
        await store.save_analysis(result.model_copy(update={"analysis_id": "analysis-2"}))

        async with session_factory() as session:
            rows = (
                await session.execute(
                    select(GroupInsight.insight_type, func.count())
                    .where(GroupInsight.group_id == "g1")
                    .group_by(GroupInsight.insight_type)
                )
            ).all()
        assert all(count == 1 for _, count in rows)
        assert {t for t, _ in rows} == {FULL_ANALYSIS, "compatibility", "strengths", "risks", "goal_alignment"}
        latest = await store.get_latest("g1")
        assert latest["analysis_id"] == "analysis-2"

    async def test_pairwise_lookup_order_independent(self, session_factory):
        store = InsightStore(session_factory)
        result = analysis_result("g1")
        await store.save_analysis(result)
        forward = await store.get_pairwise_score("g1", "alice", "bob")
        backward = await store.get_pairwise_score("g1", "bob", "alice")
        assert forward == backward == result.insights.compatibility.score("alice", "bob")

    async def test_expire_clears_rows_and_cache(self, session_factory, cache):
        store = InsightStore(session_factory, cache=cache)
        await store.save_analysis(analysis_result("g1"))
        await cache.set(cache.analysis_key("g1"), {"cached": True})

        assert await store.expire_insights("g1") == 5
        assert await store.get_latest("g1") is None
        assert await cache.get(cache.analysis_key("g1")) is None

    async def test_write_failure_raises_persistence_failure(self, tmp_path):
        bare = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        try:
            store = InsightStore(async_sessionmaker(bare, class_=AsyncSession, expire_on_commit=False))
            with pytest.raises(PersistenceFailure):
                await store.save_analysis(analysis_result("g1"))
        finally:
            await bare.dispose()

    async def test_refused_connection_raises_persistence_failure(self):
        def unreachable_database():
            raise ConnectionRefusedError(111, "Connect call failed")

        with pytest.raises(PersistenceFailure) as excinfo:
            await InsightStore(unreachable_database).save_analysis(analysis_result("g1"))
        assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)

    async def test_cleanup_old_deletes_only_stale_rows(self, session_factory):
        store = InsightStore(session_factory)
        await store.save_analysis(analysis_result("old"))
        await store.save_analysis(analysis_result("new"))
        async with session_factory() as session:
            async with session.begin():
                rows = (
                    await session.execute(select(GroupInsight).where(GroupInsight.group_id == "old"))
                ).scalars().all()
                for row in rows:
                    row.generated_at = utcnow() - timedelta(days=120)

        assert await store.cleanup_old(days=90) == 5
        async with session_factory() as session:
            remaining = (
                await session.execute(select(GroupInsight.group_id).distinct())
            ).scalars().all()
        assert remaining == ["new"]


# ── Job queue ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestJobQueue:
    async def test_enqueue_persists_then_publishes(self, session_factory, bus, fake_redis):
        queue = JobQueue(session_factory, bus=bus, channel="jobs")
        job_id = await queue.enqueue("g1", "profile_shared", priority=7)

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.priority == 7
        assert fake_redis.published == [("jobs", {"job_id": job_id, "group_id": "g1", "priority": 7})]

    async def test_enqueue_survives_lost_notification(self, session_factory):
        queue = JobQueue(session_factory, bus=NotificationBus())
        job_id = await queue.enqueue("g1", "profile_shared")
        assert (await queue.get_job(job_id)).status == JobStatus.PENDING

    async def test_unknown_job(self, session_factory):
        with pytest.raises(JobNotFoundError):
            await JobQueue(session_factory).get_job("missing")

    async def test_claim_is_exclusive(self, session_factory):
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "t")
        first = await queue.claim(job_id)
        assert first.status == JobStatus.PROCESSING
        assert first.started_at is not None
        assert await queue.claim(job_id) is None

    async def test_fetch_pending_order_and_retry_window(self, session_factory):
        queue = JobQueue(session_factory)
        low = await queue.enqueue("g1", "t", priority=1)
        high = await queue.enqueue("g2", "t", priority=9)
        later = await queue.enqueue("g3", "t", priority=1)
        delayed = await queue.enqueue("g4", "t", priority=10)
        async with session_factory() as session:
            job = await session.get(AnalysisJob, delayed)
            job.next_retry_at = utcnow() + timedelta(minutes=5)
            await session.commit()

        assert await queue.fetch_pending(10) == [high, low, later]
        assert await queue.fetch_pending(1) == [high]
        assert await queue.fetch_pending(0) == []

    async def test_failed_attempts_retry_then_fail(self, session_factory):
        queue = JobQueue(session_factory)
        job_id = await queue.enqueue("g1", "t")
        now = utcnow()

        await queue.claim(job_id)
        status = await queue.mark_failed_attempt(job_id, "boom 1", max_retries=2, retry_delay_seconds=30, now=now)
        job = await queue.get_job(job_id)
        assert status == JobStatus.PENDING
        assert job.retry_count == 1
        assert job.next_retry_at == now + timedelta(seconds=30)
        assert await queue.claim(job_id, now=now) is None

        await queue.claim(job_id, now=now + timedelta(seconds=31))
        status = await queue.mark_failed_attempt(job_id, "boom 2", max_retries=2, retry_delay_seconds=30)
        job = await queue.get_job(job_id)
        assert status == JobStatus.FAILED
        assert job.retry_count == 2
        assert job.last_error == "boom 2"

    async def test_stats(self, session_factory):
        queue = JobQueue(session_factory)
        done = await queue.enqueue("g1", "t")
        await queue.enqueue("g2", "t")
        failed = await queue.enqueue("g3", "t")
        await queue.claim(done)
        await queue.mark_completed(done, {"analysis_id": "a"})
        await queue.claim(failed)
        await queue.mark_failed_attempt(failed, "x", max_retries=1, retry_delay_seconds=1)

        stats = await queue.queue_stats()
        assert stats.pending == 1
        assert stats.processing == 0
        assert stats.completed_last_hour == 1
        assert stats.failed_last_hour == 1
        assert stats.avg_processing_seconds >= 0.0


# ── Health ────────────────────────────────────────────────────────────────


class BrokenQueue:
    async def queue_stats(self):
        raise RuntimeError("database is gone")


@pytest.mark.asyncio
class TestHealth:
    async def test_synthesizer_degraded_when_open(self):
        cb = breaker()
        synthesizer = NarrativeSynthesizer(cb, gateway=gateway_for(lambda r: httpx.Response(200)), enabled=True)
        assert check_synthesizer(synthesizer).status == HEALTHY
        for _ in range(3):
            cb._on_failure(TransientRemoteError("down"))
        health = check_synthesizer(synthesizer)
        assert health.status == DEGRADED
        assert health.details["state"] == "open"
        assert health.details["failure_count"] == 3

    async def test_queue_health(self, session_factory):
        queue = JobQueue(session_factory)
        await queue.enqueue("g1", "t")
        healthy = await check_queue(queue)
        assert healthy.status == HEALTHY
        assert healthy.details["pending"] == 1
        assert (await check_queue(queue, backlog_warning=0)).status == DEGRADED
        assert (await check_queue(BrokenQueue())).status == UNHEALTHY

    async def test_cache_health(self, cache):
        assert (await check_cache(cache)).status == HEALTHY

    def test_overall_status_is_worst(self):
        components = [
            ComponentHealth(name="a", status=HEALTHY),
            ComponentHealth(name="b", status=DEGRADED),
        ]
        assert overall_status(components) == DEGRADED
        assert overall_status(components + [ComponentHealth(name="c", status=UNHEALTHY)]) == UNHEALTHY
        assert overall_status([]) == HEALTHY


# ── Shared session provider ───────────────────────────────────────────────


@pytest_asyncio.fixture
async def shared_database(tmp_path, monkeypatch):
    """Point the process-wide engine at a fresh file database."""
    await close_db()
    monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}")
    await create_tables(get_engine())
    yield get_session_factory()
    await close_db()


@pytest.mark.asyncio
class TestDatabaseSession:
    async def test_commits_on_success(self, shared_database):
        async with get_db_session() as session:
            session.add(AnalysisJob(id="job-1", group_id="g1"))

        async with shared_database() as session:
            assert await session.get(AnalysisJob, "job-1") is not None

    async def test_rolls_back_on_error(self, shared_database):
        with pytest.raises(RuntimeError):
            async with get_db_session() as session:
                session.add(AnalysisJob(id="job-2", group_id="g1"))
                await session.flush()
                raise RuntimeError("abort")

        async with shared_database() as session:
            assert await session.get(AnalysisJob, "job-2") is None

    async def test_database_health(self, shared_database):
        assert (await check_database()).status == HEALTHY
        assert (await check_database(shared_database)).status == HEALTHY

        def unreachable():
            raise ConnectionRefusedError(111, "Connect call failed")

        assert (await check_database(unreachable)).status == UNHEALTHY
