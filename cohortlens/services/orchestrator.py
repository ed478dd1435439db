"""
Analysis Orchestrator — one full analysis run for a group.

Pipeline:
1. Serve a cached result younger than the max age (unless force_refresh)
2. Load and decrypt member profiles; fewer than 2 → InsufficientDataError
3. Data completeness over the four required nested fields
4. Fan out the enabled engines concurrently; a failing engine is logged
   and its block omitted, the run continues
5. Narrative synthesis over the combined insights (SynthesisFailure
   propagates); template text when every engine failed
6. Overall confidence = completeness × mean of available insight confidences
7. Drop strengths below the confidence threshold and risks below the
   probability threshold, then derive the group dynamics block
8. Persist (failures logged), cache, publish a completion notification;
   a failed persist does not stop the cache write or the notification
"""

import asyncio
import time
import uuid
from datetime import timezone
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError

from cohortlens.config import settings
from cohortlens.db.models import utcnow
from cohortlens.engines import CompatibilityEngine, GoalAlignmentEngine, RiskPredictor, StrengthDetector
from cohortlens.engines.risks import summarize
from cohortlens.engines.strengths import diversity_index, identify_gaps
from cohortlens.exceptions import EngineFailure, InsufficientDataError, PersistenceFailure
from cohortlens.schemas.analysis import (
    AnalysisMetadata,
    AnalysisOptions,
    CollectiveStrength,
    CompatibilityMatrix,
    ConflictRisk,
    GroupAnalysisResult,
    GroupDynamics,
    GroupInsights,
)
from cohortlens.schemas.profile import MemberProfile
from cohortlens.services.cache import AnalysisCache
from cohortlens.services.insight_store import InsightStore
from cohortlens.services.notifications import NotificationBus
from cohortlens.services.profile_source import ProfileSource
from cohortlens.services.synthesis import NarrativeSynthesizer, template_synthesis

logger = structlog.get_logger(__name__)

MIN_MEMBERS = 2
NEUTRAL_CONFIDENCE = 0.5
DATA_VERSION_PREFIX = "v1_"
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


# ── Helpers ───────────────────────────────────────────────────────────────


def data_completeness(profiles: list[MemberProfile]) -> float:
    """Fraction of (member × required field) slots that hold data."""
    if not profiles:
        return 0.0
    present = 0
    for p in profiles:
        present += bool(p.personality and p.personality.embedding)
        present += bool(p.personality and p.personality.traits)
        present += bool(p.behavioral and p.behavioral.tendencies)
        present += bool(p.values and p.values.motivation_drivers)
    return present / (4 * len(profiles))


def overall_confidence(completeness: float, insights: GroupInsights) -> float:
    confidences = []
    if insights.compatibility is not None and insights.compatibility.pairwise_details:
        pairs = insights.compatibility.pairwise_details.values()
        confidences.append(sum(p.confidence for p in pairs) / len(pairs))
    if insights.strengths:
        confidences.append(sum(s.confidence for s in insights.strengths) / len(insights.strengths))
    mean = sum(confidences) / len(confidences) if confidences else NEUTRAL_CONFIDENCE
    return min(completeness * mean, 1.0)


def group_dynamics(
    profiles: list[MemberProfile],
    compatibility: Optional[CompatibilityMatrix],
    strengths: Optional[list[CollectiveStrength]],
    risks: Optional[list[ConflictRisk]],
    options: AnalysisOptions,
) -> GroupDynamics:
    return GroupDynamics(
        diversity_index=diversity_index(profiles),
        cohesion=compatibility.cohesion if compatibility is not None else None,
        strength_gaps=(
            identify_gaps(strengths, options.desired_strengths) if strengths is not None else []
        ),
        risk_summary=summarize(risks) if risks is not None else None,
    )


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def data_version(profiles: list[MemberProfile]) -> str:
    """Changes whenever any member shares newer data."""
    total = sum(
        int(p.shared_at.replace(tzinfo=timezone.utc).timestamp() * 1000)
        for p in profiles
        if p.shared_at
    )
    return DATA_VERSION_PREFIX + _base36(total)


# ── Orchestrator ──────────────────────────────────────────────────────────


class AnalysisOrchestrator:
    """Runs the engines for a group and delivers the aggregated result."""

    def __init__(
        self,
        profile_source: ProfileSource,
        insight_store: Optional[InsightStore] = None,
        cache: Optional[AnalysisCache] = None,
        bus: Optional[NotificationBus] = None,
        synthesizer: Optional[NarrativeSynthesizer] = None,
        compatibility: Optional[CompatibilityEngine] = None,
        strengths: Optional[StrengthDetector] = None,
        risks: Optional[RiskPredictor] = None,
        goals: Optional[GoalAlignmentEngine] = None,
        cache_ttl_seconds: Optional[int] = None,
        cache_max_age_seconds: Optional[int] = None,
        notification_channel: Optional[str] = None,
    ):
        self.profile_source = profile_source
        self.insight_store = insight_store
        self.cache = cache
        self.bus = bus
        self.synthesizer = synthesizer
        self.compatibility = compatibility or CompatibilityEngine()
        self.strengths = strengths or StrengthDetector()
        self.risks = risks or RiskPredictor()
        self.goals = goals or GoalAlignmentEngine()
        self.cache_ttl_seconds = cache_ttl_seconds or settings.analysis_cache_ttl_seconds
        self.cache_max_age_seconds = cache_max_age_seconds or settings.analysis_cache_max_age_seconds
        self.notification_channel = notification_channel or settings.notification_channel

    async def analyze_group(
        self,
        group_id: str,
        options: Optional[AnalysisOptions] = None,
    ) -> GroupAnalysisResult:
        options = options or AnalysisOptions()
        started = time.perf_counter()
        log = logger.bind(group_id=group_id)

        if not options.force_refresh:
            cached = await self._cached_result(group_id)
            if cached is not None:
                log.info("analysis_cache_hit", analysis_id=cached.analysis_id)
                return cached

        profiles = await self.profile_source.fetch_member_profiles(group_id)
        if len(profiles) < MIN_MEMBERS:
            raise InsufficientDataError(group_id, len(profiles), MIN_MEMBERS)

        completeness = data_completeness(profiles)
        analysis_id = str(uuid.uuid4())
        log.info(
            "analysis_started",
            analysis_id=analysis_id,
            members=len(profiles),
            data_completeness=round(completeness, 3),
        )

        blocks, failures, algorithms = await self._run_engines(group_id, profiles, options)
        insights = GroupInsights(**blocks)
        confidence = overall_confidence(completeness, insights)

        result = GroupAnalysisResult(
            group_id=group_id,
            analysis_id=analysis_id,
            generated_at=utcnow(),
            member_count=len(profiles),
            data_completeness=completeness,
            insights=insights,
            metadata=AnalysisMetadata(
                processing_time_ms=0,
                data_version=data_version(profiles),
                algorithms_used=algorithms,
                overall_confidence=confidence,
                failed_engines=[f.engine for f in failures],
            ),
        )

        synthesis = None
        if options.include_synthesis and self.synthesizer is not None:
            if blocks:
                synthesis = await self.synthesizer.synthesize(result)
                algorithms = [*algorithms, self.synthesizer.algorithm]
            else:
                log.warning("synthesis_skipped_no_insights", failed_engines=result.metadata.failed_engines)
                synthesis = template_synthesis(result)

        threshold = options.confidence_threshold
        strengths = (
            [s for s in insights.strengths if s.confidence >= threshold]
            if insights.strengths is not None else None
        )
        risks = (
            [r for r in insights.risks if r.probability >= threshold]
            if insights.risks is not None else None
        )
        result = result.model_copy(
            update={
                "insights": insights.model_copy(
                    update={
                        "strengths": strengths,
                        "risks": risks,
                        "dynamics": group_dynamics(profiles, insights.compatibility, strengths, risks, options),
                        "synthesis": synthesis,
                    }
                ),
                "metadata": result.metadata.model_copy(
                    update={
                        "processing_time_ms": int((time.perf_counter() - started) * 1000),
                        "algorithms_used": algorithms,
                    }
                ),
            }
        )

        await self._deliver(result)
        log.info(
            "analysis_completed",
            analysis_id=analysis_id,
            overall_confidence=round(confidence, 3),
            blocks=result.insights.present_blocks(),
            failed_engines=result.metadata.failed_engines,
            processing_time_ms=result.metadata.processing_time_ms,
        )
        return result

    # ── Steps ────────────────────────────────────────────────────────────

    async def _cached_result(self, group_id: str) -> Optional[GroupAnalysisResult]:
        if self.cache is None:
            return None
        payload = await self.cache.get(self.cache.analysis_key(group_id))
        if not payload:
            return None
        try:
            cached = GroupAnalysisResult.model_validate(payload)
        except ValidationError as e:
            logger.warning("analysis_cache_invalid", group_id=group_id, error=str(e))
            return None
        age = (utcnow() - cached.generated_at).total_seconds()
        if age >= self.cache_max_age_seconds:
            return None
        return cached

    async def _run_engines(
        self,
        group_id: str,
        profiles: list[MemberProfile],
        options: AnalysisOptions,
    ) -> tuple[dict[str, Any], list[EngineFailure], list[str]]:
        planned: list[tuple[str, str, Callable[[list[MemberProfile]], Any]]] = []
        if options.include_compatibility:
            planned.append(("compatibility", self.compatibility.algorithm, self.compatibility.calculate_matrix))
        if options.include_strengths:
            planned.append(("strengths", self.strengths.algorithm, self.strengths.detect))
        if options.include_risks:
            planned.append(("risks", self.risks.algorithm, self.risks.predict))
        if options.include_goal_alignment:
            planned.append(("goal_alignment", self.goals.algorithm, self.goals.calculate))

        outcomes = await asyncio.gather(
            *(self._run_engine(group_id, name, fn, profiles) for name, _, fn in planned)
        )

        blocks: dict[str, Any] = {}
        failures: list[EngineFailure] = []
        algorithms: list[str] = []
        for (name, algorithm, _), (value, failure) in zip(planned, outcomes):
            if failure is not None:
                failures.append(failure)
                continue
            blocks[name] = value
            algorithms.append(algorithm)
        return blocks, failures, algorithms

    async def _run_engine(
        self,
        group_id: str,
        name: str,
        fn: Callable[[list[MemberProfile]], Any],
        profiles: list[MemberProfile],
    ) -> tuple[Any, Optional[EngineFailure]]:
        """Result-or-error for one engine; never raises."""
        try:
            return await asyncio.to_thread(fn, profiles), None
        except Exception as e:
            logger.error(
                "engine_failed",
                group_id=group_id,
                engine=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None, EngineFailure(name, e)

    async def _deliver(self, result: GroupAnalysisResult) -> None:
        if self.insight_store is not None:
            try:
                await self.insight_store.save_analysis(result)
            except PersistenceFailure as e:
                logger.error(
                    "analysis_persist_failed",
                    group_id=result.group_id,
                    analysis_id=result.analysis_id,
                    error=e.message,
                )

        if self.cache is not None:
            await self.cache.set(
                self.cache.analysis_key(result.group_id),
                result.model_dump(mode="json"),
                ttl_seconds=self.cache_ttl_seconds,
            )

        if self.bus is not None:
            await self.bus.publish(
                self.notification_channel,
                {
                    "type": "group_analysis_complete",
                    "group_id": result.group_id,
                    "analysis_id": result.analysis_id,
                    "overall_confidence": result.metadata.overall_confidence,
                    "generated_at": result.generated_at.isoformat(),
                },
            )
