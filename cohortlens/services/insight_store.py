"""
Insight Store — durable record of analysis results.

One active row per (group_id, insight_type): the full result under
"full_analysis" plus one row per present insight block. Pair rows are
rewritten on every run. All writes for one analysis share one transaction,
so a reader never sees half of a run.
"""

from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cohortlens.config import settings
from cohortlens.db.models import GroupCompatibilityPair, GroupInsight, utcnow
from cohortlens.exceptions import PersistenceFailure
from cohortlens.schemas.analysis import GroupAnalysisResult
from cohortlens.services.cache import AnalysisCache

logger = structlog.get_logger(__name__)

FULL_ANALYSIS = "full_analysis"
INSIGHT_TYPES = ("compatibility", "strengths", "risks", "goal_alignment", "synthesis")


def _block_confidence(result: GroupAnalysisResult, insight_type: str) -> float:
    insights = result.insights
    if insight_type == "compatibility" and insights.compatibility is not None:
        pairs = insights.compatibility.pairwise_details.values()
        return sum(p.confidence for p in pairs) / len(pairs) if pairs else 0.0
    if insight_type == "strengths" and insights.strengths:
        return sum(s.confidence for s in insights.strengths) / len(insights.strengths)
    return result.metadata.overall_confidence


class InsightStore:
    """Reads and writes group_insights and group_compatibility_pairs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: Optional[AnalysisCache] = None,
        expiry_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.expiry_days = expiry_days or settings.insight_expiry_days

    # ── Writes ───────────────────────────────────────────────────────────

    async def save_analysis(self, result: GroupAnalysisResult) -> None:
        """Upsert the full result and every present block. Raises PersistenceFailure."""
        expires_at = result.generated_at + timedelta(days=self.expiry_days)
        payloads = {FULL_ANALYSIS: result.model_dump(mode="json")}
        for name in INSIGHT_TYPES:
            block = getattr(result.insights, name)
            if block is not None:
                payloads[name] = {
                    "analysis_id": result.analysis_id,
                    "data": _dump(block),
                }

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for insight_type, payload in payloads.items():
                        await self._upsert(session, result, insight_type, payload, expires_at)
                    if result.insights.compatibility is not None:
                        await self._rewrite_pairs(session, result)
        except (SQLAlchemyError, OSError) as e:
            # OSError: drivers raise connection refusals and timeouts unwrapped
            raise PersistenceFailure("save_analysis", result.group_id, e) from e

        logger.info(
            "analysis_persisted",
            group_id=result.group_id,
            analysis_id=result.analysis_id,
            insight_types=sorted(payloads),
        )

    async def _upsert(
        self,
        session: AsyncSession,
        result: GroupAnalysisResult,
        insight_type: str,
        payload: dict,
        expires_at,
    ) -> None:
        existing = (
            await session.execute(
                select(GroupInsight).where(
                    GroupInsight.group_id == result.group_id,
                    GroupInsight.insight_type == insight_type,
                )
            )
        ).scalar_one_or_none()

        confidence = _block_confidence(result, insight_type)
        if existing is None:
            session.add(
                GroupInsight(
                    group_id=result.group_id,
                    insight_type=insight_type,
                    analysis_id=result.analysis_id,
                    payload=payload,
                    confidence=confidence,
                    generated_at=result.generated_at,
                    expires_at=expires_at,
                    is_active=True,
                )
            )
            return

        existing.analysis_id = result.analysis_id
        existing.payload = payload
        existing.confidence = confidence
        existing.generated_at = result.generated_at
        existing.expires_at = expires_at
        existing.is_active = True

    async def _rewrite_pairs(self, session: AsyncSession, result: GroupAnalysisResult) -> None:
        await session.execute(
            delete(GroupCompatibilityPair).where(
                GroupCompatibilityPair.group_id == result.group_id
            )
        )
        for detail in result.insights.compatibility.pairwise_details.values():
            session.add(
                GroupCompatibilityPair(
                    group_id=result.group_id,
                    member_a_id=detail.member_a,
                    member_b_id=detail.member_b,
                    score=detail.score,
                    confidence=detail.confidence,
                    factors=detail.factors.model_dump(),
                    strengths=list(detail.strengths),
                    challenges=list(detail.challenges),
                    recommendations=list(detail.recommendations),
                )
            )

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_latest(self, group_id: str, insight_type: str = FULL_ANALYSIS) -> Optional[dict]:
        """Active, unexpired payload of one insight type, or None."""
        now = utcnow()
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(GroupInsight).where(
                        GroupInsight.group_id == group_id,
                        GroupInsight.insight_type == insight_type,
                        GroupInsight.is_active.is_(True),
                    )
                )
            ).scalar_one_or_none()
        if row is None or (row.expires_at is not None and row.expires_at <= now):
            return None
        return row.payload

    async def get_latest_result(self, group_id: str) -> Optional[GroupAnalysisResult]:
        payload = await self.get_latest(group_id, FULL_ANALYSIS)
        return GroupAnalysisResult.model_validate(payload) if payload else None

    async def get_pairwise_score(self, group_id: str, member_a: str, member_b: str) -> Optional[float]:
        """Order-independent lookup of a stored pair score."""
        first, second = sorted((member_a, member_b))
        async with self.session_factory() as session:
            return (
                await session.execute(
                    select(GroupCompatibilityPair.score).where(
                        GroupCompatibilityPair.group_id == group_id,
                        GroupCompatibilityPair.member_a_id == first,
                        GroupCompatibilityPair.member_b_id == second,
                    )
                )
            ).scalar_one_or_none()

    # ── Maintenance ──────────────────────────────────────────────────────

    async def expire_insights(self, group_id: str) -> int:
        """Deactivate a group's insights and drop its cached entries."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(GroupInsight)
                    .where(GroupInsight.group_id == group_id, GroupInsight.is_active.is_(True))
                    .values(is_active=False)
                )
        cleared = 0
        if self.cache is not None:
            cleared = await self.cache.delete_pattern(self.cache.group_pattern(group_id))
        logger.info(
            "insights_expired",
            group_id=group_id,
            rows=result.rowcount,
            cache_keys_cleared=cleared,
        )
        return result.rowcount

    async def cleanup_old(self, days: Optional[int] = None) -> int:
        """Delete insight rows generated more than `days` ago."""
        days = settings.insight_retention_days if days is None else days
        cutoff = utcnow() - timedelta(days=days)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(GroupInsight).where(GroupInsight.generated_at < cutoff)
                )
        logger.info("old_insights_cleaned", rows=result.rowcount, older_than_days=days)
        return result.rowcount


def _dump(block) -> object:
    if isinstance(block, list):
        return [item.model_dump(mode="json") for item in block]
    return block.model_dump(mode="json")
