"""
CohortLens SQLAlchemy Models.

JSON columns are JSONB on PostgreSQL and plain JSON on SQLite (tests).
Timestamps are naive UTC throughout.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    JSON,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from cohortlens.db.engine import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _genuuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ──────────────────────────────────────────────────────────────────────────────
# Shared member data
# ──────────────────────────────────────────────────────────────────────────────


class SharedProfileData(Base):
    """One encrypted profile fragment a member shared with a group."""

    __tablename__ = "shared_profile_data"
    __table_args__ = (
        Index("ix_shared_profile_group_shared_at", "group_id", "shared_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_genuuid)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    data_type: Mapped[str] = mapped_column(String(32), nullable=False)
    encrypted_data: Mapped[str] = mapped_column(Text, nullable=False)
    shared_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# Durable analysis queue
# ──────────────────────────────────────────────────────────────────────────────


class AnalysisJob(Base):
    __tablename__ = "analysis_jobs"
    __table_args__ = (
        Index("ix_analysis_jobs_poll", "status", "priority", "created_at"),
        Index("ix_analysis_jobs_group", "group_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_genuuid)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    analysis_type: Mapped[str] = mapped_column(String(32), nullable=False, default="full_analysis")
    trigger_event: Mapped[Optional[str]] = mapped_column(String(100))
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    result_summary: Mapped[Optional[dict]] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


# ──────────────────────────────────────────────────────────────────────────────
# Insights
# ──────────────────────────────────────────────────────────────────────────────


class GroupInsight(Base):
    """Latest insight of one type for a group; upserted per analysis run."""

    __tablename__ = "group_insights"
    __table_args__ = (
        UniqueConstraint("group_id", "insight_type", name="uq_group_insights_type"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_genuuid)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    insight_type: Mapped[str] = mapped_column(String(32), nullable=False)
    analysis_id: Mapped[str] = mapped_column(String(36), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class GroupCompatibilityPair(Base):
    """Canonicalised pair row: member_a_id < member_b_id."""

    __tablename__ = "group_compatibility_pairs"
    __table_args__ = (
        UniqueConstraint("group_id", "member_a_id", "member_b_id", name="uq_group_pair"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_genuuid)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    member_a_id: Mapped[str] = mapped_column(String(64), nullable=False)
    member_b_id: Mapped[str] = mapped_column(String(64), nullable=False)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    factors: Mapped[dict] = mapped_column(JSONType, nullable=False)
    strengths: Mapped[list] = mapped_column(JSONType, default=list)
    challenges: Mapped[list] = mapped_column(JSONType, default=list)
    recommendations: Mapped[list] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
