"""
Analysis result schemas.

GroupAnalysisResult is the unit of caching, persistence and synthesis input.
All models are frozen so a returned result is never mutated; they dump to
JSON and validate back without loss, which is how the cache stores them.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from cohortlens.config import settings


class StrengthCategory(str, Enum):
    BEHAVIORAL = "behavioral"
    COGNITIVE = "cognitive"
    VALUE = "value"
    SKILL = "skill"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Ordinal thresholds over probability × impact
SEVERITY_THRESHOLDS: list[tuple[float, Severity]] = [
    (0.7, Severity.CRITICAL),
    (0.5, Severity.HIGH),
    (0.3, Severity.MEDIUM),
]

SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


def severity_for(probability: float, impact: float) -> Severity:
    """Map probability × impact onto the ordinal severity scale."""
    score = probability * impact
    for threshold, level in SEVERITY_THRESHOLDS:
        if score >= threshold:
            return level
    return Severity.LOW


# ── Compatibility ─────────────────────────────────────────────────────────


class FactorScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    personality: float = Field(ge=0.0, le=1.0)
    communication: float = Field(ge=0.0, le=1.0)
    conflict: float = Field(ge=0.0, le=1.0)
    energy: float = Field(ge=0.0, le=1.0)


class PairDetail(BaseModel):
    """Compatibility of one unordered member pair; member_a < member_b."""

    model_config = ConfigDict(frozen=True)

    member_a: str
    member_b: str
    score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    factors: FactorScores
    factors_with_data: dict[str, bool] = Field(default_factory=dict)
    interpretation: str = ""
    strengths: list[str] = Field(default_factory=list)
    challenges: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class HeatmapCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: str
    y: str
    value: float
    color: str


class ScoreDistribution(BaseModel):
    model_config = ConfigDict(frozen=True)

    low: int = 0
    medium: int = 0
    high: int = 0
    neutral: int = 0


class CompatibilityMatrix(BaseModel):
    model_config = ConfigDict(frozen=True)

    member_ids: list[str]
    matrix: list[list[float]]
    pairwise_details: dict[str, PairDetail]
    average_compatibility: float
    pair_count: int
    cohesion: float = Field(default=0.0, ge=0.0, le=1.0)
    distribution: ScoreDistribution = Field(default_factory=ScoreDistribution)
    heatmap: list[HeatmapCell] = Field(default_factory=list)
    clusters: list[list[str]] = Field(default_factory=list)

    def score(self, member_a: str, member_b: str) -> float:
        i = self.member_ids.index(member_a)
        j = self.member_ids.index(member_b)
        return self.matrix[i][j]


# ── Strengths and risks ───────────────────────────────────────────────────


class CollectiveStrength(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: StrengthCategory
    prevalence: float = Field(ge=0.0, le=1.0)
    strength: float = Field(ge=0.0, le=1.0)
    member_count: int
    confidence: float = Field(ge=0.0, le=1.0)
    applications: list[str] = Field(default_factory=list)
    description: str = ""

    @property
    def rank_score(self) -> float:
        return self.prevalence * self.strength * self.confidence


class ConflictRisk(BaseModel):
    """A predicted friction area. Severity is derived, never stored input."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    affected_members: list[str]
    probability: float = Field(ge=0.0, le=1.0)
    impact: float = Field(ge=0.0, le=1.0)
    description: str = ""
    triggers: list[str] = Field(default_factory=list)
    mitigation_strategies: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def risk_score(self) -> float:
        return self.probability * self.impact

    @computed_field
    @property
    def severity(self) -> Severity:
        return severity_for(self.probability, self.impact)


class RiskSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0
    top_risk: Optional[str] = None
    overall_risk_level: str
    recommendations: list[str] = Field(default_factory=list)


class AlignmentCluster(BaseModel):
    model_config = ConfigDict(frozen=True)

    members: list[str]
    goals: list[str]
    strength: float


class GoalAlignment(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall_alignment: float
    shared_goals: list[str] = Field(default_factory=list)
    divergent_goals: list[str] = Field(default_factory=list)
    alignment_clusters: list[AlignmentCluster] = Field(default_factory=list)


# ── Synthesis ─────────────────────────────────────────────────────────────


class Narratives(BaseModel):
    model_config = ConfigDict(frozen=True)

    compatibility: str
    strengths: str
    challenges: str
    opportunities: str


class NarrativeSynthesis(BaseModel):
    model_config = ConfigDict(frozen=True)

    overview: str = Field(min_length=1)
    key_insights: list[str]
    recommendations: list[str]
    narratives: Narratives
    source: str = "template"


# ── Aggregate ─────────────────────────────────────────────────────────────


class GroupDynamics(BaseModel):
    """Group-level figures derived from the insight blocks after filtering."""

    model_config = ConfigDict(frozen=True)

    diversity_index: float = Field(ge=0.0, le=1.0)
    cohesion: Optional[float] = None
    strength_gaps: list[str] = Field(default_factory=list)
    risk_summary: Optional[RiskSummary] = None


class GroupInsights(BaseModel):
    model_config = ConfigDict(frozen=True)

    compatibility: Optional[CompatibilityMatrix] = None
    strengths: Optional[list[CollectiveStrength]] = None
    risks: Optional[list[ConflictRisk]] = None
    goal_alignment: Optional[GoalAlignment] = None
    dynamics: Optional[GroupDynamics] = None
    synthesis: Optional[NarrativeSynthesis] = None

    def present_blocks(self) -> list[str]:
        return [
            name for name in ("compatibility", "strengths", "risks", "goal_alignment")
            if getattr(self, name) is not None
        ]


class AnalysisMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    processing_time_ms: int
    data_version: str
    algorithms_used: list[str] = Field(default_factory=list)
    overall_confidence: float = Field(ge=0.0, le=1.0)
    failed_engines: list[str] = Field(default_factory=list)


class GroupAnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    group_id: str
    analysis_id: str
    generated_at: datetime
    member_count: int
    data_completeness: float = Field(ge=0.0, le=1.0)
    insights: GroupInsights
    metadata: AnalysisMetadata


class AnalysisOptions(BaseModel):
    """Per-request toggles. Defaults run everything with caching."""

    model_config = ConfigDict(frozen=True)

    include_compatibility: bool = True
    include_strengths: bool = True
    include_risks: bool = True
    include_goal_alignment: bool = True
    include_synthesis: bool = True
    force_refresh: bool = False
    confidence_threshold: float = Field(
        default_factory=lambda: settings.confidence_threshold, ge=0.0, le=1.0
    )
    # capabilities the caller hopes to see; missing ones are reported as gaps
    desired_strengths: list[str] = Field(default_factory=list)
