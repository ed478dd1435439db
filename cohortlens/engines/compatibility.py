"""
Pairwise Compatibility Engine.

Scores every unordered member pair on four independent factors:
- Personality: cosine similarity of embeddings, rescaled to [0, 1]
- Communication: symmetric style lookup table
- Conflict: resolution-style friction/synergy table
- Energy: step function over the social-energy difference

Missing data yields the neutral score (0.5) with has_data=False, so pair
confidence is the fraction of factors backed by real data. Pure and
deterministic: identical input gives identical output.
"""

import math
from dataclasses import dataclass
from typing import Optional

import structlog

from cohortlens.logging_config import short_id
from cohortlens.schemas.analysis import (
    CompatibilityMatrix,
    FactorScores,
    HeatmapCell,
    PairDetail,
    ScoreDistribution,
)
from cohortlens.schemas.profile import MemberProfile

logger = structlog.get_logger(__name__)


# ── Configuration ─────────────────────────────────────────────────────────

FACTOR_WEIGHTS: dict[str, float] = {
    "personality": 0.4,
    "communication": 0.3,
    "conflict": 0.2,
    "energy": 0.1,
}

NEUTRAL_SCORE = 0.5
LOW_CONFIDENCE_WARNING = 0.75
CLUSTER_THRESHOLD = 0.75
STRENGTH_THRESHOLD = 0.7
CHALLENGE_THRESHOLD = 0.4
PAIR_KEY_SEPARATOR = "|"

COMMUNICATION_ALIGNMENT: dict[str, dict[str, float]] = {
    "direct": {"direct": 1.0, "supportive": 0.8, "analytical": 0.7, "indirect": 0.5},
    "supportive": {"direct": 0.8, "supportive": 1.0, "analytical": 0.7, "indirect": 0.6},
    "analytical": {"direct": 0.7, "supportive": 0.7, "analytical": 1.0, "indirect": 0.4},
    "indirect": {"direct": 0.5, "supportive": 0.6, "analytical": 0.4, "indirect": 1.0},
}

CONFLICT_COMPATIBILITY: dict[str, dict[str, float]] = {
    "competing": {
        "competing": 0.3, "collaborating": 0.8, "compromising": 0.6,
        "avoiding": 0.2, "accommodating": 0.7,
    },
    "collaborating": {
        "competing": 0.8, "collaborating": 0.9, "compromising": 0.7,
        "avoiding": 0.4, "accommodating": 0.6,
    },
    "compromising": {
        "competing": 0.6, "collaborating": 0.7, "compromising": 0.8,
        "avoiding": 0.5, "accommodating": 0.7,
    },
    "avoiding": {
        "competing": 0.2, "collaborating": 0.4, "compromising": 0.5,
        "avoiding": 0.3, "accommodating": 0.5,
    },
    "accommodating": {
        "competing": 0.7, "collaborating": 0.6, "compromising": 0.7,
        "avoiding": 0.5, "accommodating": 0.4,
    },
}

# (lower bound, colour), checked top-down
HEATMAP_BANDS: list[tuple[float, str]] = [
    (0.8, "#00aa00"),
    (0.6, "#44ff44"),
    (0.4, "#ffdd44"),
    (0.2, "#ff9944"),
]
HEATMAP_FLOOR_COLOR = "#ff4444"


@dataclass(frozen=True)
class FactorResult:
    """One factor score and whether real data backed it."""
    score: float
    has_data: bool


NO_DATA = FactorResult(score=NEUTRAL_SCORE, has_data=False)


# ── Helpers ───────────────────────────────────────────────────────────────


def pair_key(member_a: str, member_b: str) -> str:
    """Order-independent key for a member pair, smaller ID first."""
    first, second = sorted((member_a, member_b))
    return f"{first}{PAIR_KEY_SEPARATOR}{second}"


def heatmap_color(score: float) -> str:
    for lower, color in HEATMAP_BANDS:
        if score >= lower:
            return color
    return HEATMAP_FLOOR_COLOR


def interpretation(score: float) -> str:
    """Human label for a pair score."""
    if score >= 0.8:
        return "High compatibility"
    if score >= 0.6:
        return "Moderate compatibility"
    if score >= 0.4:
        return "Needs attention"
    return "High friction risk"


def _normalize_style(style: Optional[str]) -> Optional[str]:
    if style is None:
        return None
    cleaned = style.strip().lower()
    return cleaned or None


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


# ── Factor scorers ────────────────────────────────────────────────────────


def personality_similarity(a: MemberProfile, b: MemberProfile) -> FactorResult:
    """
    Cosine similarity over the shared prefix of both embeddings.

    A zero-norm vector has similarity 0, i.e. the neutral rescaled 0.5.
    """
    emb_a = a.personality.embedding if a.personality else None
    emb_b = b.personality.embedding if b.personality else None
    if not emb_a or not emb_b:
        return NO_DATA

    n = min(len(emb_a), len(emb_b))
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for i in range(n):
        dot += emb_a[i] * emb_b[i]
        norm_a += emb_a[i] * emb_a[i]
        norm_b += emb_b[i] * emb_b[i]

    denominator = math.sqrt(norm_a) * math.sqrt(norm_b)
    cosine = dot / denominator if denominator else 0.0
    cosine = min(1.0, max(-1.0, cosine))

    return FactorResult(score=(cosine + 1.0) / 2.0, has_data=True)


def _table_lookup(
    table: dict[str, dict[str, float]],
    style_a: Optional[str],
    style_b: Optional[str],
) -> FactorResult:
    style_a = _normalize_style(style_a)
    style_b = _normalize_style(style_b)
    if style_a is None or style_b is None:
        return NO_DATA
    # Declared but unrecognised styles still count as data
    score = table.get(style_a, {}).get(style_b, NEUTRAL_SCORE)
    return FactorResult(score=score, has_data=True)


def communication_alignment(a: MemberProfile, b: MemberProfile) -> FactorResult:
    return _table_lookup(COMMUNICATION_ALIGNMENT, a.communication_style, b.communication_style)


def conflict_compatibility(a: MemberProfile, b: MemberProfile) -> FactorResult:
    return _table_lookup(CONFLICT_COMPATIBILITY, a.conflict_style, b.conflict_style)


def energy_balance(a: MemberProfile, b: MemberProfile) -> FactorResult:
    energy_a = a.social_energy
    energy_b = b.social_energy
    if energy_a is None or energy_b is None:
        return NO_DATA

    difference = abs(energy_a - energy_b)
    if difference < 20:
        score = 1.0
    elif difference < 40:
        score = 0.8
    elif difference < 60:
        score = 0.6
    else:
        score = 0.4
    return FactorResult(score=score, has_data=True)


# ── Pair narrative ────────────────────────────────────────────────────────

_PAIR_TEXT: dict[str, tuple[str, str, str]] = {
    "personality": (
        "Strong personality alignment creates natural understanding",
        "Significant personality differences may require extra effort to understand each other",
        "Focus on finding common ground and appreciating diverse perspectives",
    ),
    "communication": (
        "Both prefer {style} communication styles",
        "Different communication styles may lead to misunderstandings",
        "Be explicit about communication preferences and check for understanding frequently",
    ),
    "conflict": (
        "Compatible conflict resolution styles support healthy disagreements",
        "Mismatched conflict styles could escalate disagreements",
        "Establish ground rules for handling conflicts before they arise",
    ),
    "energy": (
        "Well-balanced social energy levels",
        "Different energy levels may cause friction in social situations",
        "Respect each other's need for social interaction or solitude",
    ),
}


def _pair_narrative(
    a: MemberProfile, factors: dict[str, FactorResult]
) -> tuple[list[str], list[str], list[str]]:
    strengths: list[str] = []
    challenges: list[str] = []
    recommendations: list[str] = []

    for name in FACTOR_WEIGHTS:
        result = factors[name]
        strength_text, challenge_text, recommendation_text = _PAIR_TEXT[name]
        if result.score > STRENGTH_THRESHOLD:
            style = _normalize_style(a.communication_style) or "similar"
            strengths.append(strength_text.format(style=style))
        elif result.score < CHALLENGE_THRESHOLD:
            challenges.append(challenge_text)
            recommendations.append(recommendation_text)

    return strengths, challenges, recommendations


# ── Engine ────────────────────────────────────────────────────────────────


class CompatibilityEngine:
    """Builds the symmetric compatibility matrix for a member set."""

    algorithm = "compatibility_matrix_v1"

    def __init__(self, weights: Optional[dict[str, float]] = None):
        self.weights = weights or FACTOR_WEIGHTS.copy()

    def score_pair(self, a: MemberProfile, b: MemberProfile) -> PairDetail:
        factors = {
            "personality": personality_similarity(a, b),
            "communication": communication_alignment(a, b),
            "conflict": conflict_compatibility(a, b),
            "energy": energy_balance(a, b),
        }

        weighted = sum(factors[name].score * self.weights[name] for name in FACTOR_WEIGHTS)
        score = _clamp01(weighted)
        confidence = sum(1 for f in factors.values() if f.has_data) / len(factors)

        if confidence < LOW_CONFIDENCE_WARNING:
            logger.warning(
                "low_pair_confidence",
                member_pair=f"{short_id(a.member_id)}-{short_id(b.member_id)}",
                confidence=round(confidence, 2),
                score=round(score, 2),
                missing=[name for name, f in factors.items() if not f.has_data],
            )

        strengths, challenges, recommendations = _pair_narrative(a, factors)
        first, second = sorted((a.member_id, b.member_id))

        return PairDetail(
            member_a=first,
            member_b=second,
            score=score,
            confidence=confidence,
            factors=FactorScores(**{name: f.score for name, f in factors.items()}),
            factors_with_data={name: f.has_data for name, f in factors.items()},
            interpretation=interpretation(score),
            strengths=strengths,
            challenges=challenges,
            recommendations=recommendations,
        )

    def calculate_matrix(self, profiles: list[MemberProfile]) -> CompatibilityMatrix:
        """
        Compute the full N×N matrix.

        The diagonal is exactly 1.0 and each off-diagonal score is written
        to both [i][j] and [j][i] from a single computation.
        """
        member_ids = [p.member_id for p in profiles]
        n = len(profiles)
        matrix = [[0.0] * n for _ in range(n)]
        details: dict[str, PairDetail] = {}

        for i in range(n):
            matrix[i][i] = 1.0
            for j in range(i + 1, n):
                detail = self.score_pair(profiles[i], profiles[j])
                matrix[i][j] = detail.score
                matrix[j][i] = detail.score
                details[pair_key(member_ids[i], member_ids[j])] = detail

        pair_scores = [d.score for d in details.values()]
        average = sum(pair_scores) / len(pair_scores) if pair_scores else 0.0
        distribution = score_distribution(pair_scores)

        logger.info(
            "compatibility_matrix_computed",
            members=n,
            pairs=len(details),
            avg_compatibility=round(average, 2),
            neutral_pairs=distribution.neutral,
        )

        result = CompatibilityMatrix(
            member_ids=member_ids,
            matrix=matrix,
            pairwise_details=details,
            average_compatibility=average,
            pair_count=len(details),
            distribution=distribution,
            heatmap=heatmap_cells(matrix, member_ids),
            clusters=detect_clusters(matrix, member_ids),
        )
        return result.model_copy(update={"cohesion": group_cohesion(result)})


# ── Derived statistics ────────────────────────────────────────────────────


def score_distribution(scores: list[float]) -> ScoreDistribution:
    """Bucket pair scores; an exact neutral 0.5 usually means missing data."""
    low = medium = high = neutral = 0
    for score in scores:
        if abs(score - NEUTRAL_SCORE) < 0.001:
            neutral += 1
        elif score < 0.4:
            low += 1
        elif score <= 0.7:
            medium += 1
        else:
            high += 1
    return ScoreDistribution(low=low, medium=medium, high=high, neutral=neutral)


def heatmap_cells(matrix: list[list[float]], member_ids: list[str]) -> list[HeatmapCell]:
    return [
        HeatmapCell(x=member_ids[j], y=member_ids[i], value=value, color=heatmap_color(value))
        for i, row in enumerate(matrix)
        for j, value in enumerate(row)
    ]


def detect_clusters(
    matrix: list[list[float]],
    member_ids: list[str],
    threshold: float = CLUSTER_THRESHOLD,
) -> list[list[str]]:
    """
    Greedy mutual-compatibility clustering.

    A member joins the current cluster only if its score with every
    member already in that cluster exceeds the threshold. Singletons
    are not reported.
    """
    clusters: list[list[str]] = []
    assigned: set[int] = set()

    for i in range(len(matrix)):
        if i in assigned:
            continue
        cluster = [i]
        assigned.add(i)
        for j in range(i + 1, len(matrix)):
            if j in assigned:
                continue
            if all(matrix[m][j] > threshold for m in cluster):
                cluster.append(j)
                assigned.add(j)
        if len(cluster) > 1:
            clusters.append([member_ids[m] for m in cluster])

    return clusters


def group_cohesion(matrix: CompatibilityMatrix) -> float:
    """High average with low spread means high cohesion."""
    scores = [d.score for d in matrix.pairwise_details.values()]
    if not scores:
        return 0.0
    avg = matrix.average_compatibility
    variance = sum((s - avg) ** 2 for s in scores) / len(scores)
    std_dev = math.sqrt(variance)
    return _clamp01(avg * (1 - min(std_dev * 2, 1.0)))
