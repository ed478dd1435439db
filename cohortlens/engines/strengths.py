"""
Collective Strength Detector.

Finds group-wide patterns present in at least 60% of members. Four
independent passes run every time:
- Behavioral tendencies held at likelihood >= 0.7
- Cognitive and communication style majorities
- Shared core values and strong motivation drivers
- Emergent composites built from the other signals

Confidence = 0.4·prevalence + 0.4·strength + 0.2·min(members/10, 1),
capped at 0.95. Results are ranked by prevalence × strength × confidence.
"""

import math
import re
import uuid
from collections import Counter
from typing import Callable, Optional

import structlog

from cohortlens.schemas.analysis import CollectiveStrength, StrengthCategory
from cohortlens.schemas.profile import MemberProfile

logger = structlog.get_logger(__name__)


# ── Configuration ─────────────────────────────────────────────────────────

MIN_PREVALENCE = 0.6
MIN_LIKELIHOOD = 0.7
MIN_GROUP_SIZE = 2
CONFIDENCE_CAP = 0.95
STYLE_PATTERN_STRENGTH = 0.8

PATTERN_APPLICATIONS: dict[str, list[str]] = {
    # Communication
    "active_listening": ["team_meetings", "conflict_resolution", "customer_service", "mentoring"],
    "clear_articulation": ["presentations", "documentation", "teaching", "leadership"],
    "emotional_validation": ["support", "team_building", "counseling", "relationships"],
    "constructive_feedback": ["performance_reviews", "project_improvement", "skill_development"],
    # Collaboration
    "consensus_building": ["decision_making", "project_planning", "team_alignment"],
    "resource_sharing": ["knowledge_transfer", "skill_development", "efficiency"],
    "inclusive_behavior": ["team_diversity", "innovation", "morale"],
    "conflict_mediation": ["dispute_resolution", "team_harmony", "productivity"],
    # Leadership
    "initiative_taking": ["project_kickoff", "problem_solving", "innovation"],
    "delegation": ["workload_management", "team_development", "scaling"],
    "strategic_thinking": ["planning", "goal_setting", "vision_development"],
    "motivating_others": ["team_performance", "engagement", "retention"],
    # Problem solving
    "analytical_thinking": ["root_cause_analysis", "data_interpretation", "optimization"],
    "creative_solutions": ["innovation", "product_development", "process_improvement"],
    "systematic_approach": ["project_management", "quality_assurance", "implementation"],
    "rapid_adaptation": ["crisis_management", "agile_development", "change_management"],
    # Interpersonal
    "empathy": ["customer_relations", "team_support", "user_experience"],
    "trust_building": ["partnerships", "client_relations", "team_cohesion"],
    "boundary_setting": ["work_life_balance", "professional_relationships", "productivity"],
    "cultural_sensitivity": ["global_teams", "diversity", "inclusion"],
}

PATTERN_TYPES: dict[str, StrengthCategory] = {
    "active_listening": StrengthCategory.BEHAVIORAL,
    "emotional_validation": StrengthCategory.BEHAVIORAL,
    "inclusive_behavior": StrengthCategory.BEHAVIORAL,
    "empathy": StrengthCategory.BEHAVIORAL,
    "trust_building": StrengthCategory.BEHAVIORAL,
    "boundary_setting": StrengthCategory.BEHAVIORAL,
    "analytical_thinking": StrengthCategory.COGNITIVE,
    "strategic_thinking": StrengthCategory.COGNITIVE,
    "creative_solutions": StrengthCategory.COGNITIVE,
    "systematic_approach": StrengthCategory.COGNITIVE,
    "consensus_building": StrengthCategory.VALUE,
    "resource_sharing": StrengthCategory.VALUE,
    "cultural_sensitivity": StrengthCategory.VALUE,
    "clear_articulation": StrengthCategory.SKILL,
    "constructive_feedback": StrengthCategory.SKILL,
    "delegation": StrengthCategory.SKILL,
    "conflict_mediation": StrengthCategory.SKILL,
}

COGNITIVE_APPLICATIONS: dict[str, list[str]] = {
    "analytical": ["data_analysis", "research", "optimization", "quality_control"],
    "intuitive": ["innovation", "vision_development", "pattern_recognition"],
    "practical": ["implementation", "execution", "troubleshooting"],
    "creative": ["design", "brainstorming", "content_creation"],
    "systematic": ["process_improvement", "documentation", "standardization"],
    "adaptive": ["change_management", "crisis_response", "agile_development"],
}

COMMUNICATION_APPLICATIONS: dict[str, list[str]] = {
    "direct": ["decision_making", "feedback", "status_updates"],
    "supportive": ["team_building", "mentoring", "conflict_resolution"],
    "analytical": ["documentation", "research", "planning"],
    "indirect": ["diplomacy", "relationship_building", "negotiation"],
}

VALUE_APPLICATIONS: dict[str, list[str]] = {
    "integrity": ["trust_building", "ethical_decisions", "transparency"],
    "innovation": ["product_development", "process_improvement", "creativity"],
    "collaboration": ["teamwork", "partnership", "knowledge_sharing"],
    "excellence": ["quality", "continuous_improvement", "high_standards"],
    "growth": ["learning", "development", "adaptation"],
    "motivation_achievement": ["goal_setting", "performance", "results"],
    "motivation_affiliation": ["team_building", "relationships", "culture"],
    "motivation_power": ["leadership", "influence", "change_driving"],
}

_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^a-z0-9_]")


# ── Helpers ───────────────────────────────────────────────────────────────


def normalize_behavior(name: str) -> str:
    return _NON_WORD.sub("", _WHITESPACE.sub("_", name.strip().lower()))


def required_members(n: int, min_prevalence: float = MIN_PREVALENCE) -> int:
    """Smallest member count meeting the prevalence threshold, ⌈p·N⌉."""
    return math.ceil(round(n * min_prevalence, 9))


def pattern_confidence(prevalence: float, strength: float, member_count: int) -> float:
    sample_score = min(member_count / 10, 1.0)
    confidence = prevalence * 0.4 + strength * 0.4 + sample_score * 0.2
    return min(confidence, CONFIDENCE_CAP)


def strength_level(strength: float) -> str:
    if strength >= 0.9:
        return "exceptional"
    if strength >= 0.8:
        return "strong"
    if strength >= 0.7:
        return "solid"
    if strength >= 0.6:
        return "moderate"
    return "developing"


def humanize(name: str) -> str:
    words = name.replace("_", " ").replace("motivation ", "").split()
    return " ".join(w[:1].upper() + w[1:] for w in words)


def strong_tendencies(member: MemberProfile, min_likelihood: float = MIN_LIKELIHOOD) -> dict[str, float]:
    """Normalized behavior → highest likelihood, for tendencies above the floor."""
    found: dict[str, float] = {}
    for tendency in member.tendencies:
        if tendency.likelihood >= min_likelihood:
            name = normalize_behavior(tendency.behavior)
            if not name:
                continue
            found[name] = max(found.get(name, 0.0), tendency.likelihood)
    return found


def describe(pattern: CollectiveStrength, total_members: int) -> str:
    """Category-specific description of a detected pattern."""
    percentage = round(pattern.prevalence * 100)
    level = strength_level(pattern.strength)
    label = humanize(pattern.name)
    first_application = pattern.applications[0] if pattern.applications else None

    if pattern.category == StrengthCategory.BEHAVIORAL:
        return (
            f"{percentage}% of the group consistently demonstrates {label} behavior "
            f"({level} strength). This collective tendency creates a strong foundation "
            f"for {first_application or 'group activities'}."
        )
    if pattern.category == StrengthCategory.COGNITIVE:
        return (
            f"{percentage}% of members share a {label} cognitive style, indicating "
            f"aligned thinking patterns that enhance {first_application or 'problem-solving'}."
        )
    if pattern.category == StrengthCategory.VALUE:
        return (
            f"{pattern.member_count} out of {total_members} members share {label} as a "
            f"core value or motivation, creating strong alignment in "
            f"{first_application or 'group goals'}."
        )
    return (
        f"The group shows collective competence in {label}, with {percentage}% "
        f"demonstrating this skill at {level} proficiency."
    )


def _build(
    name: str,
    category: StrengthCategory,
    member_count: int,
    total: int,
    strength: float,
    applications: list[str],
) -> CollectiveStrength:
    prevalence = member_count / total
    strength = min(1.0, max(0.0, strength))
    draft = CollectiveStrength(
        id=str(uuid.uuid4()),
        name=name,
        category=category,
        prevalence=prevalence,
        strength=strength,
        member_count=member_count,
        confidence=pattern_confidence(prevalence, strength, member_count),
        applications=applications,
    )
    return draft.model_copy(update={"description": describe(draft, total)})


# ── Detector ──────────────────────────────────────────────────────────────


class StrengthDetector:
    """Detects collective strengths over a member set."""

    algorithm = "strength_detection_v1"

    def detect(self, profiles: list[MemberProfile]) -> list[CollectiveStrength]:
        if len(profiles) < MIN_GROUP_SIZE:
            logger.warning(
                "strength_detection_skipped",
                members=len(profiles),
                required=MIN_GROUP_SIZE,
            )
            return []

        patterns = (
            self.behavioral_patterns(profiles)
            + self.cognitive_patterns(profiles)
            + self.value_patterns(profiles)
            + self.emergent_patterns(profiles)
        )
        patterns.sort(key=lambda p: p.rank_score, reverse=True)

        logger.info(
            "strength_detection_completed",
            members=len(profiles),
            patterns_found=len(patterns),
        )
        return patterns

    def behavioral_patterns(self, profiles: list[MemberProfile]) -> list[CollectiveStrength]:
        holders: dict[str, list[float]] = {}
        for member in profiles:
            for name, likelihood in strong_tendencies(member).items():
                holders.setdefault(name, []).append(likelihood)

        required = required_members(len(profiles))
        patterns = []
        for name, likelihoods in holders.items():
            if len(likelihoods) < required:
                continue
            patterns.append(_build(
                name=name,
                category=PATTERN_TYPES.get(name, StrengthCategory.BEHAVIORAL),
                member_count=len(likelihoods),
                total=len(profiles),
                strength=sum(likelihoods) / len(likelihoods),
                applications=list(PATTERN_APPLICATIONS.get(name, [])),
            ))
        return patterns

    def cognitive_patterns(self, profiles: list[MemberProfile]) -> list[CollectiveStrength]:
        """Majority cognitive styles, plus majority communication styles."""
        style_members: dict[str, set[str]] = {}
        comm_members: dict[str, set[str]] = {}

        for member in profiles:
            if member.cognitive is not None:
                for style in (
                    member.cognitive.problem_solving_style,
                    member.cognitive.decision_making_style,
                    member.cognitive.learning_style,
                ):
                    key = normalize_behavior(style) if style else ""
                    if key:
                        style_members.setdefault(key, set()).add(member.member_id)

            comm = normalize_behavior(member.communication_style or "")
            if comm:
                comm_members.setdefault(comm, set()).add(member.member_id)

        required = required_members(len(profiles))
        patterns = []
        for style, members in style_members.items():
            if len(members) >= required:
                patterns.append(_build(
                    name=f"{style}_thinking",
                    category=StrengthCategory.COGNITIVE,
                    member_count=len(members),
                    total=len(profiles),
                    strength=STYLE_PATTERN_STRENGTH,
                    applications=list(COGNITIVE_APPLICATIONS.get(style, ["problem_solving", "decision_making"])),
                ))
        for style, members in comm_members.items():
            if len(members) >= required:
                patterns.append(_build(
                    name=f"{style}_communication",
                    category=StrengthCategory.BEHAVIORAL,
                    member_count=len(members),
                    total=len(profiles),
                    strength=STYLE_PATTERN_STRENGTH,
                    applications=list(COMMUNICATION_APPLICATIONS.get(style, ["team_meetings", "collaboration"])),
                ))
        return patterns

    def value_patterns(self, profiles: list[MemberProfile]) -> list[CollectiveStrength]:
        # value → member_id → strength (one entry per member)
        holders: dict[str, dict[str, float]] = {}

        for member in profiles:
            if member.values is None:
                continue
            for value in member.core_values:
                holders.setdefault(value, {})[member.member_id] = 1.0
            for driver in member.motivation_drivers:
                if driver.strength >= MIN_LIKELIHOOD:
                    key = f"motivation_{driver.driver}"
                    per_member = holders.setdefault(key, {})
                    per_member[member.member_id] = max(per_member.get(member.member_id, 0.0), driver.strength)

        required = required_members(len(profiles))
        patterns = []
        for value, per_member in holders.items():
            if len(per_member) < required:
                continue
            patterns.append(_build(
                name=value,
                category=StrengthCategory.VALUE,
                member_count=len(per_member),
                total=len(profiles),
                strength=sum(per_member.values()) / len(per_member),
                applications=list(VALUE_APPLICATIONS.get(value, ["group_culture", "decision_making"])),
            ))
        return patterns

    def emergent_patterns(self, profiles: list[MemberProfile]) -> list[CollectiveStrength]:
        def has(member: MemberProfile, behavior: str) -> bool:
            return behavior in strong_tendencies(member)

        def high_performer(m: MemberProfile) -> bool:
            return has(m, "initiative_taking") and has(m, "accountability") and has(m, "collaboration")

        def creative(m: MemberProfile) -> bool:
            divergent = (
                m.cognitive is not None
                and normalize_behavior(m.cognitive.problem_solving_style or "") == "divergent"
            )
            return has(m, "creative_solutions") or (has(m, "openness") and divergent)

        def emotionally_intelligent(m: MemberProfile) -> bool:
            empathic = m.empathy_level is not None and m.empathy_level > 70
            return empathic or (has(m, "emotional_validation") and has(m, "active_listening"))

        composites: list[tuple[str, StrengthCategory, float, list[str], Callable[[MemberProfile], bool]]] = [
            (
                "high_performing_team", StrengthCategory.BEHAVIORAL, 0.85,
                ["project_execution", "goal_achievement", "innovation"], high_performer,
            ),
            (
                "creative_collective", StrengthCategory.COGNITIVE, 0.8,
                ["brainstorming", "product_development", "problem_solving"], creative,
            ),
            (
                "emotional_intelligence", StrengthCategory.BEHAVIORAL, 0.82,
                ["team_support", "client_relations", "conflict_resolution"], emotionally_intelligent,
            ),
        ]

        required = required_members(len(profiles))
        patterns = []
        for name, category, strength, applications, predicate in composites:
            count = sum(1 for m in profiles if predicate(m))
            if count >= required:
                patterns.append(_build(
                    name=name,
                    category=category,
                    member_count=count,
                    total=len(profiles),
                    strength=strength,
                    applications=applications,
                ))
        return patterns


# ── Group-level extras ────────────────────────────────────────────────────


def identify_gaps(strengths: list[CollectiveStrength], desired: list[str]) -> list[str]:
    """Desired capabilities the group does not show as a strength."""
    present = {s.name for s in strengths}
    return [capability for capability in desired if capability not in present]


def diversity_index(profiles: list[MemberProfile]) -> float:
    """
    Shannon diversity over problem-solving style, conflict style and core
    values, averaged across the three dimensions and normalised by ln(N).
    """
    n = len(profiles)
    if n < 2:
        return 0.0

    dimensions: list[Counter] = [Counter(), Counter(), Counter()]
    for member in profiles:
        if member.cognitive and member.cognitive.problem_solving_style:
            dimensions[0][member.cognitive.problem_solving_style] += 1
        if member.conflict_style:
            dimensions[1][member.conflict_style] += 1
        for value in set(member.core_values):
            dimensions[2][value] += 1

    def shannon(counts: Counter) -> float:
        if len(counts) <= 1:
            return 0.0
        index = 0.0
        for count in counts.values():
            proportion = count / n
            index -= proportion * math.log(proportion)
        return index

    average = sum(shannon(c) for c in dimensions) / len(dimensions)
    return min(average / math.log(n), 1.0)


