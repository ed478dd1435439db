"""
Conflict Risk Predictor.

Eight independent rules, each emitting zero or more ConflictRisk entries:
resolution-style mismatch, empathy gap, energy polarization, communication
clash, value misalignment, expectation divergence, leadership contention
and work-style friction.

Rules set probability and impact only. Severity and risk score are derived
on the model from probability × impact. Mitigation strategies come from a
static per-type table after scoring.
"""

import math
import uuid
from typing import Optional

import structlog

from cohortlens.schemas.analysis import ConflictRisk, RiskSummary, Severity
from cohortlens.schemas.profile import MemberProfile

logger = structlog.get_logger(__name__)


# ── Configuration ─────────────────────────────────────────────────────────

MISMATCH_PROBABILITY_CAP = 0.95
EMPATHY_STD_THRESHOLD = 40.0
ENERGY_MIN_SAMPLES = 3
ENERGY_DOMINANCE_RATIO = 0.8
HIGH_ENERGY = 70.0
LOW_ENERGY = 30.0
STRONG_DRIVER = 0.7
LEADER_THRESHOLD = 3
WORK_STYLE_IMBALANCE = 0.3

RISK_IMPACT: dict[str, float] = {
    "resolution_mismatch": 0.8,
    "empathy_gap": 0.7,
    "energy_imbalance": 0.6,
    "communication_clash": 0.7,
    "value_misalignment": 0.9,
    "expectation_divergence": 0.6,
    "leadership_conflict": 0.8,
    "work_style_friction": 0.5,
}

STYLE_CONFLICTS: dict[str, list[str]] = {
    "competing": ["avoiding", "accommodating"],
    "collaborating": ["avoiding"],
    "compromising": [],
    "avoiding": ["competing", "collaborating"],
    "accommodating": ["competing"],
}

COMMUNICATION_FRICTION: dict[str, list[str]] = {
    "direct": ["indirect"],
    "supportive": [],
    "analytical": ["indirect"],
    "indirect": ["direct", "analytical"],
}

ANTAGONISTIC_VALUES: list[tuple[str, str]] = [
    ("innovation", "stability"),
    ("competition", "collaboration"),
    ("autonomy", "teamwork"),
    ("speed", "quality"),
    ("transparency", "privacy"),
]

TRIGGERS: dict[str, list[str]] = {
    "resolution_mismatch": [
        "Team disagreements", "Project conflicts",
        "Resource allocation disputes", "Priority setting discussions",
    ],
    "empathy_gap": [
        "Emotional discussions", "Personal feedback sessions",
        "Support requests", "Team bonding activities",
    ],
    "energy_high": [
        "Long meetings", "Brainstorming sessions", "Social events", "Collaborative work",
    ],
    "energy_low": [
        "Group presentations", "Networking requirements", "Open discussions", "Team building",
    ],
    "communication_clash": [
        "Important announcements", "Feedback sessions", "Project updates", "Decision discussions",
    ],
    "value_misalignment": [
        "Strategic planning", "Priority setting", "Resource allocation", "Culture discussions",
    ],
    "expectation_divergence": [
        "Meeting frequency", "Response time expectations",
        "Participation requirements", "Commitment levels",
    ],
    "leadership_conflict": [
        "Decision making", "Project leadership", "Strategic planning", "Crisis situations",
    ],
    "work_style_friction": [
        "Project planning", "Deadline management", "Process definition", "Documentation requirements",
    ],
}

MITIGATION_STRATEGIES: dict[str, list[str]] = {
    "resolution_mismatch": [
        "Establish clear conflict resolution protocols",
        "Create safe spaces for both direct and indirect communication",
        "Use a mediator for important disagreements",
        "Set ground rules that respect different styles",
        "Schedule regular check-ins to prevent issue buildup",
    ],
    "empathy_gap": [
        "Implement structured empathy-building exercises",
        "Create opportunities for personal story sharing",
        "Use perspective-taking activities in meetings",
        "Establish emotional check-in rituals",
        "Provide empathy training resources",
    ],
    "energy_imbalance": [
        "Balance meeting formats (large group vs small)",
        "Offer multiple participation channels (verbal, written, async)",
        "Create quiet reflection time in discussions",
        "Rotate leadership of activities",
        "Respect different energy recharge needs",
    ],
    "communication_clash": [
        "Define clear communication protocols",
        "Use written summaries for important decisions",
        "Practice active listening techniques",
        "Clarify expectations explicitly",
        "Create communication preference profiles",
    ],
    "value_misalignment": [
        "Find shared higher-order values",
        "Create space for value diversity discussions",
        "Focus on common goals despite different approaches",
        "Establish value-based decision criteria",
        "Celebrate diverse perspectives as strength",
    ],
    "expectation_divergence": [
        "Set explicit participation agreements",
        "Create flexible engagement options",
        "Define minimum and optional activities",
        "Regular expectation alignment discussions",
        "Document and revisit group norms",
    ],
    "leadership_conflict": [
        "Rotate leadership responsibilities",
        "Define clear roles and domains",
        "Use collaborative decision-making processes",
        "Channel leadership energy into complementary areas",
        "Establish shared leadership model",
    ],
    "work_style_friction": [
        "Create process flexibility options",
        "Balance structure with adaptability",
        "Use hybrid planning approaches",
        "Respect different work rhythms",
        "Define outcome focus over process",
    ],
}

GENERIC_MITIGATIONS: list[str] = [
    "Foster open communication",
    "Build mutual understanding",
    "Focus on shared goals",
    "Practice patience and respect",
]


# ── Helpers ───────────────────────────────────────────────────────────────


def mismatch_probability(size_a: int, size_b: int, total: int) -> float:
    """Higher when both sides of a divide are large and evenly matched."""
    prop_a = size_a / total
    prop_b = size_b / total
    balance = 1 - abs(prop_a - prop_b)
    return min(prop_a * prop_b * 2 * balance, MISMATCH_PROBABILITY_CAP)


def mitigations_for(risk_type: str) -> list[str]:
    return list(MITIGATION_STRATEGIES.get(risk_type, GENERIC_MITIGATIONS))


def _norm(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def _unique(ids: list[str]) -> list[str]:
    return list(dict.fromkeys(ids))


def _risk(
    risk_type: str,
    affected: list[str],
    probability: float,
    description: str,
    trigger_key: Optional[str] = None,
) -> ConflictRisk:
    return ConflictRisk(
        id=str(uuid.uuid4()),
        type=risk_type,
        affected_members=_unique(affected),
        probability=min(1.0, max(0.0, probability)),
        impact=RISK_IMPACT[risk_type],
        description=description,
        triggers=list(TRIGGERS[trigger_key or risk_type]),
    )


def _group_by(profiles: list[MemberProfile], attr: str) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {}
    for member in profiles:
        style = _norm(getattr(member, attr))
        if style:
            groups.setdefault(style, []).append(member.member_id)
    return groups


def _has_driver(member: MemberProfile, driver: str) -> bool:
    return any(
        _norm(d.driver) == driver and d.strength > STRONG_DRIVER
        for d in member.motivation_drivers
    )


# ── Rules ─────────────────────────────────────────────────────────────────


def detect_resolution_mismatch(profiles: list[MemberProfile]) -> list[ConflictRisk]:
    styles = _group_by(profiles, "conflict_style")
    risks = []
    seen: set[frozenset] = set()
    for style_a, members_a in styles.items():
        for style_b in STYLE_CONFLICTS.get(style_a, []):
            members_b = styles.get(style_b)
            pair = frozenset((style_a, style_b))
            if not members_b or pair in seen:
                continue
            seen.add(pair)
            risks.append(_risk(
                "resolution_mismatch",
                members_a + members_b,
                mismatch_probability(len(members_a), len(members_b), len(profiles)),
                f"Group has both {style_a} ({len(members_a)} members) and {style_b} "
                f"({len(members_b)} members) conflict resolution styles. This can lead to "
                f"unresolved tensions when {style_a} members want to address issues while "
                f"{style_b} members withdraw.",
            ))
    return risks


def detect_empathy_gap(profiles: list[MemberProfile]) -> list[ConflictRisk]:
    levels = [(m.member_id, m.empathy_level) for m in profiles if m.empathy_level is not None]
    if len(levels) < 2:
        return []

    values = [level for _, level in levels]
    mean = sum(values) / len(values)
    std_dev = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
    if std_dev <= EMPATHY_STD_THRESHOLD:
        return []

    high = [mid for mid, level in levels if level > mean + std_dev]
    low = [mid for mid, level in levels if level < mean - std_dev]
    if not high or not low:
        return []

    return [_risk(
        "empathy_gap",
        high + low,
        0.7,
        f"Significant empathy gap detected. {len(high)} members show high empathy "
        f"(above {mean + std_dev:.0f}) while {len(low)} members show low empathy "
        f"(below {mean - std_dev:.0f}). This can lead to misunderstandings and hurt feelings.",
    )]


def detect_energy_imbalance(profiles: list[MemberProfile]) -> list[ConflictRisk]:
    energies = [m.social_energy for m in profiles if m.social_energy is not None]
    if len(energies) < ENERGY_MIN_SAMPLES:
        return []

    total = len(energies)
    high = sum(1 for e in energies if e > HIGH_ENERGY)
    low = sum(1 for e in energies if e < LOW_ENERGY)
    everyone = [m.member_id for m in profiles]

    if high / total > ENERGY_DOMINANCE_RATIO:
        return [_risk(
            "energy_imbalance", everyone, 0.6,
            f"Group is dominated by high-energy extroverts ({high}/{total}). "
            f"May lack reflection time and overwhelm quieter voices.",
            trigger_key="energy_high",
        )]
    if low / total > ENERGY_DOMINANCE_RATIO:
        return [_risk(
            "energy_imbalance", everyone, 0.6,
            f"Group is dominated by low-energy introverts ({low}/{total}). "
            f"May struggle with group dynamics and spontaneous collaboration.",
            trigger_key="energy_low",
        )]
    return []


def detect_communication_clash(profiles: list[MemberProfile]) -> list[ConflictRisk]:
    styles = _group_by(profiles, "communication_style")
    risks = []
    seen: set[frozenset] = set()
    for style_a, members_a in styles.items():
        for style_b in COMMUNICATION_FRICTION.get(style_a, []):
            members_b = styles.get(style_b)
            pair = frozenset((style_a, style_b))
            if not members_b or pair in seen:
                continue
            seen.add(pair)
            risks.append(_risk(
                "communication_clash",
                members_a + members_b,
                mismatch_probability(len(members_a), len(members_b), len(profiles)),
                f"Communication style mismatch between {style_a} communicators "
                f"({len(members_a)}) and {style_b} communicators ({len(members_b)}). "
                f"May lead to misunderstandings and frustration.",
            ))
    return risks


def detect_value_misalignment(profiles: list[MemberProfile]) -> list[ConflictRisk]:
    member_values = {
        m.member_id: {_norm(v) for v in m.core_values if _norm(v)}
        for m in profiles
        if m.values is not None and m.values.core
    }
    risks = []
    for value_a, value_b in ANTAGONISTIC_VALUES:
        count_a = sum(1 for values in member_values.values() if value_a in values)
        count_b = sum(1 for values in member_values.values() if value_b in values)
        if count_a == 0 or count_b == 0:
            continue
        affected = [
            mid for mid, values in member_values.items()
            if value_a in values or value_b in values
        ]
        risks.append(_risk(
            "value_misalignment",
            affected,
            (count_a + count_b) / (len(profiles) * 2),
            f'Value conflict between "{value_a}" ({count_a} members) and "{value_b}" '
            f"({count_b} members). This fundamental difference can create tension in "
            f"decision-making.",
        ))
    return risks


def detect_expectation_divergence(profiles: list[MemberProfile]) -> list[ConflictRisk]:
    """High vs low participation expectations. Missing energy counts for neither side."""
    high = [
        m.member_id for m in profiles
        if _has_driver(m, "achievement")
        or (m.social_energy is not None and m.social_energy > HIGH_ENERGY)
    ]
    low = [
        m.member_id for m in profiles
        if _has_driver(m, "autonomy")
        or (m.social_energy is not None and m.social_energy < LOW_ENERGY)
    ]
    if not high or not low:
        return []

    return [_risk(
        "expectation_divergence",
        high + low,
        0.6,
        f"Different expectations for group participation. {len(high)} members expect "
        f"high engagement while {len(low)} prefer minimal commitment.",
    )]


def detect_leadership_conflict(profiles: list[MemberProfile]) -> list[ConflictRisk]:
    def is_leader(m: MemberProfile) -> bool:
        leads = any(
            "leadership" in t.behavior.lower() and t.likelihood > STRONG_DRIVER
            for t in m.tendencies
        )
        return leads or _has_driver(m, "power") or _norm(m.conflict_style) == "competing"

    leaders = [m.member_id for m in profiles if is_leader(m)]
    if len(leaders) < LEADER_THRESHOLD:
        return []

    return [_risk(
        "leadership_conflict",
        leaders,
        len(leaders) / len(profiles),
        f"Multiple strong leadership personalities ({len(leaders)}) may compete for "
        f"influence and direction-setting.",
    )]


def detect_work_style_friction(profiles: list[MemberProfile]) -> list[ConflictRisk]:
    def styles(m: MemberProfile) -> tuple[Optional[str], Optional[str]]:
        if m.cognitive is None:
            return None, None
        return _norm(m.cognitive.problem_solving_style), _norm(m.cognitive.decision_making_style)

    systematic = [
        m.member_id for m in profiles
        if styles(m)[0] == "systematic" or styles(m)[1] == "analytical"
    ]
    adaptive = [
        m.member_id for m in profiles
        if styles(m)[0] == "intuitive" or styles(m)[1] == "spontaneous"
    ]
    if not systematic or not adaptive:
        return []

    imbalance = abs(len(systematic) - len(adaptive)) / (len(systematic) + len(adaptive))
    if imbalance <= WORK_STYLE_IMBALANCE:
        return []

    return [_risk(
        "work_style_friction",
        systematic + adaptive,
        0.5,
        f"Work style differences between systematic planners ({len(systematic)}) "
        f"and adaptive improvisers ({len(adaptive)}).",
    )]


RULES = (
    detect_resolution_mismatch,
    detect_empathy_gap,
    detect_energy_imbalance,
    detect_communication_clash,
    detect_value_misalignment,
    detect_expectation_divergence,
    detect_leadership_conflict,
    detect_work_style_friction,
)


# ── Predictor ─────────────────────────────────────────────────────────────


class RiskPredictor:
    """Runs every rule and returns risks sorted by probability × impact."""

    algorithm = "conflict_prediction_v1"

    def predict(self, profiles: list[MemberProfile]) -> list[ConflictRisk]:
        if len(profiles) < 2:
            logger.warning("risk_prediction_skipped", members=len(profiles))
            return []

        risks: list[ConflictRisk] = []
        for rule in RULES:
            risks.extend(rule(profiles))

        risks.sort(key=lambda r: r.risk_score, reverse=True)
        risks = [
            r.model_copy(update={"mitigation_strategies": mitigations_for(r.type)})
            for r in risks
        ]

        logger.info(
            "risk_prediction_completed",
            members=len(profiles),
            risks_found=len(risks),
            critical=sum(1 for r in risks if r.severity == Severity.CRITICAL),
        )
        return risks


def summarize(risks: list[ConflictRisk]) -> RiskSummary:
    """Per-severity counts, top risk, overall label and headline actions."""
    counts = {level: 0 for level in Severity}
    for risk in risks:
        counts[risk.severity] += 1

    if counts[Severity.CRITICAL] > 0:
        level = "Critical attention needed"
    elif counts[Severity.HIGH] > 2:
        level = "High risk - proactive intervention recommended"
    elif counts[Severity.MEDIUM] > 3:
        level = "Moderate risk - monitoring advised"
    else:
        level = "Low risk - healthy dynamics"

    types = {r.type for r in risks}
    recommendations = []
    if counts[Severity.CRITICAL] > 0:
        recommendations.append("Address critical risks immediately with group discussion")
    if "resolution_mismatch" in types:
        recommendations.append("Establish conflict resolution protocols")
    if "communication_clash" in types:
        recommendations.append("Create communication guidelines and norms")
    if "value_misalignment" in types:
        recommendations.append("Facilitate values alignment workshop")

    top = max(risks, key=lambda r: r.risk_score) if risks else None
    return RiskSummary(
        critical_count=counts[Severity.CRITICAL],
        high_count=counts[Severity.HIGH],
        medium_count=counts[Severity.MEDIUM],
        low_count=counts[Severity.LOW],
        top_risk=top.type if top else None,
        overall_risk_level=level,
        recommendations=recommendations,
    )
