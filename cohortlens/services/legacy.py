"""
Legacy profile-shape transform.

Older shared payloads carry raw Big Five scores (0-100) and a few free-text
collaboration fields instead of the current embedding + style shape. This
module maps them onto the current shape on a best-effort basis. It is
lossy and not authoritative:

- embedding = the five Big Five scores / 100; a missing score takes the
  neutral 0.5 used for missing factors, and with no numeric score at all
  the embedding is absent
- communication / conflict / cognitive styles that the legacy shape never
  recorded are left absent rather than guessed
- social energy = raw extraversion (0-100) when present
- empathy strings map onto the 0-100 scale (low 30 ... very high 90)
"""

from typing import Any, Optional

from cohortlens.engines.compatibility import NEUTRAL_SCORE

BIG_FIVE_ORDER = ("openness", "conscientiousness", "extraversion", "agreeableness", "neuroticism")

EMPATHY_LEVELS: dict[str, float] = {
    "low": 30.0,
    "moderate": 50.0,
    "medium": 50.0,
    "high": 70.0,
    "very high": 90.0,
}


def is_legacy_personality(data: dict) -> bool:
    return bool(data.get("bigFive")) and not data.get("embedding")


def is_legacy_cognitive(data: dict) -> bool:
    return data.get("iqScore") is not None and not (
        data.get("problemSolvingStyle") or data.get("problem_solving_style")
    )


def is_legacy_full_profile(data: dict) -> bool:
    personality = data.get("personality") or {}
    return bool(personality.get("bigFive")) and not personality.get("embedding")


def big_five_embedding(big_five: dict[str, Any]) -> Optional[list[float]]:
    scores = [big_five.get(trait) for trait in BIG_FIVE_ORDER]
    if not any(isinstance(s, (int, float)) for s in scores):
        return None
    return [
        min(1.0, max(0.0, float(s) / 100.0)) if isinstance(s, (int, float)) else NEUTRAL_SCORE
        for s in scores
    ]


def parse_empathy_level(value: Any) -> Optional[float]:
    """Map an empathy label to 0-100; numbers pass through, unknown → absent."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return EMPATHY_LEVELS.get(str(value).strip().lower())


def _numeric_traits(big_five: dict[str, Any]) -> dict[str, float]:
    return {k: float(v) for k, v in big_five.items() if isinstance(v, (int, float))}


def transform_legacy_personality(data: dict) -> dict:
    big_five = data.get("bigFive") or {}
    return {
        "embedding": big_five_embedding(big_five),
        "traits": _numeric_traits(big_five),
        "interpersonalStyle": data.get("mbti"),
        "communicationStyle": None,
        "conflictResolutionStyle": None,
    }


def transform_legacy_cognitive(data: dict) -> Optional[dict]:
    """
    Legacy cognitive data is an IQ-style score with no recorded styles.

    Only a learning style, when one was kept, carries over; otherwise the
    sub-record is absent rather than given a guessed problem-solving style.
    """
    learning = data.get("learningStyle") or data.get("learning_style")
    if not learning:
        return None
    return {"problemSolvingStyle": None, "decisionMakingStyle": None, "learningStyle": learning}


def transform_legacy_full_profile(data: dict) -> dict:
    personality = data.get("personality") or {}
    collaboration = data.get("collaboration") or {}
    communication = data.get("communication") or {}
    big_five = personality.get("bigFive") or {}

    extraversion = big_five.get("extraversion")
    social_energy = (
        min(100.0, max(0.0, float(extraversion)))
        if isinstance(extraversion, (int, float))
        else None
    )
    empathy = parse_empathy_level(collaboration.get("empathyLevel"))

    behavioral = None
    if social_energy is not None or empathy is not None:
        behavioral = {
            "tendencies": None,
            "socialEnergy": social_energy,
            "empathyLevel": empathy,
        }

    core = personality.get("dominantTraits") or None
    return {
        "personality": {
            "embedding": big_five_embedding(big_five),
            "traits": _numeric_traits(big_five),
            "interpersonalStyle": personality.get("mbti"),
            "communicationStyle": communication.get("style"),
            "conflictResolutionStyle": collaboration.get("conflictStyle"),
        },
        "cognitive": None,
        "behavioral": behavioral,
        "values": {"core": core, "motivationDrivers": None} if core else None,
    }
