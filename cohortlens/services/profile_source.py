"""
Profile Source — loads and decrypts the member profiles shared with a group.

Rows are read newest-first; for each member the newest row of each data
type wins. A row that fails decryption, JSON parsing or validation is
dropped on its own: that member's data of that type is simply absent.
"""

import json
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cohortlens.db.models import SharedProfileData
from cohortlens.exceptions import DecryptionFailure
from cohortlens.logging_config import short_id
from cohortlens.schemas.profile import (
    BehavioralProfile,
    CognitiveProfile,
    MemberProfile,
    PersonalityProfile,
    ValuesProfile,
)
from cohortlens.services import legacy
from cohortlens.services.encryption import GroupCipher

logger = structlog.get_logger(__name__)

SUB_RECORDS = ("personality", "behavioral", "cognitive", "values")


def _pick(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def parse_personality(data: Optional[dict]) -> Optional[PersonalityProfile]:
    if not data:
        return None
    if legacy.is_legacy_personality(data):
        data = legacy.transform_legacy_personality(data)
    return PersonalityProfile(
        embedding=_pick(data, "embedding"),
        traits=_pick(data, "traits"),
        interpersonal_style=_pick(data, "interpersonalStyle", "interpersonal_style"),
        communication_style=_pick(data, "communicationStyle", "communication_style"),
        conflict_style=_pick(data, "conflictResolutionStyle", "conflict_style", "conflictStyle"),
    )


def parse_behavioral(data: Optional[dict]) -> Optional[BehavioralProfile]:
    if not data:
        return None
    tendencies = _pick(data, "tendencies")
    return BehavioralProfile(
        tendencies=[
            {
                "behavior": t.get("behavior", ""),
                "likelihood": t.get("likelihood", 0.0),
                "contexts": t.get("contexts") or [],
            }
            for t in tendencies
        ] if tendencies is not None else None,
        social_energy=_pick(data, "socialEnergy", "social_energy"),
        empathy_level=legacy.parse_empathy_level(_pick(data, "empathyLevel", "empathy_level")),
    )


def parse_cognitive(data: Optional[dict]) -> Optional[CognitiveProfile]:
    if not data:
        return None
    if legacy.is_legacy_cognitive(data):
        data = legacy.transform_legacy_cognitive(data)
        if data is None:
            return None
    return CognitiveProfile(
        problem_solving_style=_pick(data, "problemSolvingStyle", "problem_solving_style"),
        decision_making_style=_pick(data, "decisionMakingStyle", "decision_making_style"),
        learning_style=_pick(data, "learningStyle", "learning_style"),
    )


def parse_values(data: Optional[dict]) -> Optional[ValuesProfile]:
    if not data:
        return None
    return ValuesProfile(
        core=_pick(data, "core"),
        motivation_drivers=_pick(data, "motivationDrivers", "motivation_drivers"),
    )


PARSERS = {
    "personality": parse_personality,
    "behavioral": parse_behavioral,
    "cognitive": parse_cognitive,
    "values": parse_values,
}


def parse_payload(data_type: str, payload: dict) -> dict[str, Any]:
    """Parse one decrypted payload into sub-record name → model (or None)."""
    if data_type == "full_profile":
        if legacy.is_legacy_full_profile(payload):
            payload = legacy.transform_legacy_full_profile(payload)
        return {name: PARSERS[name](payload.get(name)) for name in SUB_RECORDS}
    if data_type in PARSERS:
        return {data_type: PARSERS[data_type](payload)}
    return {}


class _MemberAccumulator:
    def __init__(self, member_id: str, shared_at: datetime):
        self.member_id = member_id
        self.shared_at = shared_at
        self.records: dict[str, Any] = {}
        self.data_types: list[str] = []

    def merge(self, data_type: str, parsed: dict[str, Any]) -> None:
        # Rows arrive newest-first: never overwrite a newer sub-record
        for name, record in parsed.items():
            if record is not None and name not in self.records:
                self.records[name] = record
        if data_type not in self.data_types:
            self.data_types.append(data_type)

    def build(self) -> MemberProfile:
        return MemberProfile(
            member_id=self.member_id,
            shared_at=self.shared_at,
            data_types=self.data_types,
            **self.records,
        )


class ProfileSource:
    """Reads shared_profile_data for a group and yields MemberProfiles."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], cipher: GroupCipher):
        self.session_factory = session_factory
        self.cipher = cipher

    async def fetch_member_profiles(self, group_id: str) -> list[MemberProfile]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SharedProfileData)
                .where(SharedProfileData.group_id == group_id)
                .order_by(SharedProfileData.shared_at.desc())
            )
            rows = result.scalars().all()

        members: dict[str, _MemberAccumulator] = {}
        dropped = 0

        for row in rows:
            member = members.get(row.user_id)
            if member is None:
                member = members[row.user_id] = _MemberAccumulator(row.user_id, row.shared_at)

            try:
                plaintext = self.cipher.decrypt_for_user(row.encrypted_data, row.user_id, group_id)
                payload = json.loads(plaintext.decode("utf-8"))
                if not isinstance(payload, dict):
                    raise ValueError("payload is not an object")
                parsed = parse_payload(row.data_type, payload)
            except DecryptionFailure:
                dropped += 1
                continue
            except (ValueError, ValidationError, AttributeError, TypeError) as e:
                dropped += 1
                logger.warning(
                    "profile_row_unparsable",
                    user_id=short_id(row.user_id),
                    data_type=row.data_type,
                    error=str(e),
                )
                continue

            member.merge(row.data_type, parsed)

        profiles = [m.build() for m in members.values()]
        logger.info(
            "member_profiles_loaded",
            group_id=group_id,
            members=len(profiles),
            rows=len(rows),
            dropped_rows=dropped,
            completeness=[
                {
                    "user_id": short_id(p.member_id),
                    "data_types": p.data_types,
                    "has_embedding": bool(p.personality and p.personality.embedding),
                    "has_behavioral": p.behavioral is not None,
                    "has_social_energy": p.social_energy is not None,
                }
                for p in profiles
            ],
        )
        return profiles
