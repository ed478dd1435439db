"""
Member profile schemas.

Each sub-record is optional. ``None`` means the member shared no data of
that kind; engines must treat it as absent and never as zero.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PersonalityProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    embedding: Optional[list[float]] = None
    traits: Optional[dict[str, float]] = None
    interpersonal_style: Optional[str] = None
    communication_style: Optional[str] = None
    conflict_style: Optional[str] = None


class Tendency(BaseModel):
    """A behavioral tendency with the likelihood (0-1) the member shows it."""

    model_config = ConfigDict(frozen=True)

    behavior: str
    likelihood: float = Field(ge=0.0, le=1.0)
    contexts: list[str] = Field(default_factory=list)


class BehavioralProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    tendencies: Optional[list[Tendency]] = None
    social_energy: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    empathy_level: Optional[float] = Field(default=None, ge=0.0, le=100.0)


class CognitiveProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    problem_solving_style: Optional[str] = None
    decision_making_style: Optional[str] = None
    learning_style: Optional[str] = None


class MotivationDriver(BaseModel):
    model_config = ConfigDict(frozen=True)

    driver: str
    strength: float = Field(ge=0.0, le=1.0)


class ValuesProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    core: Optional[list[str]] = None
    motivation_drivers: Optional[list[MotivationDriver]] = None


class MemberProfile(BaseModel):
    """One group member's shared data, merged across data types."""

    model_config = ConfigDict(frozen=True)

    member_id: str
    personality: Optional[PersonalityProfile] = None
    behavioral: Optional[BehavioralProfile] = None
    cognitive: Optional[CognitiveProfile] = None
    values: Optional[ValuesProfile] = None
    shared_at: Optional[datetime] = None
    data_types: list[str] = Field(default_factory=list)

    @property
    def communication_style(self) -> Optional[str]:
        return self.personality.communication_style if self.personality else None

    @property
    def conflict_style(self) -> Optional[str]:
        return self.personality.conflict_style if self.personality else None

    @property
    def social_energy(self) -> Optional[float]:
        return self.behavioral.social_energy if self.behavioral else None

    @property
    def empathy_level(self) -> Optional[float]:
        return self.behavioral.empathy_level if self.behavioral else None

    @property
    def tendencies(self) -> list[Tendency]:
        if self.behavioral and self.behavioral.tendencies:
            return list(self.behavioral.tendencies)
        return []

    @property
    def motivation_drivers(self) -> list[MotivationDriver]:
        if self.values and self.values.motivation_drivers:
            return list(self.values.motivation_drivers)
        return []

    @property
    def core_values(self) -> list[str]:
        if self.values and self.values.core:
            return list(self.values.core)
        return []
