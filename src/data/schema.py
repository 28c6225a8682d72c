"""Data schema definitions for profiles, queue entries and matches"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionType(str, Enum):
    """Kinds of live session a user can request"""
    LEARNING = "learning"
    TEACHING = "teaching"
    COLLABORATION = "collaboration"


class Urgency(str, Enum):
    """User-declared priority tier"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CommunicationStyle(str, Enum):
    FORMAL = "formal"
    CASUAL = "casual"
    BALANCED = "balanced"


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


# ═══════════════════════════════════════════════════════════════════
# Profile snapshot (owned by the external profile store)
# ═══════════════════════════════════════════════════════════════════

class UserSkill(BaseModel):
    """A skill a user holds, with self-declared proficiency"""

    skill_name: str
    proficiency_level: int = Field(ge=1, le=5)
    verified: bool = False
    endorsements: int = Field(0, ge=0)
    category: Optional[str] = None


class TimeSlot(BaseModel):
    """Time-of-day interval, "HH:MM" strings"""

    start: str
    end: str


# weekday name -> ordered, non-overlapping slots
AvailabilitySchedule = dict[str, list[TimeSlot]]


class UserPreferences(BaseModel):
    preferred_session_types: list[SessionType] = Field(default_factory=list)
    max_session_duration: int = 60  # minutes
    communication_style: Optional[CommunicationStyle] = None
    availability_schedule: Optional[AvailabilitySchedule] = None
    language_preferences: list[str] = Field(default_factory=list)


class UserStats(BaseModel):
    total_sessions: int = 0
    average_rating: Optional[float] = None
    current_streak: int = 0
    longest_streak: int = 0
    last_session_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Profile(BaseModel):
    """Immutable per-operation snapshot of a user's matching-relevant data"""

    model_config = ConfigDict(frozen=True)

    user_id: str
    timezone: Optional[str] = None  # IANA name, e.g. "America/New_York"
    is_active: bool = True
    skills: list[UserSkill] = Field(default_factory=list)
    preferences: Optional[UserPreferences] = None
    stats: Optional[UserStats] = None


# ═══════════════════════════════════════════════════════════════════
# Queue
# ═══════════════════════════════════════════════════════════════════

class MatchingRequest(BaseModel):
    """A user's request to be paired; immutable once submitted"""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    preferred_skills: list[str] = Field(default_factory=list)
    session_type: SessionType
    max_duration: int = Field(gt=0)  # minutes
    urgency: Urgency = Urgency.MEDIUM

    @field_validator("user_id")
    @classmethod
    def _user_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user_id must not be blank")
        return value

    @field_validator("preferred_skills")
    @classmethod
    def _unique_skill_names(cls, value: list[str]) -> list[str]:
        seen = set()
        for name in value:
            key = name.strip().lower()
            if not key:
                raise ValueError("preferred skill names must not be blank")
            if key in seen:
                raise ValueError(f"duplicate preferred skill: {name}")
            seen.add(key)
        return value


class QueueEntry(BaseModel):
    """A pending request plus bookkeeping; priority/expiry are derived at read time"""

    request: MatchingRequest
    enqueued_at: datetime
    version: str
    priority: float = 0.0
    expires_at: datetime

    @property
    def user_id(self) -> str:
        return self.request.user_id

    @property
    def session_type(self) -> SessionType:
        return self.request.session_type

    @property
    def urgency(self) -> Urgency:
        return self.request.urgency


class QueueStatus(BaseModel):
    user_id: str
    position: int  # 1-based
    total_in_queue: int
    estimated_wait_seconds: float
    average_match_time_seconds: float
    priority: float
    expires_at: datetime


class QueueStats(BaseModel):
    total_in_queue: int = 0
    by_session_type: dict[str, int] = Field(default_factory=dict)
    by_urgency: dict[str, int] = Field(default_factory=dict)
    average_wait_minutes: float = 0.0
    average_match_time_seconds: float = 0.0
    matches_per_hour: int = 0
    peak_hours: dict[int, int] = Field(default_factory=dict)  # hour of day -> enqueues


# ═══════════════════════════════════════════════════════════════════
# Matching results
# ═══════════════════════════════════════════════════════════════════

class CompatibilityResult(BaseModel):
    """Per-component scores in [0, 1] and their weighted total"""

    skill: float = Field(ge=0.0, le=1.0)
    timezone: float = Field(ge=0.0, le=1.0)
    availability: float = Field(ge=0.0, le=1.0)
    communication: float = Field(ge=0.0, le=1.0)
    session_history: float = Field(ge=0.0, le=1.0)
    total_score: float = Field(ge=0.0)

    def components(self) -> dict[str, float]:
        return {
            "skill": self.skill,
            "timezone": self.timezone,
            "availability": self.availability,
            "communication": self.communication,
            "session_history": self.session_history,
        }


class Match(BaseModel):
    """A decided pairing; both queue entries were removed atomically"""

    user_id_a: str
    user_id_b: str
    session_id: str
    compatibility_score: float
    session_type: SessionType
    breakdown: CompatibilityResult
    recommended_duration: int  # minutes
    matched_at: datetime
