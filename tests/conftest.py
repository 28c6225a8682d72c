"""Shared builders and fixtures for matching tests"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.config import MatchingConfig
from src.data.schema import (
    CommunicationStyle,
    MatchingRequest,
    Profile,
    SessionType,
    TimeSlot,
    Urgency,
    UserPreferences,
    UserSkill,
    UserStats,
)
from src.data.stores import InMemoryProfileStore, InMemorySessionStore
from src.matching.events import InMemoryTransport
from src.matching.matching_engine import MatchingEngine
from src.matching.priority_queue_store import PriorityQueueStore


EVENING_SCHEDULE = {
    day: [TimeSlot(start="18:00", end="21:00")]
    for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
}


def make_profile(user_id: str,
                 skills: Optional[dict[str, int]] = None,
                 tz: str = "America/New_York",
                 style: CommunicationStyle = CommunicationStyle.CASUAL,
                 languages: Optional[list[str]] = None,
                 max_duration: int = 60,
                 schedule=EVENING_SCHEDULE,
                 total_sessions: int = 10,
                 is_active: bool = True) -> Profile:
    """Profile with sensible defaults; skills maps name -> proficiency"""
    return Profile(
        user_id=user_id,
        timezone=tz,
        is_active=is_active,
        skills=[
            UserSkill(skill_name=name, proficiency_level=level)
            for name, level in (skills or {"javascript": 3}).items()
        ],
        preferences=UserPreferences(
            communication_style=style,
            availability_schedule=schedule,
            language_preferences=languages if languages is not None else ["english"],
            max_session_duration=max_duration,
        ),
        stats=UserStats(total_sessions=total_sessions),
    )


def make_request(user_id: str,
                 session_type: SessionType = SessionType.LEARNING,
                 skills: Optional[list[str]] = None,
                 urgency: Urgency = Urgency.MEDIUM,
                 max_duration: int = 60) -> MatchingRequest:
    return MatchingRequest(
        user_id=user_id,
        preferred_skills=skills if skills is not None else ["javascript"],
        session_type=session_type,
        max_duration=max_duration,
        urgency=urgency,
    )


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.now += timedelta(minutes=minutes, seconds=seconds)


class RecordingHandler:
    """Event feed subscriber that keeps every payload"""

    def __init__(self):
        self.events: list[dict] = []

    async def __call__(self, topic: str, payload: dict) -> None:
        self.events.append(payload)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return MatchingConfig()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def events(transport):
    handler = RecordingHandler()
    transport.subscribe("queue:update", handler)
    return handler


@pytest.fixture
def store(config, transport, clock):
    return PriorityQueueStore(config=config, transport=transport, clock=clock)


@pytest.fixture
def profile_store():
    return InMemoryProfileStore()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def engine(store, profile_store, session_store, config):
    return MatchingEngine(
        store=store,
        profile_store=profile_store,
        session_store=session_store,
        history_store=session_store,
        config=config,
    )
