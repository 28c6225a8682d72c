"""Collaborator store interfaces and in-memory implementations

The profile, session and session-history stores are owned by other parts of
the platform. The matching core depends only on the protocols below; the
in-memory classes back the API process by default and stand in for the real
stores in tests.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from src.data.schema import Profile, SessionType


class ProfileStore(Protocol):
    async def get_profile(self, user_id: str) -> Optional[Profile]: ...


class SessionStore(Protocol):
    async def create_session(self, user_id_a: str, user_id_b: str, session_type: SessionType) -> str: ...


class SessionHistoryStore(Protocol):
    async def get_prior_sessions(self, user_id_a: str, user_id_b: str, since: datetime) -> list[float]: ...


class InMemoryProfileStore:
    """Profile snapshots keyed by user_id"""

    def __init__(self, profiles: Optional[list[Profile]] = None):
        self._profiles: dict[str, Profile] = {}
        for profile in profiles or []:
            self.put(profile)

    def put(self, profile: Profile) -> None:
        self._profiles[profile.user_id] = profile

    def __len__(self) -> int:
        return len(self._profiles)

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        return self._profiles.get(user_id)

    @classmethod
    def from_file(cls, path: Path) -> "InMemoryProfileStore":
        """
        Load profiles from a JSON file containing a list of profile objects

        Args:
            path: Path to the JSON file

        Returns:
            Populated store
        """
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        store = cls([Profile.model_validate(item) for item in raw])
        logger.info(f"Loaded {len(store)} profiles from {path}")
        return store


@dataclass
class SessionRecord:
    session_id: str
    initiator_id: str
    partner_id: str
    session_type: SessionType
    created_at: datetime
    status: str = "scheduled"  # scheduled | completed
    rating_initiator: Optional[float] = None
    rating_partner: Optional[float] = None


@dataclass
class InMemorySessionStore:
    """Creates sessions and answers pair-history queries"""

    sessions: dict[str, SessionRecord] = field(default_factory=dict)

    async def create_session(self, user_id_a: str, user_id_b: str, session_type: SessionType) -> str:
        session_id = str(uuid.uuid4())
        self.sessions[session_id] = SessionRecord(
            session_id=session_id,
            initiator_id=user_id_a,
            partner_id=user_id_b,
            session_type=session_type,
            created_at=datetime.now(timezone.utc),
        )
        logger.info(f"Created session {session_id} for {user_id_a} <-> {user_id_b} ({session_type.value})")
        return session_id

    def complete_session(
        self,
        session_id: str,
        rating_initiator: Optional[float] = None,
        rating_partner: Optional[float] = None,
    ) -> None:
        record = self.sessions[session_id]
        record.status = "completed"
        record.rating_initiator = rating_initiator
        record.rating_partner = rating_partner

    async def get_prior_sessions(self, user_id_a: str, user_id_b: str, since: datetime) -> list[float]:
        """Ratings from completed sessions between the pair, both directions"""
        pair = {user_id_a, user_id_b}
        ratings: list[float] = []
        for record in self.sessions.values():
            if record.status != "completed" or record.created_at < since:
                continue
            if {record.initiator_id, record.partner_id} != pair:
                continue
            ratings.extend(
                r for r in (record.rating_initiator, record.rating_partner) if r is not None
            )
        return ratings
