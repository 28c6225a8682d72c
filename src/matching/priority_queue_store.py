"""Priority Queue Store - pending matching requests with urgency decay and expiry

One entry per user. Priority and expiry are derived from the entry's enqueue
time whenever it is read, so nothing stale is ever stored. All mutations run
in a short critical section acquired with a bounded timeout; pair claims are
optimistic compare-and-remove operations keyed on each entry's version.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

import numpy as np
from loguru import logger

from src.config import MatchingConfig
from src.data.schema import (
    Match,
    MatchingRequest,
    QueueEntry,
    QueueStats,
    QueueStatus,
    SessionType,
    Urgency,
)
from src.matching.errors import ConflictError, InfrastructureError
from src.matching.events import (
    MATCH_FOUND,
    QUEUE_EVENTS_TOPIC,
    QUEUE_REBALANCED,
    USER_JOINED,
    USER_LEFT,
    RealtimeTransport,
    make_event,
)


BASE_PRIORITY = {
    Urgency.HIGH: 1000.0,
    Urgency.MEDIUM: 500.0,
    Urgency.LOW: 100.0,
}
WAIT_POINTS_PER_MINUTE = 2.0
COLLABORATION_BONUS = 50.0

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_priority(request: MatchingRequest, enqueued_at: datetime, now: datetime) -> float:
    """base(urgency) + 2 points per minute waited + 50 for collaboration"""
    wait_minutes = max(0.0, (now - enqueued_at).total_seconds() / 60.0)
    priority = BASE_PRIORITY[request.urgency] + WAIT_POINTS_PER_MINUTE * wait_minutes
    if request.session_type == SessionType.COLLABORATION:
        priority += COLLABORATION_BONUS
    return priority


@dataclass
class _Slot:
    request: MatchingRequest
    enqueued_at: datetime
    version: str


@dataclass
class _Claim:
    claim_id: str
    slots: tuple[_Slot, _Slot]
    claimed_at: datetime


class PriorityQueueStore:
    """
    In-memory queue store with per-user secondary index

    Features:
    - Read-time priority and TTL-based visibility
    - Optimistic pair claims (compare-and-remove on entry versions)
    - Mutation events on a shared feed
    - Observed service times and enqueue history for status/stats
    """

    def __init__(self,
                 config: Optional[MatchingConfig] = None,
                 transport: Optional[RealtimeTransport] = None,
                 clock: Optional[Clock] = None,
                 history_size: int = 1000,
                 service_window: int = 100):
        self.config = config or MatchingConfig()
        self.transport = transport
        self.clock = clock or utc_now

        self._entries: dict[str, _Slot] = {}
        self._claims: dict[str, _Claim] = {}
        self._in_flight: dict[str, str] = {}  # user_id -> claim_id
        self._cancelled: set[str] = set()
        self._lock = asyncio.Lock()

        self._enqueue_history: deque[datetime] = deque(maxlen=history_size)
        self._service_times: deque[float] = deque(maxlen=service_window)
        self._match_times: deque[datetime] = deque(maxlen=history_size)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _critical(self):
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.config.store_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning("Queue store critical section timed out")
            raise InfrastructureError(
                "Queue store unavailable",
                details={"timeout_seconds": self.config.store_timeout_seconds},
            ) from e
        try:
            yield
        finally:
            self._lock.release()

    def expires_at(self, request: MatchingRequest, enqueued_at: datetime) -> datetime:
        return enqueued_at + timedelta(minutes=self.config.ttl_minutes[request.urgency])

    def _is_expired(self, slot: _Slot, now: datetime) -> bool:
        return now >= self.expires_at(slot.request, slot.enqueued_at)

    def _snapshot(self, slot: _Slot, now: datetime) -> QueueEntry:
        return QueueEntry(
            request=slot.request,
            enqueued_at=slot.enqueued_at,
            version=slot.version,
            priority=calculate_priority(slot.request, slot.enqueued_at, now),
            expires_at=self.expires_at(slot.request, slot.enqueued_at),
        )

    def _live_entries(self, now: datetime) -> list[QueueEntry]:
        """Unexpired, unclaimed entries ordered by descending priority"""
        entries = [
            self._snapshot(slot, now)
            for slot in self._entries.values()
            if not self._is_expired(slot, now)
        ]
        entries.sort(key=lambda e: (-e.priority, e.enqueued_at))
        return entries

    def average_match_time(self) -> float:
        """Observed mean seconds from enqueue to match"""
        if not self._service_times:
            return self.config.default_match_time_seconds
        return float(np.mean(self._service_times))

    async def _publish(self, event_type: str, data: dict) -> None:
        if self.transport is None:
            return
        try:
            await self.transport.publish(QUEUE_EVENTS_TOPIC, make_event(event_type, data))
        except Exception as e:
            logger.warning(f"Failed to publish {event_type} event: {e}")

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def upsert(self, request: MatchingRequest) -> QueueEntry:
        """
        Insert or replace the user's entry; re-joining resets the enqueue time

        Args:
            request: Validated matching request

        Returns:
            Snapshot of the new entry
        """
        now = self.clock()
        async with self._critical():
            replaced = request.user_id in self._entries
            slot = _Slot(request=request, enqueued_at=now, version=uuid.uuid4().hex)
            self._entries[request.user_id] = slot
            self._enqueue_history.append(now)
            entry = self._snapshot(slot, now)

        logger.info(
            f"{'Re-queued' if replaced else 'Queued'} {request.user_id} "
            f"({request.session_type.value}, {request.urgency.value}, priority={entry.priority:.1f})"
        )
        await self._publish(USER_JOINED, {
            "user_id": request.user_id,
            "session_type": request.session_type.value,
            "urgency": request.urgency.value,
            "priority": entry.priority,
            "expires_at": entry.expires_at.isoformat(),
        })
        return entry

    async def remove(self, user_id: str, reason: str = "left") -> bool:
        """
        Remove a user's entry (idempotent)

        A user whose entry is already claimed by an in-flight match is only
        flagged, so that a released claim does not put them back.

        Returns:
            True if a queued entry was removed
        """
        async with self._critical():
            slot = self._entries.pop(user_id, None)
            if user_id in self._in_flight:
                self._cancelled.add(user_id)

        if slot is None:
            return False

        logger.info(f"Removed {user_id} from queue ({reason})")
        await self._publish(USER_LEFT, {"user_id": user_id, "reason": reason})
        return True

    async def get(self, user_id: str) -> Optional[QueueEntry]:
        """Current entry for a user, or None if absent, expired or claimed"""
        now = self.clock()
        slot = self._entries.get(user_id)
        if slot is None or self._is_expired(slot, now):
            return None
        return self._snapshot(slot, now)

    def is_claimed(self, user_id: str) -> bool:
        return user_id in self._in_flight

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_next_candidates(
        self,
        session_types: Iterable[SessionType],
        exclude_user_id: str,
        limit: int = 20,
    ) -> list[QueueEntry]:
        """
        Highest-priority candidates of a compatible session type

        Args:
            session_types: Session types acceptable to the requester
            exclude_user_id: The requester
            limit: Maximum entries to return

        Returns:
            Unexpired entries ordered by descending priority, skipping users
            who are part of an in-flight claim
        """
        wanted = set(session_types)
        now = self.clock()
        candidates = [
            entry for entry in self._live_entries(now)
            if entry.user_id != exclude_user_id
            and entry.session_type in wanted
            and entry.user_id not in self._in_flight
        ]
        return candidates[:limit]

    async def get_status(self, user_id: str) -> Optional[QueueStatus]:
        """Position among compatible entries and estimated wait, or None if not queued"""
        now = self.clock()
        live = self._live_entries(now)
        own = next((entry for entry in live if entry.user_id == user_id), None)
        if own is None:
            return None

        compatible = set(self.config.compatible_session_types(own.session_type))
        ahead = sum(
            1 for entry in live
            if entry.user_id != user_id
            and entry.session_type in compatible
            and entry.priority > own.priority
        )
        position = ahead + 1
        average_match_time = self.average_match_time()

        return QueueStatus(
            user_id=user_id,
            position=position,
            total_in_queue=len(live),
            estimated_wait_seconds=position * average_match_time,
            average_match_time_seconds=average_match_time,
            priority=own.priority,
            expires_at=own.expires_at,
        )

    async def get_stats(self) -> QueueStats:
        now = self.clock()
        live = self._live_entries(now)

        by_type = Counter(entry.session_type.value for entry in live)
        by_urgency = Counter(entry.urgency.value for entry in live)
        waits = [(now - entry.enqueued_at).total_seconds() / 60.0 for entry in live]
        hour_ago = now - timedelta(hours=1)

        return QueueStats(
            total_in_queue=len(live),
            by_session_type={t.value: by_type.get(t.value, 0) for t in SessionType},
            by_urgency={u.value: by_urgency.get(u.value, 0) for u in Urgency},
            average_wait_minutes=float(np.mean(waits)) if waits else 0.0,
            average_match_time_seconds=self.average_match_time(),
            matches_per_hour=sum(1 for t in self._match_times if t >= hour_ago),
            peak_hours=dict(sorted(Counter(t.hour for t in self._enqueue_history).items())),
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> list[QueueEntry]:
        """Physically remove expired entries; each removal is announced as a departure"""
        now = self.clock()
        async with self._critical():
            expired_ids = [uid for uid, slot in self._entries.items() if self._is_expired(slot, now)]
            removed = [self._snapshot(self._entries.pop(uid), now) for uid in expired_ids]

        for entry in removed:
            await self._publish(USER_LEFT, {"user_id": entry.user_id, "reason": "expired"})

        if removed:
            logger.info(f"Swept {len(removed)} expired queue entries")
        return removed

    async def rebalance(self) -> list[dict]:
        """Recompute and announce priorities and positions; ownership is untouched"""
        now = self.clock()
        live = self._live_entries(now)
        ranking = [
            {"user_id": entry.user_id, "priority": round(entry.priority, 2), "position": index + 1}
            for index, entry in enumerate(live)
        ]
        await self._publish(QUEUE_REBALANCED, {"entries": ranking})
        return ranking

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def claim_pair(
        self,
        requester_id: str,
        requester_version: str,
        candidate_id: str,
        candidate_version: str,
    ) -> str:
        """
        Atomically take both entries out of the queue

        Each removal is conditioned on the entry still existing, unexpired,
        with the version the caller read, and its user not already being
        part of another claim.

        Returns:
            Claim id to pass to complete_claim / release_claim

        Raises:
            ConflictError: Either entry changed, disappeared or is mid-claim
        """
        now = self.clock()
        async with self._critical():
            for user_id, version, role in (
                (requester_id, requester_version, "requester"),
                (candidate_id, candidate_version, "candidate"),
            ):
                if user_id in self._in_flight:
                    raise ConflictError(
                        f"{role.capitalize()} is already being matched",
                        details={"user_id": user_id, "role": role},
                    )
                slot = self._entries.get(user_id)
                if slot is None or slot.version != version or self._is_expired(slot, now):
                    raise ConflictError(
                        f"{role.capitalize()} entry no longer claimable",
                        details={"user_id": user_id, "role": role},
                    )

            claim_id = uuid.uuid4().hex
            slots = (self._entries.pop(requester_id), self._entries.pop(candidate_id))
            self._claims[claim_id] = _Claim(claim_id=claim_id, slots=slots, claimed_at=now)
            self._in_flight[requester_id] = claim_id
            self._in_flight[candidate_id] = claim_id

        logger.debug(f"Claimed {requester_id} + {candidate_id} (claim {claim_id})")
        return claim_id

    async def complete_claim(self, claim_id: str, match: Match) -> None:
        """Finalize a claim once the session exists and announce the match"""
        now = self.clock()
        async with self._critical():
            claim = self._claims.pop(claim_id, None)
            if claim is None:
                raise ConflictError("Unknown or already settled claim", details={"claim_id": claim_id})
            for slot in claim.slots:
                user_id = slot.request.user_id
                self._in_flight.pop(user_id, None)
                self._cancelled.discard(user_id)
                # A join issued while the claim was in flight is superseded by the match
                self._entries.pop(user_id, None)
                self._service_times.append((now - slot.enqueued_at).total_seconds())
            self._match_times.append(now)

        await self._publish(MATCH_FOUND, {
            "user_id_a": match.user_id_a,
            "user_id_b": match.user_id_b,
            "session_id": match.session_id,
            "compatibility_score": match.compatibility_score,
            "session_type": match.session_type.value,
        })

    async def release_claim(self, claim_id: str) -> list[str]:
        """
        Undo a claim whose session could not be created

        Users who left or re-joined while the claim was in flight are not
        restored.

        Returns:
            Ids of users put back in the queue
        """
        async with self._critical():
            claim = self._claims.pop(claim_id, None)
            if claim is None:
                return []
            restored = []
            for slot in claim.slots:
                user_id = slot.request.user_id
                self._in_flight.pop(user_id, None)
                if user_id in self._cancelled:
                    self._cancelled.discard(user_id)
                    continue
                if user_id not in self._entries:
                    self._entries[user_id] = slot
                    restored.append(user_id)

        logger.info(f"Released claim {claim_id}, restored {restored}")
        return restored
