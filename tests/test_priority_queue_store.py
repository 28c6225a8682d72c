"""Tests for the priority queue store"""

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import make_request
from src.config import MatchingConfig
from src.data.schema import CompatibilityResult, Match, SessionType, Urgency
from src.matching.errors import ConflictError, InfrastructureError
from src.matching.priority_queue_store import PriorityQueueStore, calculate_priority


def make_match(a: str, b: str, session_type=SessionType.LEARNING) -> Match:
    breakdown = CompatibilityResult(skill=1, timezone=1, availability=1, communication=1,
                                    session_history=0.5, total_score=0.875)
    return Match(
        user_id_a=a,
        user_id_b=b,
        session_id="session-1",
        compatibility_score=breakdown.total_score,
        session_type=session_type,
        breakdown=breakdown,
        recommended_duration=60,
        matched_at=datetime.now(timezone.utc),
    )


class TestPriority:
    """Test read-time priority"""

    def test_base_by_urgency(self, clock):
        now = clock()
        assert calculate_priority(make_request("a", urgency=Urgency.HIGH), now, now) == 1000
        assert calculate_priority(make_request("a", urgency=Urgency.MEDIUM), now, now) == 500
        assert calculate_priority(make_request("a", urgency=Urgency.LOW), now, now) == 100

    def test_collaboration_bonus(self, clock):
        now = clock()
        request = make_request("a", SessionType.COLLABORATION, urgency=Urgency.LOW)
        assert calculate_priority(request, now, now) == 150

    @pytest.mark.asyncio
    async def test_priority_grows_with_wait(self, store, clock):
        await store.upsert(make_request("a", urgency=Urgency.MEDIUM))
        clock.advance(minutes=10)

        entry = await store.get("a")

        assert entry.priority == pytest.approx(520)


@pytest.mark.asyncio
class TestMembership:
    """Test upsert/remove semantics"""

    async def test_upsert_replaces_existing_entry(self, store, clock):
        first = await store.upsert(make_request("a", urgency=Urgency.LOW))
        clock.advance(minutes=5)
        second = await store.upsert(make_request("a", urgency=Urgency.HIGH))

        assert len(store) == 1
        assert second.version != first.version
        assert second.enqueued_at == clock()
        assert (await store.get("a")).urgency == Urgency.HIGH

    async def test_remove_is_idempotent(self, store, events):
        await store.upsert(make_request("a"))

        assert await store.remove("a") is True
        assert await store.remove("a") is False
        assert await store.get("a") is None
        assert len(events.of_type("user_left")) == 1

    async def test_mutations_publish_events(self, store, events):
        await store.upsert(make_request("a"))
        await store.remove("a")

        assert [e["type"] for e in events.events] == ["user_joined", "user_left"]
        assert events.events[0]["data"]["user_id"] == "a"
        assert events.events[1]["data"]["reason"] == "left"


@pytest.mark.asyncio
class TestExpiry:
    """Test TTL visibility and sweeping"""

    async def test_expired_entries_are_invisible(self, store, clock):
        await store.upsert(make_request("high", SessionType.TEACHING, urgency=Urgency.HIGH))
        await store.upsert(make_request("low", SessionType.TEACHING, urgency=Urgency.LOW))

        clock.advance(minutes=15)

        candidates = await store.get_next_candidates([SessionType.TEACHING], exclude_user_id="x")
        assert [c.user_id for c in candidates] == ["low"]
        assert await store.get("high") is None
        assert await store.get_status("high") is None

    async def test_entries_visible_until_ttl(self, store, clock):
        await store.upsert(make_request("high", SessionType.TEACHING, urgency=Urgency.HIGH))

        clock.advance(minutes=14, seconds=59)

        candidates = await store.get_next_candidates([SessionType.TEACHING], exclude_user_id="x")
        assert [c.user_id for c in candidates] == ["high"]
        assert await store.get("high") is not None
        assert await store.sweep_expired() == []

    async def test_sweep_removes_and_announces(self, store, clock, events):
        await store.upsert(make_request("a", urgency=Urgency.MEDIUM))
        await store.upsert(make_request("b", urgency=Urgency.LOW))
        clock.advance(minutes=31)

        removed = await store.sweep_expired()

        assert [e.user_id for e in removed] == ["a"]
        assert len(store) == 1
        left = events.of_type("user_left")
        assert left[0]["data"] == {"user_id": "a", "reason": "expired"}

    async def test_sweep_twice_is_harmless(self, store, clock):
        await store.upsert(make_request("a", urgency=Urgency.HIGH))
        clock.advance(minutes=20)

        assert len(await store.sweep_expired()) == 1
        assert await store.sweep_expired() == []


@pytest.mark.asyncio
class TestQueries:
    """Test candidate selection, status and stats"""

    async def test_candidates_filtered_and_ordered(self, store, clock):
        await store.upsert(make_request("learner", SessionType.LEARNING, urgency=Urgency.HIGH))
        await store.upsert(make_request("t-low", SessionType.TEACHING, urgency=Urgency.LOW))
        await store.upsert(make_request("t-high", SessionType.TEACHING, urgency=Urgency.HIGH))
        await store.upsert(make_request("collab", SessionType.COLLABORATION, urgency=Urgency.MEDIUM))

        candidates = await store.get_next_candidates(
            [SessionType.TEACHING, SessionType.COLLABORATION], exclude_user_id="learner"
        )

        assert [c.user_id for c in candidates] == ["t-high", "collab", "t-low"]

    async def test_candidate_limit(self, store):
        for i in range(5):
            await store.upsert(make_request(f"t{i}", SessionType.TEACHING))

        candidates = await store.get_next_candidates([SessionType.TEACHING], exclude_user_id="x", limit=2)

        assert len(candidates) == 2

    async def test_status_position_counts_compatible_higher_priority(self, store):
        await store.upsert(make_request("teacher", SessionType.TEACHING, urgency=Urgency.HIGH))
        await store.upsert(make_request("collab", SessionType.COLLABORATION, urgency=Urgency.MEDIUM))
        await store.upsert(make_request("other-learner", SessionType.LEARNING, urgency=Urgency.HIGH))
        await store.upsert(make_request("learner", SessionType.LEARNING, urgency=Urgency.LOW))

        status = await store.get_status("learner")

        assert status.position == 3
        assert status.total_in_queue == 4
        assert status.average_match_time_seconds == 120
        assert status.estimated_wait_seconds == pytest.approx(360)

    async def test_status_of_unknown_user(self, store):
        assert await store.get_status("ghost") is None

    async def test_stats(self, store, clock):
        await store.upsert(make_request("a", SessionType.LEARNING, urgency=Urgency.HIGH))
        clock.advance(minutes=4)
        await store.upsert(make_request("b", SessionType.TEACHING, urgency=Urgency.LOW))

        stats = await store.get_stats()

        assert stats.total_in_queue == 2
        assert stats.by_session_type == {"learning": 1, "teaching": 1, "collaboration": 0}
        assert stats.by_urgency == {"low": 1, "medium": 0, "high": 1}
        assert stats.average_wait_minutes == pytest.approx(2.0)
        assert stats.matches_per_hour == 0
        assert stats.peak_hours == {12: 2}

    async def test_rebalance_announces_ranking(self, store, events):
        await store.upsert(make_request("a", urgency=Urgency.LOW))
        await store.upsert(make_request("b", urgency=Urgency.HIGH))

        ranking = await store.rebalance()

        assert [r["user_id"] for r in ranking] == ["b", "a"]
        assert ranking[0]["position"] == 1
        assert events.of_type("queue_rebalanced")[0]["data"]["entries"] == ranking
        assert len(store) == 2


@pytest.mark.asyncio
class TestClaims:
    """Test optimistic pair claims"""

    async def test_claim_removes_both_entries(self, store):
        a = await store.upsert(make_request("a", SessionType.LEARNING))
        b = await store.upsert(make_request("b", SessionType.TEACHING))

        claim_id = await store.claim_pair("a", a.version, "b", b.version)

        assert claim_id
        assert await store.get("a") is None
        assert await store.get_next_candidates([SessionType.TEACHING], exclude_user_id="a") == []
        assert store.is_claimed("a") and store.is_claimed("b")

    async def test_stale_version_conflicts(self, store):
        a = await store.upsert(make_request("a"))
        b = await store.upsert(make_request("b", SessionType.TEACHING))
        await store.upsert(make_request("b", SessionType.TEACHING))

        with pytest.raises(ConflictError) as exc_info:
            await store.claim_pair("a", a.version, "b", b.version)

        assert exc_info.value.details["role"] == "candidate"
        assert await store.get("a") is not None

    async def test_missing_requester_conflicts(self, store):
        b = await store.upsert(make_request("b", SessionType.TEACHING))

        with pytest.raises(ConflictError) as exc_info:
            await store.claim_pair("a", "nope", "b", b.version)

        assert exc_info.value.details["role"] == "requester"

    async def test_complete_claim_records_match(self, store, clock, events):
        a = await store.upsert(make_request("a"))
        b = await store.upsert(make_request("b", SessionType.TEACHING))
        clock.advance(minutes=3)
        claim_id = await store.claim_pair("a", a.version, "b", b.version)

        await store.complete_claim(claim_id, make_match("a", "b"))

        stats = await store.get_stats()
        assert stats.matches_per_hour == 1
        assert stats.average_match_time_seconds == pytest.approx(180)
        assert not store.is_claimed("a")
        found = events.of_type("match_found")
        assert found[0]["data"]["user_id_a"] == "a"
        assert found[0]["data"]["session_id"] == "session-1"

    async def test_complete_twice_conflicts(self, store):
        a = await store.upsert(make_request("a"))
        b = await store.upsert(make_request("b", SessionType.TEACHING))
        claim_id = await store.claim_pair("a", a.version, "b", b.version)
        await store.complete_claim(claim_id, make_match("a", "b"))

        with pytest.raises(ConflictError):
            await store.complete_claim(claim_id, make_match("a", "b"))

    async def test_release_restores_entries(self, store):
        a = await store.upsert(make_request("a"))
        b = await store.upsert(make_request("b", SessionType.TEACHING))
        claim_id = await store.claim_pair("a", a.version, "b", b.version)

        restored = await store.release_claim(claim_id)

        assert sorted(restored) == ["a", "b"]
        assert (await store.get("a")).version == a.version

    async def test_release_skips_users_who_left(self, store):
        a = await store.upsert(make_request("a"))
        b = await store.upsert(make_request("b", SessionType.TEACHING))
        claim_id = await store.claim_pair("a", a.version, "b", b.version)

        assert await store.remove("b") is False
        restored = await store.release_claim(claim_id)

        assert restored == ["a"]
        assert await store.get("b") is None

    async def test_rejoin_during_claim_is_superseded_by_match(self, store):
        a = await store.upsert(make_request("a"))
        b = await store.upsert(make_request("b", SessionType.TEACHING))
        claim_id = await store.claim_pair("a", a.version, "b", b.version)
        await store.upsert(make_request("b", SessionType.TEACHING))

        await store.complete_claim(claim_id, make_match("a", "b"))

        assert await store.get("b") is None

    async def test_rejoined_user_is_hidden_from_candidates_during_claim(self, store):
        a = await store.upsert(make_request("a"))
        b = await store.upsert(make_request("b", SessionType.TEACHING))
        await store.claim_pair("a", a.version, "b", b.version)
        await store.upsert(make_request("b", SessionType.TEACHING))

        candidates = await store.get_next_candidates([SessionType.TEACHING], exclude_user_id="c")

        assert candidates == []

    async def test_rejoined_user_cannot_be_claimed_twice(self, store):
        a = await store.upsert(make_request("a"))
        b = await store.upsert(make_request("b", SessionType.TEACHING))
        first = await store.claim_pair("a", a.version, "b", b.version)
        rejoined = await store.upsert(make_request("b", SessionType.TEACHING))
        c = await store.upsert(make_request("c"))

        with pytest.raises(ConflictError) as exc_info:
            await store.claim_pair("c", c.version, "b", rejoined.version)

        assert exc_info.value.details == {"user_id": "b", "role": "candidate"}
        assert await store.get("c") is not None
        await store.complete_claim(first, make_match("a", "b"))
        assert await store.get("b") is None

    async def test_concurrent_claims_on_one_candidate(self, store):
        candidate = await store.upsert(make_request("t", SessionType.TEACHING))
        requesters = [await store.upsert(make_request(f"l{i}")) for i in range(10)]

        results = await asyncio.gather(*(
            store.claim_pair(r.user_id, r.version, "t", candidate.version) for r in requesters
        ), return_exceptions=True)

        wins = [r for r in results if isinstance(r, str)]
        assert len(wins) == 1
        assert all(isinstance(r, ConflictError) for r in results if not isinstance(r, str))


@pytest.mark.asyncio
class TestCriticalSection:
    """Test bounded lock acquisition"""

    async def test_lock_timeout_raises_infrastructure_error(self, transport, clock):
        store = PriorityQueueStore(
            config=MatchingConfig(store_timeout_seconds=0.01), transport=transport, clock=clock
        )
        await store._lock.acquire()
        try:
            with pytest.raises(InfrastructureError):
                await store.upsert(make_request("a"))
        finally:
            store._lock.release()
