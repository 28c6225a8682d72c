"""Tests for the background cleanup service"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_request
from src.data.schema import QueueStats, Urgency
from src.matching.queue_cleanup import QueueCleanupService, queue_health_score


class TestHealthScore:
    """Test the 0-100 queue health score"""

    def test_idle_queue_is_fully_healthy(self):
        assert queue_health_score(QueueStats()) == 100

    def test_large_queue_penalty_is_capped(self):
        assert queue_health_score(QueueStats(total_in_queue=120)) == 90
        assert queue_health_score(QueueStats(total_in_queue=500)) == 70

    def test_slow_matching_penalty(self):
        assert queue_health_score(QueueStats(total_in_queue=150, average_match_time_seconds=400)) == 65

    def test_active_matching_bonus_is_clamped(self):
        assert queue_health_score(QueueStats(matches_per_hour=40)) == 100
        assert queue_health_score(QueueStats(total_in_queue=500, matches_per_hour=40)) == 80


@pytest.mark.asyncio
class TestQueueCleanupService:
    """Test cleanup and rebalance passes"""

    async def test_cleanup_pass_removes_expired(self, store, clock, events):
        await store.upsert(make_request("a", urgency=Urgency.HIGH))
        await store.upsert(make_request("b", urgency=Urgency.LOW))
        clock.advance(minutes=20)
        service = QueueCleanupService(store)

        removed = await service.run_cleanup_pass()

        assert removed == 1
        assert service.health.cleanup_passes == 1
        assert service.health.total_removed == 1
        assert service.health.last_cleanup_at is not None
        assert events.of_type("user_left")[0]["data"]["reason"] == "expired"

    async def test_failed_pass_is_counted_not_raised(self):
        store = MagicMock()
        store.sweep_expired = AsyncMock(side_effect=RuntimeError("lock timeout"))
        store.rebalance = AsyncMock(side_effect=RuntimeError("lock timeout"))
        service = QueueCleanupService(store)

        assert await service.run_cleanup_pass() == 0
        assert await service.run_rebalance_pass() is False
        assert service.health.failed_passes == 2
        assert service.health.last_error == "lock timeout"

    async def test_rebalance_pass_publishes(self, store, events):
        await store.upsert(make_request("a"))
        service = QueueCleanupService(store)

        assert await service.run_rebalance_pass() is True
        assert service.health.rebalance_passes == 1
        assert len(events.of_type("queue_rebalanced")) == 1

    async def test_start_is_idempotent_and_stop_cancels(self, store):
        service = QueueCleanupService(store, cleanup_interval_seconds=60, rebalance_interval_seconds=60)

        service.start()
        tasks = list(service._tasks)
        service.start()
        await asyncio.sleep(0.01)

        assert service._tasks == tasks
        assert service.health.cleanup_passes == 1

        await service.stop()
        assert not service.is_running
        assert all(task.done() for task in tasks)

    async def test_loop_keeps_running_after_failure(self):
        store = MagicMock()
        calls = []

        async def sweep():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return []

        store.sweep_expired = sweep
        store.rebalance = AsyncMock(return_value=[])
        service = QueueCleanupService(store, cleanup_interval_seconds=0.01, rebalance_interval_seconds=60)

        service.start()
        await asyncio.sleep(0.05)
        await service.stop()

        assert service.health.failed_passes == 1
        assert service.health.cleanup_passes >= 1

    async def test_force_cleanup(self, store, clock):
        await store.upsert(make_request("a", urgency=Urgency.HIGH))
        clock.advance(minutes=15)
        service = QueueCleanupService(store)

        result = await service.force_cleanup()

        assert result["expired_entries"] == 1
        assert result["duration_ms"] >= 0

    async def test_health_status_reports_issues(self, store):
        for i in range(51):
            await store.upsert(make_request(f"u{i}"))
        service = QueueCleanupService(store)

        report = await service.get_health_status()

        assert report["is_healthy"] is False
        assert any("High queue size" in issue for issue in report["issues"])
        assert report["queue_health"] == 100

    async def test_health_status_when_idle(self, store):
        report = await QueueCleanupService(store).get_health_status()

        assert report["is_healthy"] is True
        assert report["issues"] == []
        assert report["metrics"]["cleanup_passes"] == 0
