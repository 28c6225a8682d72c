"""Queue Cleanup Service - background expiry sweeps and priority rebalancing"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from src.data.schema import QueueStats
from src.matching.priority_queue_store import PriorityQueueStore


@dataclass
class CleanupHealth:
    """Counters describing the sweeper's recent behavior"""
    cleanup_passes: int = 0
    rebalance_passes: int = 0
    failed_passes: int = 0
    total_removed: int = 0
    last_removed: int = 0
    last_pass_duration_ms: float = 0.0
    last_cleanup_at: Optional[float] = None
    last_rebalance_at: Optional[float] = None
    last_error: Optional[str] = None
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "cleanup_passes": self.cleanup_passes,
            "rebalance_passes": self.rebalance_passes,
            "failed_passes": self.failed_passes,
            "total_removed": self.total_removed,
            "last_removed": self.last_removed,
            "last_pass_duration_ms": round(self.last_pass_duration_ms, 2),
            "last_cleanup_at": self.last_cleanup_at,
            "last_rebalance_at": self.last_rebalance_at,
            "last_error": self.last_error,
            "uptime_hours": round((time.time() - self.started_at) / 3600, 3),
        }


def queue_health_score(stats: QueueStats) -> int:
    """0-100 score; large queues and slow matching lower it, active matching raises it"""
    score = 100.0

    # Penalize if queue is too large (indicates matching issues)
    if stats.total_in_queue > 100:
        score -= min((stats.total_in_queue - 100) * 0.5, 30)

    if stats.average_match_time_seconds > 300:
        score -= min((stats.average_match_time_seconds - 300) * 0.1, 20)

    if stats.matches_per_hour > 10:
        score += min(stats.matches_per_hour * 0.5, 10)

    return int(max(0, min(100, round(score))))


class QueueCleanupService:
    """
    Runs two independent loops against the queue store

    - cleanup: remove TTL-expired entries (announced as departures)
    - rebalance: recompute and re-announce priorities

    A failing pass is logged and counted; the loop keeps going.
    """

    def __init__(self,
                 store: PriorityQueueStore,
                 cleanup_interval_seconds: float = 120.0,
                 rebalance_interval_seconds: float = 300.0):
        self.store = store
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.rebalance_interval_seconds = rebalance_interval_seconds
        self.health = CleanupHealth()
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Start both loops (no-op if already running)"""
        if self.is_running:
            logger.info("Queue cleanup service is already running")
            return

        logger.info(
            f"Starting queue cleanup service (cleanup every {self.cleanup_interval_seconds}s, "
            f"rebalance every {self.rebalance_interval_seconds}s)"
        )
        self._tasks = [
            asyncio.create_task(self._loop(self.run_cleanup_pass, self.cleanup_interval_seconds, run_first=True)),
            asyncio.create_task(self._loop(self.run_rebalance_pass, self.rebalance_interval_seconds)),
        ]

    async def stop(self) -> None:
        if not self.is_running:
            return

        logger.info("Stopping queue cleanup service...")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _loop(self, run_pass, interval: float, run_first: bool = False) -> None:
        if run_first:
            await run_pass()
        while True:
            await asyncio.sleep(interval)
            await run_pass()

    async def run_cleanup_pass(self) -> int:
        """
        Remove expired entries once

        Returns:
            Number of entries removed (0 if the pass failed)
        """
        started = time.perf_counter()
        try:
            removed = await self.store.sweep_expired()
        except Exception as e:
            self.health.failed_passes += 1
            self.health.last_error = str(e)
            logger.error(f"Queue cleanup failed: {e}")
            return 0

        duration_ms = (time.perf_counter() - started) * 1000
        self.health.cleanup_passes += 1
        self.health.last_removed = len(removed)
        self.health.total_removed += len(removed)
        self.health.last_pass_duration_ms = duration_ms
        self.health.last_cleanup_at = time.time()

        if removed:
            logger.info(f"Queue cleanup completed in {duration_ms:.1f}ms: {len(removed)} expired entries removed")
        return len(removed)

    async def run_rebalance_pass(self) -> bool:
        """Re-announce priorities once; returns False if the pass failed"""
        started = time.perf_counter()
        try:
            ranking = await self.store.rebalance()
        except Exception as e:
            self.health.failed_passes += 1
            self.health.last_error = str(e)
            logger.error(f"Queue rebalancing failed: {e}")
            return False

        duration_ms = (time.perf_counter() - started) * 1000
        self.health.rebalance_passes += 1
        self.health.last_pass_duration_ms = duration_ms
        self.health.last_rebalance_at = time.time()
        logger.debug(f"Queue rebalancing completed in {duration_ms:.1f}ms ({len(ranking)} entries)")
        return True

    async def force_cleanup(self) -> dict:
        """Immediate cleanup for manual triggers"""
        started = time.perf_counter()
        removed = await self.run_cleanup_pass()
        return {
            "expired_entries": removed,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    async def get_health_status(self) -> dict:
        stats = await self.store.get_stats()
        issues: list[str] = []

        if stats.total_in_queue > 50:
            issues.append(f"High queue size: {stats.total_in_queue} users waiting")
        if stats.average_match_time_seconds > 180:
            issues.append(f"Slow matching: {round(stats.average_match_time_seconds)}s average")
        if self.health.cleanup_passes > 0 and 0 < stats.matches_per_hour < 5:
            issues.append(f"Low matching rate: {stats.matches_per_hour} matches/hour")
        if self.health.failed_passes:
            issues.append(f"{self.health.failed_passes} background passes failed")

        return {
            "is_healthy": not issues and stats.total_in_queue < 100,
            "queue_health": queue_health_score(stats),
            "metrics": self.health.to_dict(),
            "issues": issues,
        }
