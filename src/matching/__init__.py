"""Matching engine modules"""

from src.matching.compatibility_scorer import CompatibilityScorer
from src.matching.matching_engine import MatchingEngine
from src.matching.priority_queue_store import PriorityQueueStore
from src.matching.queue_cleanup import QueueCleanupService

__all__ = ["CompatibilityScorer", "MatchingEngine", "PriorityQueueStore", "QueueCleanupService"]
