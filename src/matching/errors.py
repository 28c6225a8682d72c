"""Error taxonomy for matching and queue operations"""

from typing import Any, Optional


class MatchingError(Exception):
    """Base class for matching/queue failures"""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(MatchingError):
    """Malformed request (bad enum, non-positive duration, ...). Never retried."""


class NotFoundError(MatchingError):
    """A required profile does not exist"""


class InfrastructureError(MatchingError):
    """Store or transport timeout/unavailability. Retryable by the caller with backoff."""


class ConflictError(MatchingError):
    """Compare-and-remove lost a race; resolved internally by re-fetching and retrying"""
