"""Matching Engine - Pair a requester with the best compatible queued partner"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Union

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from src.config import MatchingConfig
from src.data.schema import (
    Match,
    MatchingRequest,
    Profile,
    QueueEntry,
    QueueStats,
    QueueStatus,
    CompatibilityResult,
)
from src.data.stores import ProfileStore, SessionHistoryStore, SessionStore
from src.matching.compatibility_scorer import CompatibilityScorer, recommended_duration
from src.matching.errors import (
    ConflictError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from src.matching.priority_queue_store import PriorityQueueStore


def validate_request(request: Union[MatchingRequest, dict[str, Any]]) -> MatchingRequest:
    """
    Coerce and validate a matching request

    Raises:
        ValidationError: Unknown enum value, non-positive duration, duplicate
            preferred skills or a missing user id
    """
    if isinstance(request, MatchingRequest):
        return request
    try:
        return MatchingRequest.model_validate(request)
    except PydanticValidationError as e:
        messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ValidationError("Invalid matching request", details={"errors": messages}) from e


class MatchingEngine:
    """
    Stateless orchestration of a match attempt

    All mutable state lives in the PriorityQueueStore, so any number of
    engines may share one store.

    Features:
    - Candidate ranking by weighted compatibility
    - Acceptance thresholds on total, skill and availability scores
    - Optimistic claim with bounded retry on conflicts
    """

    def __init__(self,
                 store: PriorityQueueStore,
                 profile_store: ProfileStore,
                 session_store: SessionStore,
                 scorer: Optional[CompatibilityScorer] = None,
                 history_store: Optional[SessionHistoryStore] = None,
                 config: Optional[MatchingConfig] = None):
        """
        Initialize matching engine

        Args:
            store: Shared queue store
            profile_store: Source of profile snapshots
            session_store: Creates a session once a match is decided
            scorer: Custom CompatibilityScorer (if None, built from config)
            history_store: Prior-session ratings for the default scorer
            config: Matching configuration (defaults if None)
        """
        self.config = config or store.config
        self.store = store
        self.profile_store = profile_store
        self.session_store = session_store
        self.scorer = scorer if scorer is not None else CompatibilityScorer(
            weights=self.config.weights,
            history_store=history_store,
            preferred_skill_multiplier=self.config.preferred_skill_multiplier,
            history_lookback_days=self.config.history_lookback_days,
            timeout_seconds=self.config.store_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Collaborator calls
    # ------------------------------------------------------------------

    async def _fetch_profile(self, user_id: str) -> Optional[Profile]:
        try:
            return await asyncio.wait_for(
                self.profile_store.get_profile(user_id),
                timeout=self.config.store_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Profile lookup timed out for {user_id}")
            raise InfrastructureError("Profile store timed out", details={"user_id": user_id}) from e

    async def _create_session(self, requester: MatchingRequest, partner_id: str) -> str:
        try:
            return await asyncio.wait_for(
                self.session_store.create_session(requester.user_id, partner_id, requester.session_type),
                timeout=self.config.store_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Session creation timed out for {requester.user_id} <-> {partner_id}")
            raise InfrastructureError(
                "Session store timed out",
                details={"user_id_a": requester.user_id, "user_id_b": partner_id},
            ) from e

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def is_acceptable(self, result: CompatibilityResult) -> bool:
        return (
            result.total_score >= self.config.min_total_score
            and result.skill >= self.config.min_skill_score
            and result.availability >= self.config.min_availability_score
        )

    async def _score_candidate(
        self,
        requester: Profile,
        request: MatchingRequest,
        entry: QueueEntry,
        at: datetime,
    ) -> Optional[tuple[QueueEntry, Profile, CompatibilityResult]]:
        candidate = await self._fetch_profile(entry.user_id)
        if candidate is None or not candidate.is_active:
            logger.debug(f"Skipping candidate {entry.user_id}: profile missing or inactive")
            return None
        result = await self.scorer.compatibility_score(requester, candidate, request, at=at)
        return entry, candidate, result

    async def rank_candidates(
        self,
        requester: Profile,
        request: MatchingRequest,
    ) -> list[tuple[QueueEntry, Profile, CompatibilityResult]]:
        """
        Score the current candidate window for a request

        Returns:
            List of (entry, profile, result) tuples, sorted by total score descending
        """
        session_types = self.config.compatible_session_types(request.session_type)
        entries = await self.store.get_next_candidates(
            session_types,
            exclude_user_id=request.user_id,
            limit=self.config.candidate_limit,
        )
        if not entries:
            return []

        at = datetime.now(timezone.utc)
        scored = await asyncio.gather(*(
            self._score_candidate(requester, request, entry, at) for entry in entries
        ))
        ranked = [item for item in scored if item is not None]
        ranked.sort(key=lambda item: item[2].total_score, reverse=True)

        logger.info(
            f"Ranked {len(ranked)} candidates for {request.user_id} "
            f"(scores: {[f'{r.total_score:.2f}' for _, _, r in ranked[:5]]})"
        )
        return ranked

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def find_match(self, request: Union[MatchingRequest, dict[str, Any]]) -> Optional[Match]:
        """
        Find and claim the best qualified partner for a request

        The requester is queued first if they are not already waiting; a
        queued entry holding a different request is replaced, so the queue
        advertises the request being matched. When no candidate qualifies,
        or every attempt loses a race, the requester stays queued and None
        is returned.

        Args:
            request: Matching request (model or raw dict)

        Returns:
            Match or None

        Raises:
            ValidationError: Malformed request
            NotFoundError: Requester profile does not exist
            InfrastructureError: A store timed out or session creation failed
        """
        request = validate_request(request)

        requester = await self._fetch_profile(request.user_id)
        if requester is None:
            raise NotFoundError("User profile not found", details={"user_id": request.user_id})

        for attempt in range(1, self.config.claim_max_retries + 1):
            if self.store.is_claimed(request.user_id):
                logger.info(f"{request.user_id} is already being matched by another attempt")
                return None
            own_entry = await self.store.get(request.user_id)
            if own_entry is None or own_entry.request != request:
                own_entry = await self.store.upsert(request)

            ranked = await self.rank_candidates(requester, request)
            best = next((item for item in ranked if self.is_acceptable(item[2])), None)
            if best is None:
                logger.info(f"No qualified match for {request.user_id} among {len(ranked)} candidates")
                return None

            entry, candidate, result = best
            try:
                claim_id = await self.store.claim_pair(
                    request.user_id, own_entry.version, entry.user_id, entry.version
                )
            except ConflictError as e:
                if e.details.get("role") == "requester":
                    logger.info(f"{request.user_id} left or was matched during attempt {attempt}")
                    return None
                logger.debug(f"Claim conflict on {entry.user_id} (attempt {attempt}): {e.message}")
                continue

            return await self._settle_claim(claim_id, request, requester, candidate, result)

        logger.warning(
            f"Gave up matching {request.user_id} after {self.config.claim_max_retries} conflicting attempts"
        )
        return None

    async def _settle_claim(
        self,
        claim_id: str,
        request: MatchingRequest,
        requester: Profile,
        candidate: Profile,
        result: CompatibilityResult,
    ) -> Match:
        try:
            session_id = await self._create_session(request, candidate.user_id)
        except Exception as e:
            await self.store.release_claim(claim_id)
            if isinstance(e, InfrastructureError):
                raise
            logger.warning(f"Session creation failed for {request.user_id} <-> {candidate.user_id}: {e}")
            raise InfrastructureError("Session creation failed", details={"claim_id": claim_id}) from e

        levels = self._shared_levels(requester, candidate, request)
        duration = min(
            recommended_duration(request.session_type, *levels),
            request.max_duration,
        )
        match = Match(
            user_id_a=request.user_id,
            user_id_b=candidate.user_id,
            session_id=session_id,
            compatibility_score=result.total_score,
            session_type=request.session_type,
            breakdown=result,
            recommended_duration=duration,
            matched_at=datetime.now(timezone.utc),
        )
        await self.store.complete_claim(claim_id, match)

        logger.info(
            f"Matched {match.user_id_a} with {match.user_id_b} "
            f"(session={session_id}, {self.scorer.explain(result)})"
        )
        return match

    @staticmethod
    def _shared_levels(requester: Profile, candidate: Profile, request: MatchingRequest) -> tuple[float, float]:
        """Mean proficiency of each side over the skills both hold (preferred skills first)"""
        requester_levels = {s.skill_name.lower(): s.proficiency_level for s in requester.skills}
        candidate_levels = {s.skill_name.lower(): s.proficiency_level for s in candidate.skills}
        shared = [name for name in requester_levels if name in candidate_levels]
        preferred = [name for name in shared if name in {p.lower() for p in request.preferred_skills}]
        names = preferred or shared
        if not names:
            return 3.0, 3.0
        return (
            sum(requester_levels[n] for n in names) / len(names),
            sum(candidate_levels[n] for n in names) / len(names),
        )

    async def add_to_queue(self, request: Union[MatchingRequest, dict[str, Any]]) -> QueueStatus:
        """Validate and queue a request, replacing any earlier one for the user"""
        request = validate_request(request)
        await self.store.upsert(request)
        status = await self.store.get_status(request.user_id)
        if status is None:
            # Only possible with a concurrent removal
            raise InfrastructureError("Queue entry not visible after join", details={"user_id": request.user_id})
        return status

    async def remove_from_queue(self, user_id: str) -> None:
        """Leave the queue; a no-op if the user is absent or already matched"""
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")
        await self.store.remove(user_id)

    async def get_status(self, user_id: str) -> Optional[QueueStatus]:
        return await self.store.get_status(user_id)

    async def cleanup_expired_queue(self) -> dict[str, int]:
        removed = await self.store.sweep_expired()
        return {"removed": len(removed)}

    async def get_queue_stats(self) -> QueueStats:
        return await self.store.get_stats()
