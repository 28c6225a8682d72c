"""Compatibility Scorer - Weighted fit between a requester and a candidate partner

Scoring dimensions (default weights):
- Skill complementarity: 30%
- Timezone proximity: 15%
- Availability overlap: 15%
- Communication preferences: 15%
- Session history / experience: 25%

The component functions are pure and never raise. Missing or malformed
input degrades to NEUTRAL_SCORE and is logged at debug level.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import numpy as np
from loguru import logger

from src.config import ScoringWeights
from src.data.schema import (
    WEEKDAYS,
    AvailabilitySchedule,
    CommunicationStyle,
    CompatibilityResult,
    MatchingRequest,
    Profile,
    SessionType,
    TimeSlot,
    UserPreferences,
    UserSkill,
    UserStats,
)
from src.data.stores import SessionHistoryStore


NEUTRAL_SCORE = 0.5
NO_SKILL_OVERLAP_SCORE = 0.1
NO_AVAILABILITY_SCORE = 0.1

PREFERRED_SKILL_MULTIPLIER = 2.0

MIN_LEVEL = 1
MAX_LEVEL = 5
MAX_LEVEL_GAP = MAX_LEVEL - MIN_LEVEL

# Ideal (candidate level - requester level) per session type
IDEAL_SKILL_GAP = {
    SessionType.LEARNING: 2,
    SessionType.TEACHING: -2,
    SessionType.COLLABORATION: 0,
}

# Timezone offset difference (hours) at which the score reaches zero
TIMEZONE_ZERO_HOURS = 12.0

STYLE_IDENTICAL = 1.0
STYLE_WITH_BALANCED = 0.8
STYLE_OPPOSITE = 0.4

LANGUAGE_SHARED = 1.0
LANGUAGE_NONE_SHARED = 0.2

# Difference in max session duration (minutes) that zeroes the duration factor
DURATION_ZERO_MINUTES = 120.0

# No-history fallback band: [HISTORY_FLOOR, HISTORY_FLOOR + HISTORY_SPAN]
HISTORY_FLOOR = 0.45
HISTORY_SPAN = 0.25
HISTORY_EXPERIENCE_SATURATION = 50

RATING_MIN = 1.0
RATING_MAX = 5.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return float(np.clip(value, low, high))


def _coerce_session_type(session_type) -> Optional[SessionType]:
    try:
        return SessionType(session_type)
    except ValueError:
        return None


# ═══════════════════════════════════════════════════════════════════
# Skills
# ═══════════════════════════════════════════════════════════════════

def skill_complementarity(level_a: int, level_b: int, session_type) -> float:
    """
    Score how well two proficiency levels fit a session type

    Args:
        level_a: Requester proficiency (1-5)
        level_b: Candidate proficiency (1-5)
        session_type: learning | teaching | collaboration

    Returns:
        1 - clamp(|actual_gap - ideal_gap| / max_gap, 0, 1), or 0.5 when the
        session type or a level is unknown
    """
    kind = _coerce_session_type(session_type)
    if kind is None:
        logger.debug(f"Unknown session type {session_type!r}, neutral skill complementarity")
        return NEUTRAL_SCORE

    try:
        if not (MIN_LEVEL <= level_a <= MAX_LEVEL and MIN_LEVEL <= level_b <= MAX_LEVEL):
            logger.debug(f"Proficiency out of range ({level_a}, {level_b}), neutral complementarity")
            return NEUTRAL_SCORE
        actual_gap = level_b - level_a
    except TypeError:
        logger.debug(f"Non-numeric proficiency ({level_a!r}, {level_b!r}), neutral complementarity")
        return NEUTRAL_SCORE

    deviation = abs(actual_gap - IDEAL_SKILL_GAP[kind]) / MAX_LEVEL_GAP
    return 1.0 - _clamp(deviation)


def skill_compatibility(
    requester_skills: Optional[Iterable[UserSkill]],
    candidate_skills: Optional[Iterable[UserSkill]],
    preferred_skills: Optional[Iterable[str]],
    session_type,
    preferred_multiplier: float = PREFERRED_SKILL_MULTIPLIER,
) -> float:
    """
    Weighted average complementarity over skills both users hold

    Skills named in preferred_skills count preferred_multiplier times as much
    as other overlapping skills. An empty preferred list means every overlap
    weighs the same.
    """
    if requester_skills is None or candidate_skills is None:
        logger.debug("Missing skill list, neutral skill compatibility")
        return NEUTRAL_SCORE

    try:
        requester_map = {s.skill_name.strip().lower(): s for s in requester_skills}
        candidate_map = {s.skill_name.strip().lower(): s for s in candidate_skills}
        preferred = {name.strip().lower() for name in (preferred_skills or [])}
    except AttributeError:
        logger.debug("Malformed skill entries, neutral skill compatibility")
        return NEUTRAL_SCORE

    scores: list[float] = []
    weights: list[float] = []
    for name, requester_skill in requester_map.items():
        candidate_skill = candidate_map.get(name)
        if candidate_skill is None:
            continue
        scores.append(skill_complementarity(
            requester_skill.proficiency_level,
            candidate_skill.proficiency_level,
            session_type,
        ))
        weights.append(preferred_multiplier if name in preferred else 1.0)

    if not scores:
        return NO_SKILL_OVERLAP_SCORE

    return _clamp(np.average(scores, weights=weights))


# ═══════════════════════════════════════════════════════════════════
# Timezone
# ═══════════════════════════════════════════════════════════════════

def _utc_offset_hours(tz_name: str, at: datetime) -> Optional[float]:
    try:
        offset = at.astimezone(ZoneInfo(tz_name)).utcoffset()
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        return None
    if offset is None:
        return None
    return offset.total_seconds() / 3600.0


def timezone_compatibility(tz_a: Optional[str], tz_b: Optional[str], at: Optional[datetime] = None) -> float:
    """
    1.0 for the same zone, decreasing linearly with the UTC offset difference

    Offsets are resolved at instant `at` (default: now) so DST is honored.
    The difference is measured around the clock face, so +14 and -10 share
    a wall-clock hour. Unresolvable zones score 0.5, even when identical.
    """
    if not tz_a or not tz_b:
        logger.debug("Missing timezone, neutral timezone compatibility")
        return NEUTRAL_SCORE

    at = at or datetime.now(timezone.utc)
    offset_a = _utc_offset_hours(tz_a, at)
    offset_b = offset_a if tz_b == tz_a else _utc_offset_hours(tz_b, at)
    if offset_a is None or offset_b is None:
        logger.debug(f"Unresolvable timezone ({tz_a!r}, {tz_b!r}), neutral timezone compatibility")
        return NEUTRAL_SCORE
    if tz_a == tz_b:
        return 1.0

    hours = abs(offset_a - offset_b) % 24
    hours = min(hours, 24 - hours)
    return _clamp(1.0 - hours / TIMEZONE_ZERO_HOURS)


# ═══════════════════════════════════════════════════════════════════
# Availability
# ═══════════════════════════════════════════════════════════════════

def time_to_minutes(value: str) -> int:
    """Convert "HH:MM" to minutes since midnight (raises ValueError if malformed)"""
    hours_str, minutes_str = value.split(":")
    hours, minutes = int(hours_str), int(minutes_str)
    if not (0 <= hours <= 24 and 0 <= minutes < 60) or (hours == 24 and minutes != 0):
        raise ValueError(f"Invalid time of day: {value}")
    return hours * 60 + minutes


def _slot_bounds(slot: TimeSlot) -> Optional[tuple[int, int]]:
    try:
        start, end = time_to_minutes(slot.start), time_to_minutes(slot.end)
    except (ValueError, AttributeError):
        logger.debug(f"Skipping malformed time slot {slot!r}")
        return None
    if end <= start:
        return None
    return start, end


def slot_overlap_minutes(slot_a: TimeSlot, slot_b: TimeSlot) -> int:
    """Minutes shared by two slots; adjacent slots share none"""
    bounds_a = _slot_bounds(slot_a)
    bounds_b = _slot_bounds(slot_b)
    if bounds_a is None or bounds_b is None:
        return 0
    return max(0, min(bounds_a[1], bounds_b[1]) - max(bounds_a[0], bounds_b[0]))


def _total_minutes(slots: Iterable[TimeSlot]) -> int:
    total = 0
    for slot in slots:
        bounds = _slot_bounds(slot)
        if bounds is not None:
            total += bounds[1] - bounds[0]
    return total


def availability_compatibility(
    schedule_a: Optional[AvailabilitySchedule],
    schedule_b: Optional[AvailabilitySchedule],
) -> float:
    """
    Weekly overlap normalized by the two users' mean weekly availability

    Returns:
        Overlap ratio in [0, 1]; 0.5 if either schedule is missing, 0.1 if
        neither declares any time
    """
    if schedule_a is None or schedule_b is None:
        logger.debug("Missing availability schedule, neutral availability compatibility")
        return NEUTRAL_SCORE

    try:
        days_a = {day.lower(): slots or [] for day, slots in schedule_a.items()}
        days_b = {day.lower(): slots or [] for day, slots in schedule_b.items()}
    except AttributeError:
        logger.debug("Malformed availability schedule, neutral availability compatibility")
        return NEUTRAL_SCORE

    overlap = 0
    total_a = 0
    total_b = 0
    for day in WEEKDAYS:
        slots_a = days_a.get(day, [])
        slots_b = days_b.get(day, [])
        total_a += _total_minutes(slots_a)
        total_b += _total_minutes(slots_b)
        for slot_a in slots_a:
            for slot_b in slots_b:
                overlap += slot_overlap_minutes(slot_a, slot_b)

    reference = (total_a + total_b) / 2
    if reference == 0:
        return NO_AVAILABILITY_SCORE

    return _clamp(overlap / reference)


# ═══════════════════════════════════════════════════════════════════
# Communication
# ═══════════════════════════════════════════════════════════════════

def _style_score(style_a: Optional[CommunicationStyle], style_b: Optional[CommunicationStyle]) -> float:
    if style_a is None or style_b is None:
        return NEUTRAL_SCORE
    if style_a == style_b:
        return STYLE_IDENTICAL
    if CommunicationStyle.BALANCED in (style_a, style_b):
        return STYLE_WITH_BALANCED
    return STYLE_OPPOSITE


def _language_score(languages_a: list[str], languages_b: list[str]) -> float:
    if not languages_a or not languages_b:
        return NEUTRAL_SCORE
    shared = {l.lower() for l in languages_a} & {l.lower() for l in languages_b}
    return LANGUAGE_SHARED if shared else LANGUAGE_NONE_SHARED


def communication_compatibility(
    prefs_a: Optional[UserPreferences],
    prefs_b: Optional[UserPreferences],
) -> float:
    """Mean of style match, shared language and session-length agreement"""
    if prefs_a is None or prefs_b is None:
        logger.debug("Missing preferences, neutral communication compatibility")
        return NEUTRAL_SCORE

    try:
        style = _style_score(prefs_a.communication_style, prefs_b.communication_style)
        language = _language_score(prefs_a.language_preferences, prefs_b.language_preferences)
        duration_gap = abs(prefs_a.max_session_duration - prefs_b.max_session_duration)
        duration = 1.0 - _clamp(duration_gap / DURATION_ZERO_MINUTES)
    except (AttributeError, TypeError):
        logger.debug("Malformed preferences, neutral communication compatibility")
        return NEUTRAL_SCORE

    return _clamp(float(np.mean([style, language, duration])))


# ═══════════════════════════════════════════════════════════════════
# Session history
# ═══════════════════════════════════════════════════════════════════

def no_history_score(stats_a: Optional[UserStats], stats_b: Optional[UserStats]) -> float:
    """Experience-informed default, always inside [0.45, 0.70]"""
    if stats_a is None or stats_b is None:
        return NEUTRAL_SCORE
    combined = max(0, stats_a.total_sessions) + max(0, stats_b.total_sessions)
    experience = min(combined / HISTORY_EXPERIENCE_SATURATION, 1.0)
    return HISTORY_FLOOR + HISTORY_SPAN * experience


def rating_score(ratings: Iterable[float]) -> Optional[float]:
    """Mean of valid 1-5 ratings mapped onto [0, 1]; None if there are none"""
    valid = [float(r) for r in ratings if r is not None and RATING_MIN <= r <= RATING_MAX]
    if not valid:
        return None
    return _clamp((float(np.mean(valid)) - RATING_MIN) / (RATING_MAX - RATING_MIN))


async def session_history_compatibility(
    user_id_a: str,
    user_id_b: str,
    stats_a: Optional[UserStats],
    stats_b: Optional[UserStats],
    history_store: Optional[SessionHistoryStore] = None,
    since: Optional[datetime] = None,
    timeout_seconds: float = 2.0,
) -> float:
    """
    Score a pair from their shared session ratings, or from experience if none

    Failures of the history store (including timeouts) degrade to the
    no-history default rather than propagating.
    """
    fallback = no_history_score(stats_a, stats_b)
    if history_store is None:
        return fallback

    since = since or datetime.now(timezone.utc) - timedelta(days=365)
    try:
        ratings = await asyncio.wait_for(
            history_store.get_prior_sessions(user_id_a, user_id_b, since),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Session history lookup timed out for {user_id_a}/{user_id_b}, using default")
        return fallback
    except Exception as e:
        logger.warning(f"Session history lookup failed for {user_id_a}/{user_id_b}: {e}")
        return fallback

    score = rating_score(ratings or [])
    return fallback if score is None else score


# ═══════════════════════════════════════════════════════════════════
# Descriptions
# ═══════════════════════════════════════════════════════════════════

def describe_compatibility(score: float) -> str:
    if score >= 0.9:
        return "Excellent Match"
    if score >= 0.8:
        return "Very Good Match"
    if score >= 0.7:
        return "Good Match"
    if score >= 0.6:
        return "Fair Match"
    if score >= 0.4:
        return "Poor Match"
    return "Very Poor Match"


def skill_level_description(level: int) -> str:
    return {
        1: "Beginner",
        2: "Novice",
        3: "Intermediate",
        4: "Advanced",
        5: "Expert",
    }.get(level, "Unknown")


def recommended_duration(session_type, level_a: float, level_b: float) -> int:
    """Suggested session length in minutes from the pair's average level"""
    avg_level = (level_a + level_b) / 2
    kind = _coerce_session_type(session_type)

    if kind == SessionType.LEARNING:
        # Beginners need shorter sessions
        if avg_level <= 2:
            return 45
        return 60 if avg_level <= 3 else 90
    if kind == SessionType.TEACHING:
        if avg_level <= 2:
            return 60
        return 75 if avg_level <= 3 else 90
    if kind == SessionType.COLLABORATION:
        if avg_level <= 2:
            return 60
        return 90 if avg_level <= 4 else 120
    return 60


class CompatibilityScorer:
    """
    Combine the five component scores into a weighted total

    Holds only configuration (weights, history store, timeouts); every
    component is computed by the pure functions in this module.
    """

    def __init__(self,
                 weights: Optional[ScoringWeights] = None,
                 history_store: Optional[SessionHistoryStore] = None,
                 preferred_skill_multiplier: float = PREFERRED_SKILL_MULTIPLIER,
                 history_lookback_days: int = 365,
                 timeout_seconds: float = 2.0):
        """
        Initialize compatibility scorer

        Args:
            weights: Component weights (default 0.30/0.15/0.15/0.15/0.25)
            history_store: Source of prior ratings between two users
            preferred_skill_multiplier: Extra weight for requested skills
            history_lookback_days: How far back prior sessions are considered
            timeout_seconds: Bound on the history store round trip
        """
        self.weights = weights or ScoringWeights()
        self.history_store = history_store
        self.preferred_skill_multiplier = preferred_skill_multiplier
        self.history_lookback_days = history_lookback_days
        self.timeout_seconds = timeout_seconds

    def weighted_total(self, components: dict[str, float]) -> float:
        return (
            components["skill"] * self.weights.skill
            + components["timezone"] * self.weights.timezone
            + components["availability"] * self.weights.availability
            + components["communication"] * self.weights.communication
            + components["session_history"] * self.weights.session_history
        )

    async def compatibility_score(
        self,
        requester: Profile,
        candidate: Profile,
        request: MatchingRequest,
        at: Optional[datetime] = None,
    ) -> CompatibilityResult:
        """
        Compute all components and the weighted total for a candidate

        Args:
            requester: Requesting user's profile snapshot
            candidate: Candidate partner's profile snapshot
            request: The requester's matching request
            at: Reference instant for timezone offsets and history window

        Returns:
            CompatibilityResult
        """
        at = at or datetime.now(timezone.utc)
        requester_prefs = requester.preferences
        candidate_prefs = candidate.preferences

        components = {
            "skill": skill_compatibility(
                requester.skills,
                candidate.skills,
                request.preferred_skills,
                request.session_type,
                preferred_multiplier=self.preferred_skill_multiplier,
            ),
            "timezone": timezone_compatibility(requester.timezone, candidate.timezone, at=at),
            "availability": availability_compatibility(
                requester_prefs.availability_schedule if requester_prefs else None,
                candidate_prefs.availability_schedule if candidate_prefs else None,
            ),
            "communication": communication_compatibility(requester_prefs, candidate_prefs),
            "session_history": await session_history_compatibility(
                requester.user_id,
                candidate.user_id,
                requester.stats,
                candidate.stats,
                history_store=self.history_store,
                since=at - timedelta(days=self.history_lookback_days),
                timeout_seconds=self.timeout_seconds,
            ),
        }

        return CompatibilityResult(**components, total_score=self.weighted_total(components))

    def explain(self, result: CompatibilityResult) -> str:
        """Human-readable summary of a score breakdown"""
        parts = [f"{describe_compatibility(result.total_score)} ({int(result.total_score * 100)}%)"]

        strongest = max(result.components().items(), key=lambda item: item[1])
        weakest = min(result.components().items(), key=lambda item: item[1])
        parts.append(f"strongest: {strongest[0].replace('_', ' ')} ({strongest[1]:.2f})")
        if weakest[1] < 0.5:
            parts.append(f"weakest: {weakest[0].replace('_', ' ')} ({weakest[1]:.2f})")

        return ", ".join(parts)
