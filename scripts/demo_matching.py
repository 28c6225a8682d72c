"""Demo: seed synthetic profiles, queue them and run matching"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import numpy as np
from loguru import logger

from src.config import configure_logging, settings
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
from src.matching.compatibility_scorer import describe_compatibility
from src.matching.matching_engine import MatchingEngine
from src.matching.priority_queue_store import PriorityQueueStore


SKILLS = ["javascript", "python", "react", "sql", "docker", "rust", "go", "typescript"]
TIMEZONES = ["America/New_York", "America/Chicago", "Europe/London", "Europe/Berlin", "Asia/Tokyo"]
LANGUAGES = ["english", "spanish", "german"]
SLOTS = [("09:00", "12:00"), ("13:00", "17:00"), ("18:00", "21:00")]


def build_profile(rng: np.random.Generator, index: int) -> Profile:
    """Random but plausible profile"""
    skill_names = rng.choice(SKILLS, size=3, replace=False)
    schedule = {
        day: [TimeSlot(start=start, end=end) for start, end in [SLOTS[rng.integers(len(SLOTS))]]]
        for day in ("monday", "wednesday", "friday")
    }
    return Profile(
        user_id=f"user-{index:03d}",
        timezone=str(rng.choice(TIMEZONES)),
        skills=[
            UserSkill(skill_name=str(name), proficiency_level=int(rng.integers(1, 6)))
            for name in skill_names
        ],
        preferences=UserPreferences(
            communication_style=CommunicationStyle(str(rng.choice([s.value for s in CommunicationStyle]))),
            availability_schedule=schedule,
            language_preferences=["english"] + ([str(rng.choice(LANGUAGES[1:]))] if rng.random() < 0.3 else []),
            max_session_duration=int(rng.choice([30, 60, 90])),
        ),
        stats=UserStats(total_sessions=int(rng.integers(0, 40))),
    )


def build_request(rng: np.random.Generator, profile: Profile) -> MatchingRequest:
    return MatchingRequest(
        user_id=profile.user_id,
        preferred_skills=[profile.skills[0].skill_name],
        session_type=SessionType(str(rng.choice([t.value for t in SessionType]))),
        max_duration=profile.preferences.max_session_duration,
        urgency=Urgency(str(rng.choice([u.value for u in Urgency]))),
    )


async def run_demo(num_users: int, seed: int) -> None:
    rng = np.random.default_rng(seed)
    config = settings.matching_config()

    profiles = [build_profile(rng, i) for i in range(num_users)]
    profile_store = InMemoryProfileStore(profiles)
    session_store = InMemorySessionStore()
    store = PriorityQueueStore(config=config)
    engine = MatchingEngine(
        store=store,
        profile_store=profile_store,
        session_store=session_store,
        history_store=session_store,
        config=config,
    )

    requests = [build_request(rng, profile) for profile in profiles]
    for request in requests:
        await engine.add_to_queue(request)
    logger.info(f"Queued {len(store)} users")

    matches = []
    for request in requests:
        if await store.get(request.user_id) is None:
            continue  # already matched
        match = await engine.find_match(request)
        if match:
            matches.append(match)

    logger.info("=" * 60)
    for match in matches:
        logger.info(
            f"{match.user_id_a} <-> {match.user_id_b} [{match.session_type.value}] "
            f"score={match.compatibility_score:.2f} ({describe_compatibility(match.compatibility_score)}), "
            f"{match.recommended_duration} min"
        )
    stats = await engine.get_queue_stats()
    logger.info(f"Matches: {len(matches)}, still waiting: {stats.total_in_queue}")
    logger.info("=" * 60)


def main():
    parser = argparse.ArgumentParser(description="Run the matching engine on synthetic users")
    parser.add_argument("--users", type=int, default=20, help="Number of synthetic users")
    parser.add_argument("--seed", type=int, default=7, help="Random seed")
    parser.add_argument("--log-level", default=settings.log_level, help="Log level")
    args = parser.parse_args()

    configure_logging(args.log_level)
    asyncio.run(run_demo(args.users, args.seed))


if __name__ == "__main__":
    main()
