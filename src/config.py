"""Configuration management"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.data.schema import SessionType, Urgency


# Session types each type may be paired with
DEFAULT_SESSION_COMPATIBILITY: dict[SessionType, tuple[SessionType, ...]] = {
    SessionType.LEARNING: (SessionType.TEACHING, SessionType.COLLABORATION),
    SessionType.TEACHING: (SessionType.LEARNING, SessionType.COLLABORATION),
    SessionType.COLLABORATION: (
        SessionType.COLLABORATION,
        SessionType.LEARNING,
        SessionType.TEACHING,
    ),
}


class ScoringWeights(BaseModel):
    """Component weights for the compatibility score (must total 1.0)"""

    model_config = ConfigDict(frozen=True)

    skill: float = 0.30
    timezone: float = 0.15
    availability: float = 0.15
    communication: float = 0.15
    session_history: float = 0.25

    @property
    def total(self) -> float:
        return self.skill + self.timezone + self.availability + self.communication + self.session_history

    @model_validator(mode="after")
    def _check_total(self) -> "ScoringWeights":
        if any(w < 0 for w in (self.skill, self.timezone, self.availability,
                               self.communication, self.session_history)):
            raise ValueError("Scoring weights must be non-negative")
        if abs(self.total - 1.0) > 0.001:
            raise ValueError(f"Scoring weights must sum to 1.0, got {self.total:.4f}")
        return self


class MatchingConfig(BaseModel):
    """Immutable matching configuration, built once at process start"""

    model_config = ConfigDict(frozen=True)

    weights: ScoringWeights = Field(default_factory=ScoringWeights)

    # Acceptance thresholds
    min_total_score: float = Field(0.6, ge=0.0, le=1.0)
    min_skill_score: float = Field(0.4, ge=0.0, le=1.0)
    min_availability_score: float = Field(0.3, ge=0.0, le=1.0)

    session_compatibility: dict[SessionType, tuple[SessionType, ...]] = Field(
        default_factory=lambda: dict(DEFAULT_SESSION_COMPATIBILITY)
    )
    # Urgency -> queue TTL in minutes
    ttl_minutes: dict[Urgency, int] = Field(
        default_factory=lambda: {Urgency.HIGH: 15, Urgency.MEDIUM: 30, Urgency.LOW: 60}
    )

    candidate_limit: int = Field(20, gt=0)
    claim_max_retries: int = Field(3, gt=0)
    store_timeout_seconds: float = Field(2.0, gt=0)
    default_match_time_seconds: float = Field(120.0, gt=0)

    preferred_skill_multiplier: float = Field(2.0, ge=1.0)
    history_lookback_days: int = Field(365, gt=0)

    @model_validator(mode="after")
    def _check_maps(self) -> "MatchingConfig":
        missing = [u.value for u in Urgency if u not in self.ttl_minutes]
        if missing:
            raise ValueError(f"Missing TTL for urgency levels: {missing}")
        if any(minutes <= 0 for minutes in self.ttl_minutes.values()):
            raise ValueError("Queue TTLs must be positive")
        missing = [t.value for t in SessionType if t not in self.session_compatibility]
        if missing:
            raise ValueError(f"Missing session compatibility for: {missing}")
        return self

    def compatible_session_types(self, session_type: SessionType) -> tuple[SessionType, ...]:
        return self.session_compatibility.get(session_type, (SessionType.COLLABORATION,))


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # Logging
    log_level: str = "INFO"

    # Scoring weights
    weight_skill: float = 0.30
    weight_timezone: float = 0.15
    weight_availability: float = 0.15
    weight_communication: float = 0.15
    weight_session_history: float = 0.25

    # Acceptance thresholds
    min_total_score: float = 0.6
    min_skill_score: float = 0.4
    min_availability_score: float = 0.3

    # Queue
    ttl_high_minutes: int = 15
    ttl_medium_minutes: int = 30
    ttl_low_minutes: int = 60
    candidate_limit: int = 20
    claim_max_retries: int = 3
    store_timeout_seconds: float = 2.0
    default_match_time_seconds: float = 120.0

    # Scoring
    preferred_skill_multiplier: float = 2.0
    history_lookback_days: int = 365

    # Background schedules
    cleanup_interval_seconds: float = 120.0
    rebalance_interval_seconds: float = 300.0
    position_update_interval_seconds: float = 30.0
    stats_broadcast_interval_seconds: float = 60.0

    # Optional seed file for the in-memory profile store
    profiles_path: Optional[Path] = None

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    def matching_config(self) -> MatchingConfig:
        """Build the immutable matching configuration (raises on invalid values)"""
        return MatchingConfig(
            weights=ScoringWeights(
                skill=self.weight_skill,
                timezone=self.weight_timezone,
                availability=self.weight_availability,
                communication=self.weight_communication,
                session_history=self.weight_session_history,
            ),
            min_total_score=self.min_total_score,
            min_skill_score=self.min_skill_score,
            min_availability_score=self.min_availability_score,
            ttl_minutes={
                Urgency.HIGH: self.ttl_high_minutes,
                Urgency.MEDIUM: self.ttl_medium_minutes,
                Urgency.LOW: self.ttl_low_minutes,
            },
            candidate_limit=self.candidate_limit,
            claim_max_retries=self.claim_max_retries,
            store_timeout_seconds=self.store_timeout_seconds,
            default_match_time_seconds=self.default_match_time_seconds,
            preferred_skill_multiplier=self.preferred_skill_multiplier,
            history_lookback_days=self.history_lookback_days,
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr sink at the given level"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


# Global settings instance
settings = Settings()
