"""Tunable parameters for the progression engine.

Each section is a plain pydantic model with bounds on every field, grouped
under a pydantic-settings `Settings` object so any value can be overridden
from the environment, e.g. ``MATHCHAMP_SCHEDULER__GROWTH_FACTOR=2.0``.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path(__file__).parent / "data" / "progression.db"


class MasteryConfig(BaseModel):
    """Mastery estimator constants."""

    neutral_mastery: float = Field(default=50.0, ge=0.0, le=100.0)
    base_learning_rate: float = Field(default=0.3, gt=0.0, le=0.45)
    min_learning_rate: float = Field(default=0.05, gt=0.0, le=0.45)
    learning_rate_decay: float = Field(default=0.1, ge=0.0)
    # Mastery points over which the difficulty gap doubles (or zeroes) the weight
    difficulty_spread: float = Field(default=50.0, gt=0.0)
    min_weight: float = Field(default=0.2, gt=0.0, le=1.0)
    max_weight: float = Field(default=2.0, ge=1.0, le=2.2)
    hint_discount: float = Field(default=0.75, gt=0.0, le=1.0)


class SchedulerConfig(BaseModel):
    """Spaced-repetition intervals, in days."""

    floor_interval_days: float = Field(default=1.0, gt=0.0)
    growth_factor: float = Field(default=2.5, ge=1.5)
    max_interval_days: float = Field(default=180.0, gt=0.0)


class StreakConfig(BaseModel):
    """Streak grace window and token economy."""

    grace_window_days: int = Field(default=1, ge=0)
    max_grace_tokens: int = Field(default=2, ge=0)
    token_every_days: int = Field(default=7, ge=1)
    initial_grace_tokens: int = Field(default=0, ge=0)


class ValidatorConfig(BaseModel):
    """Sanity limits applied to incoming attempts."""

    max_time_spent_seconds: float = Field(default=3 * 60 * 60, gt=0)
    max_text_answer_length: int = Field(default=500, ge=1)
    max_numeric_answer_length: int = Field(default=64, ge=1, le=1000)
    # Fraction of problem points lost per hint used
    hint_penalty: float = Field(default=0.25, ge=0.0, le=1.0)


class AchievementConfig(BaseModel):
    min_attempts_for_accuracy: int = Field(default=10, ge=0)
    points_per_level: int = Field(default=500, ge=1)


class CoordinatorConfig(BaseModel):
    """Per-student actor and snapshot cache limits."""

    max_cached_students: int = Field(default=1024, ge=1)
    # Attempts looked back over when skipping already solved problems
    recent_attempts_window: int = Field(default=20, ge=0)


class PersistenceConfig(BaseModel):
    db_path: Path = DEFAULT_DB_PATH
    timeout_seconds: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=0.1, ge=0)


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_prefix="MATHCHAMP_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    mastery: MasteryConfig = Field(default_factory=MasteryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    streak: StreakConfig = Field(default_factory=StreakConfig)
    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)
    achievements: AchievementConfig = Field(default_factory=AchievementConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)

    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
