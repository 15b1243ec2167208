"""Configuration for the allocation engine.

Fairness weights, hoarding thresholds and queue tuning are data, loaded from
the environment (``FAIRSHARE_`` prefix, ``__`` for nested fields) so that
operators can retune the policy without code changes.
"""

from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ScoringWeights(BaseModel):
    """Weights of the admission priority formula."""

    need_weight: float = 10.0
    need_max: float = Field(default=10.0, gt=0)
    history_weight: float = 1.0
    history_cap: int = Field(default=50, ge=0)
    underserved_bonus: float = 25.0
    reserved_slack_bonus: float = 5.0
    watched_penalty: float = 20.0
    restricted_penalty: float = 100.0


class HoardingSettings(BaseModel):
    """Thresholds of the hoarding detector."""

    window_seconds: float = Field(default=86400.0, gt=0)
    window_count: int = Field(default=7, ge=1)
    watch_multiple: float = Field(default=3.0, gt=1.0)
    min_peers: int = Field(default=1, ge=1)
    restrict_after_windows: int = Field(default=2, ge=1)
    contention_ratio: float = Field(default=1.0, ge=0.0)
    cooldown_seconds: float = Field(default=172800.0, ge=0)
    watch_decay_seconds: float = Field(default=86400.0, ge=0)
    restricted_quota_factor: float = Field(default=0.5, gt=0.0, lt=1.0)
    expiry_anomaly_threshold: int = Field(default=3, ge=1)
    max_samples: int = Field(default=200, ge=1)

    @field_validator("restrict_after_windows")
    @classmethod
    def validate_restrict_after_windows(cls, v: int, info) -> int:
        window_count = info.data.get("window_count")
        if window_count is not None and v > window_count:
            raise ValueError("restrict_after_windows cannot exceed window_count")
        return v


class QueueSettings(BaseModel):
    """Queue sizing and wait-estimate tuning."""

    max_size: int = Field(default=10000, ge=1)
    estimate_ttl_seconds: float = Field(default=2.0, ge=0)
    ewma_alpha: float = Field(default=0.2, gt=0.0, le=1.0)
    initial_session_seconds: float = Field(default=600.0, gt=0)


class EngineSettings(BaseSettings):
    """Allocation engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="FAIRSHARE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service settings
    service_name: str = "fairshare-engine"
    log_level: str = "INFO"
    log_format: str = "pretty"

    # Per-resource critical section
    lock_timeout_seconds: float = Field(default=0.5, gt=0)
    lock_retries: int = Field(default=3, ge=0)
    lock_retry_backoff_seconds: float = Field(default=0.01, ge=0)

    # Background sweeper
    sweep_interval_seconds: float = Field(default=5.0, gt=0)
    retention_seconds: float = Field(default=86400.0, ge=0)

    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    hoarding: HoardingSettings = Field(default_factory=HoardingSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)


@lru_cache()
def get_settings() -> EngineSettings:
    """Get cached engine settings."""
    return EngineSettings()
