"""Application settings for the grounded response orchestration core."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings read once at startup.

    Operator-tunable gate values declared here only seed the runtime
    controls; live changes go through ``GroundingControls``.
    """

    model_config = SettingsConfigDict(
        env_prefix="GROUNDGATE_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True

    # Redis (decision stickiness + memory)
    redis_url: str | None = None

    # Semantic response cache
    cache_capacity: int = Field(default=1000, gt=0)
    cache_ttl_seconds: int = Field(default=3600, gt=0)
    cache_similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)

    # Grounding gate
    decision_stickiness_ttl_seconds: int = Field(default=120, gt=0)
    max_clarification_attempts: int = 2
    max_search_attempts: int = 2
    gate_shadow_mode: bool = False
    gate_blocking_enabled: bool = True
    gate_strict_refusal: bool = False
    gate_emergency_bypass: bool = False
    gate_decision_logging: bool = True

    # Failure recovery
    max_failures: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 30000
    generation_retry_multiplier: float = 0.5

    # Timeouts (seconds)
    external_call_timeout: float = 10.0
    generation_timeout: float = 30.0
    web_fetch_timeout: float = 15.0

    # Web augmentation
    web_fetch_concurrency: int = Field(default=3, gt=0)
    web_fetch_batch_delay: float = 1.0
    web_max_sources: int = 3

    # Retrieval and routing
    retrieval_top_k: int = 8
    default_cost_budget: float = 0.10
    max_graph_steps: int = 32

    # Memory
    memory_min_subject_confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    # Models
    primary_model: str = "gpt-4o"
    fallback_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    openai_api_key: str | None = None

    @field_validator("backoff_cap_ms")
    @classmethod
    def validate_backoff_cap(cls, v: int, info) -> int:
        """Ensure the backoff cap is not below the base delay."""
        base = info.data.get("backoff_base_ms", 1000)
        if v < base:
            raise ValueError("backoff_cap_ms must be >= backoff_base_ms")
        return v

    @property
    def is_test(self) -> bool:
        """Check if running under the test environment."""
        return self.app_env == "test"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
