"""
Configuration Settings.

This module defines the application configuration using Pydantic's BaseSettings.
All values bind from environment variables (or a ``.env`` file) by their alias;
grouped views (``loop``, ``memory``, ``scoring``) are re-validated from the
flat settings so each subsystem receives only the knobs it owns.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# =====================================================================
# Grouped Configuration Models
# =====================================================================


class LoopConfig(BaseModel):
    """Step loop configuration."""

    max_iterations: int = Field(
        default=50, ge=1, alias="AGENTLOOP_MAX_ITERATIONS", description="Upper bound on loop iterations per run"
    )
    tool_concurrency: int = Field(
        default=4, ge=1, alias="AGENTLOOP_TOOL_CONCURRENCY", description="Tool calls allowed in flight at once"
    )
    model_max_retries: int = Field(
        default=3,
        ge=0,
        alias="AGENTLOOP_MODEL_MAX_RETRIES",
        description="Local retries for transient model errors (rate_limit, network)",
    )
    model_retry_backoff: float = Field(
        default=1.0,
        ge=0,
        alias="AGENTLOOP_MODEL_RETRY_BACKOFF",
        description="Base backoff in seconds, doubled on every retry",
    )

    model_config = {"populate_by_name": True}


class MemoryConfig(BaseModel):
    """Observational memory thresholds."""

    enabled: bool = Field(default=True, alias="OM_ENABLED", description="Run the observational memory pipeline")
    message_tokens: int = Field(
        default=30_000, ge=1, alias="OM_MESSAGE_TOKENS", description="Unobserved tokens that trigger observation"
    )
    observation_tokens: int = Field(
        default=40_000, ge=1, alias="OM_OBSERVATION_TOKENS", description="Observation tokens that trigger reflection"
    )
    buffer_tokens: Optional[int] = Field(
        default=None,
        ge=0,
        alias="OM_BUFFER_TOKENS",
        description="Buffering interval in tokens (defaults to a fifth of OM_MESSAGE_TOKENS, 0 disables)",
    )

    model_config = {"populate_by_name": True}


class ScoringConfig(BaseModel):
    """Completion scorer configuration."""

    strategy: Literal["all", "any"] = Field(
        default="all", alias="AGENTLOOP_SCORER_STRATEGY", description="How scorer results combine"
    )
    parallel: bool = Field(default=False, alias="AGENTLOOP_SCORER_PARALLEL", description="Run scorers concurrently")
    timeout: Optional[float] = Field(
        default=None, gt=0, alias="AGENTLOOP_SCORER_TIMEOUT", description="Time budget for one scoring pass (seconds)"
    )

    model_config = {"populate_by_name": True}


# =====================================================================
# Main Settings Class
# =====================================================================


class Settings(BaseSettings):
    """
    Application settings model.

    All properties are automatically bound from environment variables and .env file.
    Pydantic's BaseSettings handles dotenv loading automatically via model_config.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
        populate_by_name=True,
    )

    # =====================================================================
    # Logging Configuration
    # =====================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        alias="AGENTLOOP_AI_LOG_LEVEL",
    )
    log_format: str = Field(default="detailed", description="simple, detailed or json", alias="LOG_FORMAT")
    log_file_dir: str = Field(default="logs", description="Directory for the log file", alias="LOG_FILE_DIR")
    enable_file_logging: bool = Field(default=False, description="Write logs to a file", alias="ENABLE_FILE_LOGGING")

    # =====================================================================
    # Database Configuration
    # =====================================================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./agentloop.db",
        description="Async SQLAlchemy URL for the snapshot store",
        alias="DATABASE_URL",
    )

    # =====================================================================
    # Loop Configuration
    # =====================================================================
    max_iterations: int = Field(default=50, ge=1, alias="AGENTLOOP_MAX_ITERATIONS")
    tool_concurrency: int = Field(default=4, ge=1, alias="AGENTLOOP_TOOL_CONCURRENCY")
    model_max_retries: int = Field(default=3, ge=0, alias="AGENTLOOP_MODEL_MAX_RETRIES")
    model_retry_backoff: float = Field(default=1.0, ge=0, alias="AGENTLOOP_MODEL_RETRY_BACKOFF")

    # =====================================================================
    # Observational Memory Configuration
    # =====================================================================
    om_enabled: bool = Field(default=True, alias="OM_ENABLED")
    om_message_tokens: int = Field(default=30_000, ge=1, alias="OM_MESSAGE_TOKENS")
    om_observation_tokens: int = Field(default=40_000, ge=1, alias="OM_OBSERVATION_TOKENS")
    om_buffer_tokens: Optional[int] = Field(default=None, ge=0, alias="OM_BUFFER_TOKENS")

    # =====================================================================
    # Scoring Configuration
    # =====================================================================
    scorer_strategy: Literal["all", "any"] = Field(default="all", alias="AGENTLOOP_SCORER_STRATEGY")
    scorer_parallel: bool = Field(default=False, alias="AGENTLOOP_SCORER_PARALLEL")
    scorer_timeout: Optional[float] = Field(default=None, gt=0, alias="AGENTLOOP_SCORER_TIMEOUT")

    # =====================================================================
    # Computed Properties (Grouped Configurations)
    # =====================================================================

    @property
    def loop(self) -> LoopConfig:
        """Get step loop configuration."""
        return LoopConfig.model_validate(self.model_dump(by_alias=True))

    @property
    def memory(self) -> MemoryConfig:
        """Get observational memory configuration."""
        return MemoryConfig.model_validate(self.model_dump(by_alias=True))

    @property
    def scoring(self) -> ScoringConfig:
        """Get completion scoring configuration."""
        return ScoringConfig.model_validate(self.model_dump(by_alias=True))


settings = Settings()
