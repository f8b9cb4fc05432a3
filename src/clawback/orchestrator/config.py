"""Configuration for the automation engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Pydantic-settings supports overriding the env file in tests via
`EngineSettings(_env_file=path_to_env)`.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from clawback.orchestrator.models import ModelTier


class EngineSettings(BaseSettings):
    """Settings for the engine.

    Environment variables:
    - OPENAI_API_KEY
    - OPENAI_BASE_URL             (optional)
    - LOG_LEVEL                   (optional)
    - CLAWBACK_STATE_PATH         (optional)
    - CLAWBACK_SKILLS_DIR         (optional)

    Notes:
        The API key is not required at startup. Matching, scheduling and the
        stores work without it; the provider is only built on first use.
    """

    openai_api_key: str = Field(
        default="",
        validation_alias="OPENAI_API_KEY",
        description="API key for the completion service",
    )
    openai_base_url: str | None = Field(
        default=None,
        validation_alias="OPENAI_BASE_URL",
        description="Override the completion service base URL (proxies, compatible servers)",
    )
    model_large: str = Field(default="gpt-4o", validation_alias="CLAWBACK_MODEL_LARGE")
    model_standard: str = Field(default="gpt-4o", validation_alias="CLAWBACK_MODEL_STANDARD")
    model_small: str = Field(default="gpt-4o-mini", validation_alias="CLAWBACK_MODEL_SMALL")
    max_output_tokens: int = Field(
        default=4096, gt=0, validation_alias="CLAWBACK_MAX_OUTPUT_TOKENS"
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("clawback_state"),
        validation_alias="CLAWBACK_STATE_PATH",
        description="Directory where events, runs, checkpoints and schedules are persisted",
    )
    skills_dir: Path | None = Field(
        default=None,
        validation_alias="CLAWBACK_SKILLS_DIR",
        description="Directory of <name>/SKILL.md skill definitions to load at startup",
    )

    scheduler_enabled: bool = Field(default=True, validation_alias="CLAWBACK_SCHEDULER_ENABLED")
    scheduler_tick_seconds: float = Field(
        default=60.0, gt=0, validation_alias="CLAWBACK_SCHEDULER_TICK_SECONDS"
    )

    skill_max_turns: int = Field(default=20, gt=0, validation_alias="CLAWBACK_SKILL_MAX_TURNS")
    orchestrator_max_turns: int = Field(
        default=50, gt=0, validation_alias="CLAWBACK_ORCHESTRATOR_MAX_TURNS"
    )

    rate_limit_max_retries: int = Field(
        default=3, ge=0, validation_alias="CLAWBACK_RATE_LIMIT_MAX_RETRIES"
    )
    rate_limit_base_delay_seconds: float = Field(
        default=15.0, ge=0, validation_alias="CLAWBACK_RATE_LIMIT_BASE_DELAY_SECONDS"
    )
    rate_limit_max_delay_seconds: float = Field(
        default=120.0, ge=0, validation_alias="CLAWBACK_RATE_LIMIT_MAX_DELAY_SECONDS"
    )

    dispatch_workers: int = Field(default=4, gt=0, validation_alias="CLAWBACK_DISPATCH_WORKERS")
    serialize_workflow_runs: bool = Field(
        default=False,
        validation_alias="CLAWBACK_SERIALIZE_WORKFLOW_RUNS",
        description=(
            "If true, runs of the same workflow triggered by different events execute one at "
            "a time. By default concurrent runs of one workflow are independent."
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    def model_for(self, tier: ModelTier) -> str:
        return {
            "large": self.model_large,
            "standard": self.model_standard,
            "small": self.model_small,
        }[tier]
