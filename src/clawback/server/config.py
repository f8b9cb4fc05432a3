"""Configuration for the HTTP adapter.

Like the engine itself, the server starts without a language-model API key.
Endpoints that end up running skills or workflows build the provider on first
use and fail at that point if credentials are missing.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the REST API."""

    start_scheduler: bool = Field(
        default=True,
        validation_alias="CLAWBACK_SERVER_START_SCHEDULER",
        description=(
            "If true (and CLAWBACK_SCHEDULER_ENABLED is true), the app syncs scheduled jobs "
            "and runs the scheduler loop for its lifetime."
        ),
    )

    # Dev-friendly CORS. Override via CLAWBACK_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="CLAWBACK_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
