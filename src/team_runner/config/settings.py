"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "team-runner"
    app_env: str = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["memory", "postgres"] = "postgres"
    database_url: str = ""
    executor_mode: Literal["deterministic", "openai"] = "deterministic"

    # Dispatch watcher
    poll_interval_s: float = Field(default=5.0, gt=0.0)
    poll_batch_size: int = Field(default=25, ge=1)
    max_concurrency: int = Field(default=3, ge=1)

    # Coordinator fault handling
    fault_retry_budget: int = Field(default=3, ge=0)
    store_write_retries: int = Field(default=2, ge=0)
    store_retry_backoff_s: float = Field(default=0.5, ge=0.0)

    # Supervision; reaper_timeout_s = 0 disables the stale run reaper.
    reaper_timeout_s: float = Field(default=900.0, ge=0.0)
    heartbeat_interval_s: float = Field(default=10.0, gt=0.0)

    # Agent executor
    agent_timeout_s: float = Field(default=120.0, ge=0.01)
    agent_max_retries: int = Field(default=1, ge=0)
    agent_backoff_s: float = Field(default=1.0, ge=0.0)
    llm_base_url: str = "https://api.openai.com/v1"
    llm_default_model: str = "gpt-4o-mini"
    openai_api_key: str = ""

    audit_queue_size: int = Field(default=1000, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="TEAM_RUNNER_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
