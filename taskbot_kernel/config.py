"""
Configuration — environment-driven settings for the orchestrator service.

All settings can be overridden via environment variables with the TASKBOT_ prefix
(e.g. TASKBOT_OPENAI_API_KEY, TASKBOT_HANDLER_TIMEOUT_SECONDS) or a local .env file.
"""

import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskbot_kernel.models.orchestrator import OrchestratorConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TASKBOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # NLU / NLG service
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    research_model: Optional[str] = None       # defaults to `model`
    search_tool: str = "web_search"
    nlu_timeout_seconds: float = 60.0
    max_tool_steps: int = Field(default=5, ge=1)
    classifier: Literal["llm", "rules"] = "llm"
    entity_extractor: Literal["llm", "rules"] = "llm"

    # Persistence
    database_path: str = "taskbot.db"

    # Orchestration
    history_window: int = Field(default=10, ge=1)
    batch_window: int = Field(default=5, ge=1)
    handler_timeout_seconds: float = Field(default=30.0, gt=0)
    clarification_threshold: float = Field(default=0.5, ge=0.0, le=1.0)

    log_level: str = "INFO"

    def orchestrator_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            history_window=self.history_window,
            batch_window=self.batch_window,
            handler_timeout_seconds=self.handler_timeout_seconds,
            clarification_threshold=self.clarification_threshold,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
