"""Application configuration using Pydantic Settings.

Every setting can be overridden through an environment variable of the same
name (case-insensitive) or a ``.env`` file next to the repo root or backend.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CORS_ORIGINS = ["http://localhost:3000"]


class Settings(BaseSettings):
    """Planner agent settings.

    Attributes:
        openai_api_key: API key passed to LiteLLM for OpenAI models.
        default_model: Model used by every agent endpoint.
        llm_request_timeout_seconds: Timeout for a single LLM API call.
        llm_max_retries: Retries on transient LLM errors (endpoint side only).
        agent_api_base_url: Base URL the sub-agents call. Empty means the
            agent endpoints are reached in-process through the ASGI app.
        agent_request_timeout_seconds: Timeout for sub-agent HTTP calls.
            None leaves them unbounded.
        code_execution_timeout_seconds: Wall-clock limit for sandboxed code.
        max_rounds: Safety cap on coordinator rounds per run.
        database_path: SQLite file holding tasks and run records.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: ``json`` for machine-readable logs, anything else for
            the colored console renderer.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # LLM
    openai_api_key: str = ""
    default_model: str = "gpt-4o"
    llm_request_timeout_seconds: int = 120
    llm_max_retries: int = 2

    # Coordinator and sub-agents
    agent_api_base_url: str = ""
    agent_request_timeout_seconds: float | None = None
    code_execution_timeout_seconds: float = 5.0
    max_rounds: int = 25

    # Storage
    database_path: str = "./data/planner.db"

    # Server
    backend_port: int = 8000
    cors_origins: str | list[str] = DEFAULT_CORS_ORIGINS
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Accept a list, a JSON array string or a comma-separated string."""
        if isinstance(v, list):
            return v
        if not isinstance(v, str):
            return list(DEFAULT_CORS_ORIGINS)

        v = v.strip()
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    @field_validator("max_rounds")
    @classmethod
    def check_max_rounds(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_rounds must be at least 1")
        return v

    def model_post_init(self, __context: Any) -> None:
        # LiteLLM reads provider keys from the environment.
        if self.openai_api_key:
            os.environ.setdefault("OPENAI_API_KEY", self.openai_api_key)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog for JSON (production) or console (development) output."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


settings = Settings()

configure_logging(settings.log_level, settings.log_format)
