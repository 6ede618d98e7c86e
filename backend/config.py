"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the orchestration
backend. All settings can be overridden via environment variables or a .env file.
"""

import logging
import os
import sys
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model used by sub-agents (LiteLLM provider-prefixed name).
        llm_fallback_model: Optional model tried once after the primary exhausts retries.
        llm_max_retries: Retries for transient LLM failures before falling back.
        llm_request_timeout_seconds: Timeout for a single LLM API call.
        lm_studio_api_base: Base URL for a local LM Studio server.
        use_mock_llm: If True, wire the scripted mock client instead of LiteLLM.
        max_retries_per_task: Loop guard ceiling for retries of one task node.
        max_total_interventions: Loop guard ceiling for interventions per run.
        runner_max_iterations: Reason/act iterations before a sub-agent gives up.
        runner_temperature: Sampling temperature for sub-agent LLM calls.
        runner_max_tokens: Max completion tokens for sub-agent LLM calls.
        database_path: Path to the SQLite file backing the durable repository.
        cache_backend: Which cache adapter to use ("memory" or "redis").
        redis_url: Connection URL used when cache_backend is "redis".
        cache_key_prefix: Namespace prefix for every cache key and channel.
        cache_ttl_seconds: Expiry applied to cached agent/orchestrator state.
        event_write_timeout_seconds: Per-writer delivery timeout in the distributor.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    default_model: str = "lm_studio/zai-org/glm-4.7-flash"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120
    lm_studio_api_base: str = "http://localhost:1234/v1"
    use_mock_llm: bool = False

    # Loop Guard
    max_retries_per_task: int = 3
    max_total_interventions: int = 10

    # Sub-agent runner
    runner_max_iterations: int = 20
    runner_temperature: float = 0.7
    runner_max_tokens: int = 4096

    # Durable store
    database_path: str = "./data/orchestrator.db"

    # Cache / pub-sub
    cache_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    cache_key_prefix: str = "orchestrator"
    cache_ttl_seconds: int = 3600

    # Event distribution
    event_write_timeout_seconds: float = 5.0

    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("max_retries_per_task", "max_total_interventions", "runner_max_iterations")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Limits must be strictly positive."""
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    model_config = SettingsConfigDict(
        # Support running from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export LM Studio API base to os.environ for LiteLLM discovery."""
        if self.lm_studio_api_base:
            os.environ.setdefault("LM_STUDIO_API_BASE", self.lm_studio_api_base)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog for the orchestration backend.

    Log lines go to stderr so run output on stdout stays machine-readable.
    Exceptions logged with exc_info are rendered as structured tracebacks in
    JSON mode and as pretty tracebacks in text mode.

    Args:
        log_level: Minimum level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: 'json' for deployments, 'text' for local development.
    """
    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        renderers: list[structlog.types.Processor] = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    level = logging.getLevelName(log_level.upper())
    structlog.configure(
        processors=[*shared, *renderers],
        wrapper_class=structlog.make_filtering_bound_logger(
            level if isinstance(level, int) else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


settings = Settings()

configure_logging(settings.log_level, settings.log_format)
