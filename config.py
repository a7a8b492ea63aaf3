"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the
orchestration engine. All settings can be overridden via environment
variables or a .env file.
"""

import logging
from typing import Literal

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables.

    Attributes:
        manager_model: LiteLLM model identifier used by the Manager.
        worker_model: LiteLLM model identifier used by Workers.
        manager_temperature: Sampling temperature for Manager calls.
        worker_temperature: Sampling temperature for Worker calls.
        manager_max_tokens: Response token cap for Manager calls.
        worker_max_tokens: Response token cap for Worker calls.
        use_mock_llm: If True, teams run against the deterministic mock reasoner.
        llm_max_retries: Retries on transient LLM failures before giving up.
        llm_request_timeout_seconds: Timeout for a single LLM request.
        llm_fallback_model: Optional model tried once after retries are exhausted.
        llm_input_cost_per_1k_tokens: Price of 1k prompt tokens.
        llm_output_cost_per_1k_tokens: Price of 1k completion tokens.
        team_formation_retries: Re-prompts allowed when team formation
            returns a worker count outside 3-5.
        max_task_attempts: Execution attempts per task before a requested
            revision is turned into a rejection.
        task_timeout_seconds: Timeout for one in-flight task execution.
        timeout_reassignment: Where a timed-out task goes next.
        block_worker_on_reject: Park workers in Blocked after a rejection
            until the manager releases them.
        enforce_budget: Fail a team once its spend reaches its budget limit.
        default_budget_limit: Budget applied to teams created without one.
        event_history_limit: Events retained per team for replay.
        database_path: SQLite file used by the SQLite repository.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix for LiteLLM (e.g., anthropic/, openai/)
    manager_model: str = "anthropic/claude-3-5-sonnet-20241022"
    worker_model: str = "anthropic/claude-3-5-sonnet-20241022"
    manager_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    worker_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    manager_max_tokens: int = 4096
    worker_max_tokens: int = 4096
    use_mock_llm: bool = False

    # LLM Fallback & Degradation
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120
    llm_fallback_model: str | None = None

    # Cost Tracking
    llm_input_cost_per_1k_tokens: float = 0.003
    llm_output_cost_per_1k_tokens: float = 0.015

    # Orchestration Policy
    team_formation_retries: int = 1
    max_task_attempts: int = 3
    task_timeout_seconds: float = 300.0
    timeout_reassignment: Literal["any_worker", "same_worker"] = "any_worker"
    block_worker_on_reject: bool = False
    enforce_budget: bool = True
    default_budget_limit: float | None = None

    # Event Bus
    event_history_limit: int = 5000

    # Persistence
    database_path: str = "./data/teams.db"

    log_level: str = "INFO"
    log_format: str = "json"

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the engine.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
