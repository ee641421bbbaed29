"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the mission engine.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        gateway_url: Base URL of the remote agent gateway.
        gateway_token: Optional bearer token forwarded to the gateway.
        gateway_timeout_seconds: Per-request HTTP timeout for gateway calls.
        default_model: Model used when a team member has no model id.
        model_aliases: Preset id -> gateway model id map.
        max_concurrent_streams: Maximum number of live push-stream connections.
        stream_stale_seconds: Idle time after which a push connection is pruned.
        output_buffer_lines: Lines kept in each agent's rolling output buffer.
        poll_interval_seconds: Interval between session-status polls.
        status_active_window_seconds: Recency under which a polled session is active.
        status_idle_window_seconds: Recency under which a polled session is idle.
        status_missing_grace_seconds: Grace window for sessions absent from a poll.
        settle_delay_seconds: Delay before declaring a mission finished.
        sequential_stagger_seconds: Delay between agents in sequential mode.
        database_path: Path to the local key-value store.
        mission_history_limit: Archived checkpoints kept.
        report_history_limit: Mission reports kept.
        approval_retention_hours: How long resolved approvals are retained.
        cost_per_1k_tokens: Dollar estimate per thousand tokens.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Gateway
    gateway_url: str = "http://localhost:18789"
    gateway_token: str = ""
    gateway_timeout_seconds: float = 30.0

    # Models
    default_model: str = ""
    model_aliases: str | dict[str, str] = {}

    # Streams
    # Agents beyond the cap fall back to poll-only status.
    max_concurrent_streams: int = 3
    stream_stale_seconds: float = 60.0
    output_buffer_lines: int = 200

    # Status reconciliation
    poll_interval_seconds: float = 5.0
    status_active_window_seconds: float = 30.0
    status_idle_window_seconds: float = 300.0
    status_missing_grace_seconds: float = 60.0

    # Mission timing
    settle_delay_seconds: float = 5.5
    sequential_stagger_seconds: float = 30.0

    # Persistence
    database_path: str = "./data/mission_state.db"
    mission_history_limit: int = 20
    report_history_limit: int = 20
    approval_retention_hours: float = 24.0

    # Reporting
    cost_per_1k_tokens: float = 0.01

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    @field_validator("model_aliases", mode="before")
    @classmethod
    def parse_model_aliases(cls, v: Any) -> dict[str, str]:
        """Parse model aliases from a JSON object or 'preset=model' pairs.

        Accepts:
        - JSON object: '{"coder": "openai/gpt-4.1"}'
        - Pairs: 'coder=openai/gpt-4.1,writer=anthropic/claude'
        - Already a dict
        """
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return {}
            if v.startswith("{"):
                try:
                    parsed = json.loads(v)
                except json.JSONDecodeError:
                    return {}
                if isinstance(parsed, dict):
                    return {str(k): str(val) for k, val in parsed.items()}
                return {}
            aliases: dict[str, str] = {}
            for pair in v.split(","):
                preset, sep, model = pair.partition("=")
                if sep and preset.strip() and model.strip():
                    aliases[preset.strip()] = model.strip()
            return aliases
        return {}

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

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
