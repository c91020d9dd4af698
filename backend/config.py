"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the FlowCoder
turn engine. All settings can be overridden via environment variables or a
.env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class McpServerSettings(BaseModel):
    """Launch parameters for one external tool-provider (MCP) server."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model for the dispatcher and heavyweight specialists.
        tiny_model: Model for intent, context, patch and debug roles.
        lm_studio_api_base: Base URL for LM Studio local server.
        use_mock_llm: If True, agents run against scripted mock engines.
        llm_temperature: Sampling temperature for every agent call.
        llm_max_tokens: Maximum tokens generated per agent call.
        llm_request_timeout_seconds: Timeout for a single generation request.
        llm_max_retries: Retries for transient generation failures.
        engine_warmup: Send a 1-token request on load so local servers page in the model.
        max_resident_engines: Upper bound on simultaneously loaded engines.
        max_turn_phases: Planning phases allowed per turn before it is stopped.
        max_tool_output_chars: Cap on tool output re-injected into history.
        max_history_chars: Cap on the rendered history handed to an agent.
        project_root: Default project directory for new sessions.
        state_dir_name: Per-project directory for scratchpad and project state.
        tool_timeout_seconds: Timeout for `run_cmd` executions.
        verification_timeout_seconds: Timeout for each lint/build run.
        build_command: Overrides the discovered build command.
        lint_command: Overrides the discovered lint command.
        metrics_top_n: Number of largest files listed in code metrics reports.
        mcp_servers: External tool-provider servers keyed by name.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Engine Configuration
    # Model names must include provider prefix for LiteLLM (e.g. lm_studio/, ollama/)
    default_model: str = "lm_studio/qwen2.5-coder-7b-instruct"
    tiny_model: str = "lm_studio/qwen2.5-coder-1.5b-instruct"
    lm_studio_api_base: str = "http://localhost:1234/v1"
    use_mock_llm: bool = False
    llm_temperature: float = 0.2
    llm_max_tokens: int = 2048
    llm_request_timeout_seconds: int = 120
    llm_max_retries: int = 2
    engine_warmup: bool = True
    max_resident_engines: int = Field(default=2, ge=1)

    # Turn Limits
    max_turn_phases: int = Field(default=12, ge=1)
    max_tool_output_chars: int = 20_000
    max_history_chars: int = 24_000

    # Project & Verification
    project_root: str = "."
    state_dir_name: str = ".flowcoder"
    tool_timeout_seconds: int = 60
    verification_timeout_seconds: int = 300
    build_command: str | None = None
    lint_command: str | None = None
    metrics_top_n: int = 5

    # External tool-provider host
    mcp_servers: dict[str, McpServerSettings] = Field(default_factory=dict)

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

    @field_validator("build_command", "lint_command", mode="before")
    @classmethod
    def blank_command_is_unset(cls, v: Any) -> Any:
        """Treat empty command overrides as not configured."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export LM Studio API base to os.environ for LiteLLM discovery."""
        if self.lm_studio_api_base:
            os.environ.setdefault("LM_STUDIO_API_BASE", self.lm_studio_api_base)


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
