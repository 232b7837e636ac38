"""
Configuration for the M365 Code Execution Service.
Module: m365_exec/service/config.py
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExecSettings(BaseSettings):
    """Configuration settings for the code execution and skills service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="M365_EXEC_",
        case_sensitive=False,
        extra="ignore",
    )

    # Service configuration
    service_name: str = Field(default="m365-code-exec", description="Service name")
    host: str = Field(default="0.0.0.0", description="Service host")
    port: int = Field(default=8002, description="Service port")
    debug: bool = Field(default=False, description="Debug mode")

    # Skills configuration
    skills_directory: str = Field(
        default="./data/skills",
        description="Directory holding one JSON document per saved skill",
    )
    load_builtins_on_startup: bool = Field(
        default=True, description="Seed the built-in skill catalog at startup"
    )

    # Execution limits
    default_timeout_ms: int = Field(
        default=30000, gt=0, description="Default script deadline in milliseconds"
    )
    max_timeout_ms: int = Field(
        default=60000, gt=0, description="Upper bound for caller-supplied deadlines"
    )
    validate_adhoc_code: bool = Field(
        default=True, description="Run the deny-list check before ad-hoc execution"
    )
    max_execution_logs: int = Field(
        default=1000, description="Number of executions whose logs are retained"
    )

    # Tool surface
    read_only: bool = Field(default=False, description="Expose read-only tools only")
    enabled_tools_pattern: Optional[str] = Field(
        default=None, description="Case-insensitive regex selecting exposed tools"
    )

    # Microsoft Graph client
    graph_base_url: str = Field(
        default="https://graph.microsoft.com/v1.0", description="Graph API base URL"
    )
    graph_access_token: Optional[str] = Field(
        default=None, description="Bearer token used for Graph requests"
    )
    graph_timeout_seconds: float = Field(
        default=30.0, description="HTTP timeout for Graph requests"
    )

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )

    def clamp_timeout(self, timeout_ms: Optional[int]) -> int:
        """Resolve a caller deadline against the configured default and maximum."""
        if not timeout_ms or timeout_ms <= 0:
            return self.default_timeout_ms
        return min(timeout_ms, self.max_timeout_ms)


settings = ExecSettings()
