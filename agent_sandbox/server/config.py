"""Server configuration with environment variable support."""
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseSettings):
    """Server configuration with environment variable support.

    All settings can be overridden via environment variables with AGENT_SANDBOX_ prefix.
    Example: AGENT_SANDBOX_PORT=9000 overrides the port setting.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_SANDBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server binding
    host: str = Field(
        default="127.0.0.1",
        description="Host to bind the server to",
    )
    port: int = Field(
        default=8430,
        ge=1,
        le=65535,
        description="Port to bind the server to",
    )

    # Database
    database_path: Path = Field(
        default_factory=lambda: Path.home() / ".agent-sandbox" / "agent-sandbox.db",
        description="Path to SQLite database file",
    )

    # Inspect handshake
    inspect_result_ttl_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How long a resolved inspect request is served to new callers",
    )

    # Prompt stream
    prompt_stream_ping_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Interval between keepalive comments on the prompt stream",
    )
    prompt_stream_poll_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Interval between prompt lookups on the prompt stream",
    )

    # Authentication
    api_tokens: dict[str, str] = Field(
        default_factory=dict,
        description="Bearer token to user id map (JSON in AGENT_SANDBOX_API_TOKENS)",
    )

    log_level: str = Field(
        default="INFO",
        description="Minimum log level",
    )
