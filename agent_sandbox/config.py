"""Settings for the registered-agent process (``agent-sandbox agent``)."""
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from agent_sandbox.core.constants import DOCKER_SOCKET_UNIX


DEFAULT_AGENT_SETTINGS_FILE = "agent-sandbox.agent.yaml"


class AgentSettings(BaseSettings):
    """Registered-agent settings.

    Values come from the YAML settings file; ``AGENT_SANDBOX_AGENT_*``
    environment variables override them.
    """

    model_config = SettingsConfigDict(
        env_prefix="AGENT_SANDBOX_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    server_url: str = Field(
        default="http://127.0.0.1:8430",
        description="Base URL of the agent-sandbox server",
    )
    server_id: str | None = Field(default=None, description="Registered target id")
    token: str | None = Field(default=None, description="Per-target token issued at registration")
    user_token: str | None = Field(
        default=None,
        description="User API token, only needed to register",
    )
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    docker_socket_path: str = DOCKER_SOCKET_UNIX
    use_runner: bool = Field(
        default=False,
        description="Run agents through agent-sandbox-runner inside the sandbox",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats the YAML file, which arrives as init kwargs.
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def load_agent_settings(config_path: Path | None = None, **overrides: Any) -> AgentSettings:
    """Load agent settings from a YAML file and the environment.

    Resolution order for the file:
    1. Explicit config_path parameter (if provided)
    2. AGENT_SANDBOX_AGENT_SETTINGS environment variable (if set)
    3. Default: 'agent-sandbox.agent.yaml' in the current directory, if present

    Args:
        config_path: Optional explicit path to the settings file.
        overrides: Values that beat both the file and the environment
            (command line flags); None values are ignored.

    Returns:
        AgentSettings.

    Raises:
        FileNotFoundError: If an explicitly named settings file does not exist.
        yaml.YAMLError: If the YAML file is malformed.
        pydantic.ValidationError: If the settings fail validation.
    """
    explicit = config_path is not None
    if config_path is None:
        env_path = os.environ.get("AGENT_SANDBOX_AGENT_SETTINGS")
        explicit = bool(env_path)
        config_path = Path(env_path) if env_path else Path(DEFAULT_AGENT_SETTINGS_FILE)

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    elif explicit:
        raise FileNotFoundError(f"Configuration file not found at {config_path}")

    settings = AgentSettings(**data)
    cli_values = {k: v for k, v in overrides.items() if v is not None}
    if cli_values:
        settings = settings.model_copy(update=cli_values)
    return settings
