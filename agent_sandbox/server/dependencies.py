"""FastAPI dependency injection providers."""

from __future__ import annotations

from agent_sandbox.server.config import ServerConfig
from agent_sandbox.server.database import (
    Database,
    MessageRepository,
    ServerRepository,
    TaskRepository,
)
from agent_sandbox.server.services.inspect import InspectService
from agent_sandbox.server.services.prompts import PromptService
from agent_sandbox.server.services.sandbox import SandboxService


# Module-level database instance
_database: Database | None = None

# Module-level config instance
_config: ServerConfig | None = None


def set_database(db: Database) -> None:
    """Set the global database instance.

    This should be called during application startup.

    Args:
        db: Database instance to set.
    """
    global _database
    _database = db


def clear_database() -> None:
    """Clear the global database instance.

    This should be called during application shutdown.
    """
    global _database
    _database = None


def get_database() -> Database:
    """Get the database instance.

    Returns:
        The current Database instance.

    Raises:
        RuntimeError: If database not initialized.
    """
    if _database is None:
        raise RuntimeError("Database not initialized. Is the server running?")
    return _database


def set_config(config: ServerConfig) -> None:
    """Set the global server configuration."""
    global _config
    _config = config


def clear_config() -> None:
    """Clear the global server configuration."""
    global _config
    _config = None


def get_config() -> ServerConfig:
    """Get the server configuration.

    Raises:
        RuntimeError: If config is not initialized (server not started).
    """
    if _config is None:
        raise RuntimeError("Server config not initialized. Is the server running?")
    return _config


def get_server_repository() -> ServerRepository:
    """Get the compute target repository dependency."""
    return ServerRepository(get_database())


def get_task_repository() -> TaskRepository:
    """Get the task repository dependency."""
    return TaskRepository(get_database())


def get_message_repository() -> MessageRepository:
    """Get the message repository dependency."""
    return MessageRepository(get_database())


def get_inspect_service() -> InspectService:
    """Get the inspect handshake service."""
    db = get_database()
    return InspectService(
        tasks=TaskRepository(db),
        servers=ServerRepository(db),
        result_ttl_seconds=get_config().inspect_result_ttl_seconds,
    )


def get_prompt_service() -> PromptService:
    """Get the prompt answer service."""
    return PromptService(MessageRepository(get_database()))


def get_sandbox_service() -> SandboxService:
    """Get the sandbox lifecycle service."""
    db = get_database()
    return SandboxService(
        servers=ServerRepository(db),
        tasks=TaskRepository(db),
        messages=MessageRepository(db),
    )
