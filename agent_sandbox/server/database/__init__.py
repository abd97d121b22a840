"""Database package for the agent-sandbox server."""

from agent_sandbox.server.database.connection import Database
from agent_sandbox.server.database.repository import (
    MessageRepository,
    ServerRepository,
    TaskRepository,
)


__all__ = [
    "Database",
    "MessageRepository",
    "ServerRepository",
    "TaskRepository",
]
