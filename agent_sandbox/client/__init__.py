"""Registered-agent client: polls the server and runs tasks on this host."""

from agent_sandbox.client.agent import RegisteredAgent, collect_host_stats
from agent_sandbox.client.api import (
    AgentSandboxClient,
    AgentSandboxClientError,
    AuthenticationError,
    InvalidRequestError,
    NotFoundError,
    ServerUnreachableError,
    VersionConflictError,
)


__all__ = [
    "AgentSandboxClient",
    "AgentSandboxClientError",
    "AuthenticationError",
    "InvalidRequestError",
    "NotFoundError",
    "RegisteredAgent",
    "ServerUnreachableError",
    "VersionConflictError",
    "collect_host_stats",
]
