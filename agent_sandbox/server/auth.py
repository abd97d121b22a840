"""Bearer token authentication for users and registered agents."""

import secrets
from typing import Annotated

from fastapi import Depends, Header
from loguru import logger

from agent_sandbox.core.types import ComputeTarget
from agent_sandbox.server.config import ServerConfig
from agent_sandbox.server.database import ServerRepository
from agent_sandbox.server.dependencies import get_config, get_server_repository
from agent_sandbox.server.exceptions import ServerNotFoundError, UnauthorizedError


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def generate_server_token() -> str:
    """Random secret handed to a registered agent."""
    return secrets.token_urlsafe(32)


async def require_user(
    authorization: Annotated[str | None, Header()] = None,
    config: ServerConfig = Depends(get_config),
) -> str:
    """Resolve the calling user from a bearer token.

    Returns:
        The user id the token maps to.

    Raises:
        UnauthorizedError: If the token is missing or unknown.
    """
    token = bearer_token(authorization)
    if token is None:
        raise UnauthorizedError()
    for known, user_id in config.api_tokens.items():
        if secrets.compare_digest(known, token):
            return user_id
    raise UnauthorizedError("Invalid token")


async def require_server(
    server_id: str,
    authorization: Annotated[str | None, Header()] = None,
    servers: ServerRepository = Depends(get_server_repository),
) -> ComputeTarget:
    """Authenticate a registered agent by its per-target secret.

    Raises:
        UnauthorizedError: If the token is missing or does not match.
        ServerNotFoundError: If the target does not exist.
    """
    token = bearer_token(authorization)
    if token is None:
        raise UnauthorizedError("Missing token")
    target = await servers.get(server_id)
    if target is None:
        raise ServerNotFoundError(server_id)
    if target.token is None or not secrets.compare_digest(target.token, token):
        logger.warning("Rejected agent token", server_id=server_id)
        raise UnauthorizedError("Invalid token")
    return target
