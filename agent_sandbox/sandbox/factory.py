"""Resolve a compute target's connection to a container provider."""

from __future__ import annotations

import ipaddress
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import assert_never

from loguru import logger

from agent_sandbox.core.exceptions import ProviderResolutionError
from agent_sandbox.core.types import (
    ClusterConnection,
    ComputeTarget,
    ConnectionConfig,
    DirectConnection,
    RegisteredConnection,
    TunneledConnection,
)
from agent_sandbox.sandbox.docker import DockerContainerProvider
from agent_sandbox.sandbox.kubernetes import KubernetesContainerProvider
from agent_sandbox.sandbox.provider import ContainerProvider
from agent_sandbox.sandbox.remote import TunneledDockerProvider


def is_loopback_host(host: str) -> bool:
    """True for ``localhost`` and loopback IPv4/IPv6 addresses."""
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def provider_for_connection(connection: ConnectionConfig) -> ContainerProvider:
    """Build a provider for one connection variant.

    Raises:
        ProviderResolutionError: For registered connections, whose sandboxes
            are driven by the remote agent process.
    """
    match connection:
        case DirectConnection(socket_path=socket_path):
            return DockerContainerProvider(docker_host=f"unix://{socket_path}")
        case TunneledConnection(host=host, remote_socket_path=socket_path) if is_loopback_host(host):
            logger.debug("Tunneled target is local, using the docker socket directly", host=host)
            return DockerContainerProvider(docker_host=f"unix://{socket_path}")
        case TunneledConnection():
            return TunneledDockerProvider(connection)
        case ClusterConnection():
            return KubernetesContainerProvider(connection)
        case RegisteredConnection():
            raise ProviderResolutionError(
                "Registered targets are driven by their own agent process and have no provider"
            )
        case _:
            assert_never(connection)


def create_provider(target: ComputeTarget) -> ContainerProvider:
    """Build a fresh provider for a compute target.

    Each call returns a new instance, so tunnels are never shared between
    callers. Close it with ``provider_session`` or ``close_provider``.

    Raises:
        ProviderResolutionError: If the target is a registered target.
    """
    try:
        return provider_for_connection(target.connection)
    except ProviderResolutionError as e:
        raise ProviderResolutionError(f"Cannot resolve provider for target {target.id}: {e}") from e


async def close_provider(provider: ContainerProvider) -> None:
    """Release any connections a provider holds."""
    close = getattr(provider, "close", None)
    if close is not None:
        await close()


@asynccontextmanager
async def provider_session(target: ComputeTarget) -> AsyncIterator[ContainerProvider]:
    """Provider for the duration of one operation.

    Example:
        async with provider_session(target) as provider:
            await provider.start_container(container_id)
    """
    provider = create_provider(target)
    try:
        yield provider
    finally:
        await close_provider(provider)
