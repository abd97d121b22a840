"""Docker provider reached through an SSH tunnel.

Composes an SSHTunnel with a DockerContainerProvider pointed at the tunnel's
local port. Connection state is held explicitly: every operation resolves
the current connection first, opening the tunnel on demand.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import NamedTuple

from loguru import logger

from agent_sandbox.core.constants import HEALTH_CHECK_TIMEOUT_SECONDS, TRANSPORT_FAILURE_EXIT_CODE
from agent_sandbox.core.exceptions import TunnelError
from agent_sandbox.core.types import SandboxConfig, TunneledConnection
from agent_sandbox.sandbox.docker import DockerContainerProvider
from agent_sandbox.sandbox.provider import (
    ContainerInfo,
    ContainerProvider,
    ContainerSummary,
    CreateContainerResult,
    ExecResult,
    HealthCheckResult,
    VolumeRecord,
)
from agent_sandbox.sandbox.tunnel import SSHTunnel


class Disconnected(NamedTuple):
    """No tunnel session has been resolved yet (or it was closed)."""


class Connected(NamedTuple):
    """Tunnel is up; ``provider`` talks to the remote daemon through ``local_port``."""

    local_port: int
    provider: DockerContainerProvider


ConnectionState = Disconnected | Connected


class TunneledDockerProvider(ContainerProvider):
    """Container provider for a docker daemon on an SSH-reachable host.

    Args:
        connection: SSH connection parameters.
        tunnel: Tunnel to use; one is created from ``connection`` if omitted.
        health_timeout: Seconds to wait for the remote daemon in health checks.
    """

    def __init__(
        self,
        connection: TunneledConnection,
        tunnel: SSHTunnel | None = None,
        health_timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
    ) -> None:
        self.connection = connection
        self.tunnel = tunnel or SSHTunnel(connection)
        self.health_timeout = health_timeout
        self._state: ConnectionState = Disconnected()

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def _resolve(self) -> DockerContainerProvider:
        """Connect the tunnel if needed and return the provider bound to it.

        Raises:
            TunnelError: If the tunnel cannot be established.
        """
        port = await self.tunnel.connect()
        match self._state:
            case Connected(local_port=current, provider=provider) if current == port:
                return provider
            case _:
                provider = DockerContainerProvider(
                    docker_host=f"tcp://127.0.0.1:{port}",
                    health_timeout=self.health_timeout,
                )
                self._state = Connected(local_port=port, provider=provider)
                logger.debug("Tunneled docker provider bound", host=self.connection.host, local_port=port)
                return provider

    async def close(self) -> None:
        """Tear down the tunnel. The provider cannot be used afterwards."""
        await self.tunnel.disconnect()
        self._state = Disconnected()

    async def health_check(self) -> HealthCheckResult:
        try:
            provider = await self._resolve()
        except TunnelError as e:
            return HealthCheckResult(healthy=False, message=str(e))
        return await provider.health_check()

    async def create_container(
        self, sandbox_id: str, config: SandboxConfig
    ) -> CreateContainerResult:
        provider = await self._resolve()
        return await provider.create_container(sandbox_id, config)

    async def start_container(self, container_id: str) -> None:
        provider = await self._resolve()
        await provider.start_container(container_id)

    async def stop_container(self, container_id: str) -> None:
        provider = await self._resolve()
        await provider.stop_container(container_id)

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        provider = await self._resolve()
        return await provider.inspect_container(container_id)

    async def get_logs(
        self, container_id: str, tail: int = 100, follow: bool = False
    ) -> AsyncIterator[str]:
        provider = await self._resolve()
        async for line in provider.get_logs(container_id, tail=tail, follow=follow):
            yield line

    async def remove_container(
        self,
        container_id: str,
        volume_id: str | None = None,
        preserve_volume: bool = False,
    ) -> None:
        provider = await self._resolve()
        await provider.remove_container(container_id, volume_id, preserve_volume)

    async def list_containers(self) -> list[ContainerSummary]:
        provider = await self._resolve()
        return await provider.list_containers()

    async def execute_command(
        self, container_id: str, command: list[str]
    ) -> ExecResult:
        try:
            provider = await self._resolve()
        except TunnelError as e:
            return ExecResult(exit_code=TRANSPORT_FAILURE_EXIT_CODE, output=str(e))
        return await provider.execute_command(container_id, command)

    async def create_volume(
        self, name: str, labels: dict[str, str] | None = None
    ) -> str:
        provider = await self._resolve()
        return await provider.create_volume(name, labels)

    async def list_volumes(
        self, label: str | None = None, name_prefix: str | None = None
    ) -> list[VolumeRecord]:
        provider = await self._resolve()
        return await provider.list_volumes(label, name_prefix)

    async def delete_volume(self, name: str) -> None:
        provider = await self._resolve()
        await provider.delete_volume(name)

    async def get_volume_size(self, name: str) -> int:
        try:
            provider = await self._resolve()
        except TunnelError:
            return 0
        return await provider.get_volume_size(name)

    async def is_volume_in_use(self, name: str) -> bool:
        provider = await self._resolve()
        return await provider.is_volume_in_use(name)
