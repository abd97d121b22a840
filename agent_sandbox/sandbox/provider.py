"""ContainerProvider protocol: backend-agnostic sandbox lifecycle interface."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from agent_sandbox.core.types import ContainerStatus, SandboxConfig


class HealthCheckResult(BaseModel):
    """Outcome of probing a backend.

    Attributes:
        healthy: True when the backend answered within the time box.
        version: Backend version string, when available.
        message: Human-readable status or failure reason.
    """

    healthy: bool
    version: str | None = None
    message: str


class CreateContainerResult(BaseModel):
    """Identifiers assigned by the backend for a new sandbox."""

    container_id: str
    volume_id: str


class ContainerInfo(BaseModel):
    """Status and best-effort resource usage of a compute unit.

    Attributes:
        container_id: Identifier that was inspected.
        status: Normalized lifecycle status.
        exists: False when the backend has no such unit.
        started_at: Start time of the current run, if running.
        uptime_seconds: Seconds since ``started_at``.
        cpu_percent: CPU usage, when the backend reports it.
        memory_bytes: Memory usage in bytes, when reported.
        memory_limit_bytes: Memory limit in bytes, when reported.
        sandbox_id: Sandbox id recovered from the unit's labels.
        volume_id: Volume name recovered from the unit's labels.
    """

    container_id: str
    status: ContainerStatus
    exists: bool = True
    started_at: datetime | None = None
    uptime_seconds: float | None = None
    cpu_percent: float | None = None
    memory_bytes: int | None = None
    memory_limit_bytes: int | None = None
    sandbox_id: str | None = None
    volume_id: str | None = None


class ContainerSummary(BaseModel):
    """Entry returned by list_containers."""

    container_id: str
    sandbox_id: str | None = None
    status: ContainerStatus


class ExecResult(BaseModel):
    """Outcome of running one command inside a sandbox.

    Attributes:
        exit_code: Exit code of the process, or a synthetic non-zero code
            when the command never reached the sandbox.
        output: Combined stdout and stderr text.
    """

    exit_code: int
    output: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class VolumeRecord(BaseModel):
    """Backend volume as listed by a provider."""

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    created_at: datetime | None = None


@runtime_checkable
class ContainerProvider(Protocol):
    """Creates, runs and tears down sandboxes on one backend.

    Implemented for a local docker daemon, a docker daemon reached through
    an SSH tunnel, and a Kubernetes cluster. All implementations share the
    same status vocabulary so callers never branch on backend kind.
    """

    async def health_check(self) -> HealthCheckResult:
        """Probe the backend within a bounded wait. Never raises."""
        ...

    async def create_container(
        self, sandbox_id: str, config: SandboxConfig
    ) -> CreateContainerResult:
        """Provision a volume and then a compute unit for a sandbox.

        Args:
            sandbox_id: Sandbox identifier written into the unit's labels.
            config: Image and resource limits.

        Returns:
            Backend identifiers for the compute unit and volume.
        """
        ...

    async def start_container(self, container_id: str) -> None:
        """Start a compute unit. No-op when already running."""
        ...

    async def stop_container(self, container_id: str) -> None:
        """Stop a compute unit. No-op when already stopped."""
        ...

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        """Report status and usage. A missing unit is reported, not raised."""
        ...

    def get_logs(
        self, container_id: str, tail: int = 100, follow: bool = False
    ) -> AsyncIterator[str]:
        """Stream log lines from a compute unit.

        Args:
            container_id: Compute unit to read from.
            tail: Number of trailing lines to start with.
            follow: Keep streaming new lines until cancelled.

        Yields:
            Log lines without trailing newlines.
        """
        ...

    async def remove_container(
        self,
        container_id: str,
        volume_id: str | None = None,
        preserve_volume: bool = False,
    ) -> None:
        """Stop if running, remove the unit, then the volume unless preserved.

        Volume removal failures are logged and swallowed.
        """
        ...

    async def list_containers(self) -> list[ContainerSummary]:
        """List compute units created by agent-sandbox."""
        ...

    async def execute_command(
        self, container_id: str, command: list[str]
    ) -> ExecResult:
        """Run a command and capture its exit code and combined output.

        Transport failures yield a synthetic non-zero exit code.
        """
        ...

    async def create_volume(
        self, name: str, labels: dict[str, str] | None = None
    ) -> str:
        """Create a volume and return its name."""
        ...

    async def list_volumes(
        self, label: str | None = None, name_prefix: str | None = None
    ) -> list[VolumeRecord]:
        """List volumes, optionally filtered by label key or name prefix."""
        ...

    async def delete_volume(self, name: str) -> None:
        """Delete a volume."""
        ...

    async def get_volume_size(self, name: str) -> int:
        """Size of a volume in bytes, or 0 when the backend cannot tell."""
        ...

    async def is_volume_in_use(self, name: str) -> bool:
        """True when a running compute unit mounts the volume."""
        ...
