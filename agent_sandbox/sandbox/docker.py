"""Docker-based container provider for sandboxed agent execution.

One container and one named volume per sandbox. All docker interactions use
asyncio.create_subprocess_exec against the docker CLI, pointed at a daemon
through ``DOCKER_HOST``. No Docker SDK dependency.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import re
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from agent_sandbox.core.constants import (
    CONTAINER_NAME_PREFIX,
    CONTAINER_STOP_TIMEOUT_SECONDS,
    DOCKER_SOCKET_UNIX,
    HEALTH_CHECK_TIMEOUT_SECONDS,
    LABEL_CREATED_AT,
    LABEL_SANDBOX_ID,
    LABEL_VOLUME,
    TRANSPORT_FAILURE_EXIT_CODE,
    VOLUME_NAME_PREFIX,
    WORKSPACE_MOUNT_PATH,
)
from agent_sandbox.core.exceptions import (
    ContainerNotFoundError,
    ContainerProviderError,
    VolumeInUseError,
)
from agent_sandbox.core.types import ContainerStatus, SandboxConfig
from agent_sandbox.sandbox.provider import (
    ContainerInfo,
    ContainerProvider,
    ContainerSummary,
    CreateContainerResult,
    ExecResult,
    HealthCheckResult,
    VolumeRecord,
)


_MEMORY_LIMIT_RE = re.compile(r"^(\d+)([kmg]?)$", re.IGNORECASE)
_SIZE_RE = re.compile(r"^\s*([\d.]+)\s*([a-zA-Z]*)\s*$")
_DOCKER_TIME_RE = re.compile(r"^(?P<base>[^.Z+]+?)(?P<frac>\.\d+)?(?P<tz>Z|[+-]\d{2}:\d{2})?$")

_SIZE_UNITS: dict[str, int] = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "k": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}


def parse_memory_limit(limit: str) -> int:
    """Convert a docker-style memory limit (``512m``, ``2g``) to bytes.

    Args:
        limit: Number with an optional k/m/g suffix.

    Returns:
        Limit in bytes.

    Raises:
        ValueError: If the limit is not in a recognized format.
    """
    match = _MEMORY_LIMIT_RE.match(limit.strip())
    if not match:
        raise ValueError(f"Invalid memory limit: {limit!r}")
    value = int(match.group(1))
    multiplier = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3}[match.group(2).lower()]
    return value * multiplier


def parse_size(text: str) -> int:
    """Convert a human-readable size as printed by docker (``12.5MiB``, ``1.2GB``) to bytes.

    Returns 0 for anything unparseable.
    """
    match = _SIZE_RE.match(text)
    if not match:
        return 0
    unit = _SIZE_UNITS.get(match.group(2).lower())
    if unit is None:
        return 0
    try:
        return int(float(match.group(1)) * unit)
    except ValueError:
        return 0


def parse_docker_time(value: str | None) -> datetime | None:
    """Parse a docker timestamp (nanosecond precision, ``Z`` suffix).

    Docker reports ``0001-01-01T00:00:00Z`` for never-set times; that maps to None.
    """
    if not value or value.startswith("0001-"):
        return None
    match = _DOCKER_TIME_RE.match(value.strip())
    if not match:
        return None
    frac = (match.group("frac") or "")[:7]
    tz = match.group("tz") or "Z"
    tz = "+00:00" if tz == "Z" else tz
    try:
        return datetime.fromisoformat(f"{match.group('base')}{frac}{tz}")
    except ValueError:
        return None


def parse_labels(raw: str | dict[str, str] | None) -> dict[str, str]:
    """Parse the ``k=v,k2=v2`` label string used by ``docker ps``/``volume ls`` output."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    labels: dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep:
            labels[key.strip()] = value.strip()
    return labels


def map_container_state(state: dict[str, Any]) -> ContainerStatus:
    """Map a docker ``State`` object onto the shared status vocabulary."""
    if state.get("Restarting"):
        return ContainerStatus.STARTING
    if state.get("Paused"):
        return ContainerStatus.STOPPED
    if state.get("Running"):
        return ContainerStatus.RUNNING
    if state.get("Dead") or state.get("OOMKilled"):
        return ContainerStatus.ERROR
    if state.get("Status") == "removing":
        return ContainerStatus.STOPPING
    return ContainerStatus.STOPPED


_PS_STATES: dict[str, ContainerStatus] = {
    "running": ContainerStatus.RUNNING,
    "restarting": ContainerStatus.STARTING,
    "removing": ContainerStatus.STOPPING,
    "dead": ContainerStatus.ERROR,
}


def _is_missing(stderr: str) -> bool:
    return "no such" in stderr.lower()


class DockerContainerProvider(ContainerProvider):
    """Manages sandbox containers on a docker daemon.

    Each sandbox gets a named volume mounted at ``/workspace`` and a
    container kept alive with ``tail -f /dev/null``. Work happens via
    ``docker exec``.

    Args:
        docker_host: Daemon address, e.g. ``unix:///var/run/docker.sock`` or
            ``tcp://127.0.0.1:40123`` for a tunnel's local port.
        health_timeout: Seconds to wait for the daemon during health checks.
    """

    def __init__(
        self,
        docker_host: str = f"unix://{DOCKER_SOCKET_UNIX}",
        health_timeout: float = HEALTH_CHECK_TIMEOUT_SECONDS,
    ) -> None:
        self.docker_host = docker_host
        self.health_timeout = health_timeout

    def _env(self) -> dict[str, str]:
        return {**os.environ, "DOCKER_HOST": self.docker_host}

    async def _docker(self, *args: str, timeout: float | None = None) -> tuple[int, str, str]:
        """Run one docker CLI command.

        Args:
            *args: Arguments after ``docker``.
            timeout: Optional bound on the command's runtime.

        Returns:
            Tuple of (returncode, stdout, stderr).

        Raises:
            TimeoutError: If the command exceeds ``timeout``.
            ContainerProviderError: If the docker CLI cannot be launched.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                "docker", *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as e:
            raise ContainerProviderError(
                f"Docker CLI unavailable: {e}", operation=args[0] if args else "docker"
            ) from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise
        return proc.returncode or 0, stdout.decode().strip(), stderr.decode().strip()

    async def health_check(self) -> HealthCheckResult:
        """Check that the daemon answers within ``health_timeout``.

        Returns:
            HealthCheckResult; unreachable daemons are reported, not raised.
        """
        try:
            code, stdout, stderr = await self._docker(
                "version", "--format", "{{.Server.Version}}",
                timeout=self.health_timeout,
            )
        except TimeoutError:
            return HealthCheckResult(
                healthy=False,
                message=f"Docker daemon did not respond within {self.health_timeout}s",
            )
        except ContainerProviderError as e:
            return HealthCheckResult(healthy=False, message=str(e))

        if code != 0:
            return HealthCheckResult(healthy=False, message=stderr or "Docker daemon unreachable")
        return HealthCheckResult(healthy=True, version=stdout, message=f"Docker {stdout} available")

    async def _inspect(self, container_id: str) -> dict[str, Any] | None:
        """Return the raw ``docker inspect`` document, or None if the container is missing."""
        code, stdout, stderr = await self._docker(
            "inspect", "--type", "container", "--format", "{{json .}}", container_id,
        )
        if code != 0:
            if _is_missing(stderr):
                return None
            raise ContainerProviderError(
                f"Failed to inspect container: {stderr}",
                operation="inspect_container",
                container_id=container_id,
            )
        data: dict[str, Any] = json.loads(stdout)
        return data

    async def _image_exists(self, image: str) -> bool:
        code, _, _ = await self._docker("image", "inspect", image)
        return code == 0

    async def _pull_image(self, image: str) -> None:
        logger.info("Pulling image", image=image)
        code, _, stderr = await self._docker("pull", image)
        if code != 0:
            raise ContainerProviderError(
                f"Failed to pull image {image}: {stderr}", operation="create_container"
            )

    async def create_container(
        self, sandbox_id: str, config: SandboxConfig
    ) -> CreateContainerResult:
        """Create the sandbox volume, then the container.

        An existing container with the sandbox's name is adopted rather than
        treated as an error.

        Args:
            sandbox_id: Sandbox identifier.
            config: Image and resource limits.

        Returns:
            CreateContainerResult with the container id and volume name.

        Raises:
            ContainerProviderError: If docker rejects the container.
            ValueError: If the memory limit is malformed.
        """
        volume_name = f"{VOLUME_NAME_PREFIX}{sandbox_id}"
        container_name = f"{CONTAINER_NAME_PREFIX}{sandbox_id}"
        memory_bytes = parse_memory_limit(config.memory_limit)

        await self.create_volume(
            volume_name,
            labels={
                LABEL_SANDBOX_ID: sandbox_id,
                LABEL_CREATED_AT: datetime.now(UTC).isoformat(),
            },
        )

        if not await self._image_exists(config.image):
            await self._pull_image(config.image)

        cmd = [
            "create",
            "--name", container_name,
            "--label", f"{LABEL_SANDBOX_ID}={sandbox_id}",
            "--label", f"{LABEL_VOLUME}={volume_name}",
            "-v", f"{volume_name}:{WORKSPACE_MOUNT_PATH}",
            "-w", WORKSPACE_MOUNT_PATH,
            "--memory", str(memory_bytes),
            "--cpus", str(config.cpu_limit),
            "--restart", "unless-stopped",
            "-t",
        ]
        for key, value in config.env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend([config.image, "tail", "-f", "/dev/null"])

        code, stdout, stderr = await self._docker(*cmd)
        if code == 0:
            container_id = stdout.splitlines()[-1]
        elif "already in use" in stderr or "Conflict" in stderr:
            existing = await self._inspect(container_name)
            if existing is None:
                raise ContainerProviderError(
                    f"Container name conflict but {container_name} not found",
                    operation="create_container",
                )
            container_id = existing["Id"]
            logger.info("Adopted existing container", container=container_name)
        else:
            raise ContainerProviderError(
                f"Failed to create container: {stderr}", operation="create_container"
            )

        logger.info(
            "Container created",
            sandbox_id=sandbox_id,
            container_id=container_id[:12],
            volume=volume_name,
            image=config.image,
        )
        return CreateContainerResult(container_id=container_id, volume_id=volume_name)

    async def start_container(self, container_id: str) -> None:
        """Start the container unless it is already running.

        Raises:
            ContainerNotFoundError: If the container does not exist.
            ContainerProviderError: If docker fails to start it.
        """
        data = await self._inspect(container_id)
        if data is None:
            raise ContainerNotFoundError(
                f"Container not found: {container_id}",
                operation="start_container",
                container_id=container_id,
            )
        if data.get("State", {}).get("Running"):
            logger.debug("Container already running", container_id=container_id[:12])
            return

        code, _, stderr = await self._docker("start", container_id)
        if code != 0:
            raise ContainerProviderError(
                f"Failed to start container: {stderr}",
                operation="start_container",
                container_id=container_id,
            )
        logger.info("Container started", container_id=container_id[:12])

    async def stop_container(self, container_id: str) -> None:
        """Stop the container if it is running. Missing containers are ignored."""
        data = await self._inspect(container_id)
        if data is None or not data.get("State", {}).get("Running"):
            logger.debug("Container not running", container_id=container_id[:12])
            return

        code, _, stderr = await self._docker(
            "stop", "-t", str(CONTAINER_STOP_TIMEOUT_SECONDS), container_id,
        )
        if code != 0 and not _is_missing(stderr):
            raise ContainerProviderError(
                f"Failed to stop container: {stderr}",
                operation="stop_container",
                container_id=container_id,
            )
        logger.info("Container stopped", container_id=container_id[:12])

    async def inspect_container(self, container_id: str) -> ContainerInfo:
        """Report container status, uptime and best-effort usage."""
        data = await self._inspect(container_id)
        if data is None:
            return ContainerInfo(
                container_id=container_id, status=ContainerStatus.STOPPED, exists=False
            )

        state = data.get("State", {})
        labels = (data.get("Config") or {}).get("Labels") or {}
        status = map_container_state(state)
        info = ContainerInfo(
            container_id=data.get("Id", container_id),
            status=status,
            sandbox_id=labels.get(LABEL_SANDBOX_ID),
            volume_id=labels.get(LABEL_VOLUME),
        )
        if status == ContainerStatus.RUNNING:
            started_at = parse_docker_time(state.get("StartedAt"))
            if started_at is not None:
                info.started_at = started_at
                info.uptime_seconds = (datetime.now(UTC) - started_at).total_seconds()
            await self._fill_stats(container_id, info)
        return info

    async def _fill_stats(self, container_id: str, info: ContainerInfo) -> None:
        """Populate CPU and memory usage from ``docker stats``. Failures leave fields empty."""
        try:
            code, stdout, _ = await self._docker(
                "stats", "--no-stream", "--format", "{{json .}}", container_id,
                timeout=self.health_timeout * 2,
            )
        except (TimeoutError, ContainerProviderError) as e:
            logger.debug("Container stats unavailable", container_id=container_id[:12], error=str(e))
            return
        if code != 0 or not stdout:
            return
        try:
            stats = json.loads(stdout.splitlines()[0])
        except json.JSONDecodeError:
            return
        cpu = str(stats.get("CPUPerc", "")).rstrip("%")
        with contextlib.suppress(ValueError):
            info.cpu_percent = float(cpu)
        usage, _, limit = str(stats.get("MemUsage", "")).partition("/")
        info.memory_bytes = parse_size(usage) or None
        info.memory_limit_bytes = parse_size(limit) or None

    async def get_logs(
        self, container_id: str, tail: int = 100, follow: bool = False
    ) -> AsyncIterator[str]:
        """Stream combined stdout/stderr log lines from the container."""
        cmd = ["docker", "logs", "--tail", str(tail)]
        if follow:
            cmd.append("--follow")
        cmd.append(container_id)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._env(),
            )
        except OSError as e:
            raise ContainerProviderError(
                f"Docker CLI unavailable: {e}", operation="get_logs", container_id=container_id
            ) from e
        if proc.stdout is None:
            raise ContainerProviderError(
                "Failed to capture docker logs output",
                operation="get_logs",
                container_id=container_id,
            )
        try:
            async for raw_line in proc.stdout:
                yield raw_line.decode(errors="replace").rstrip("\n")
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.terminate()
            await proc.wait()

    async def remove_container(
        self,
        container_id: str,
        volume_id: str | None = None,
        preserve_volume: bool = False,
    ) -> None:
        """Stop and remove the container, then its volume unless preserved.

        The volume name is recovered from the container's label when not given.
        Volume removal failures are logged, never raised.
        """
        data = await self._inspect(container_id)
        if data is not None:
            labels = (data.get("Config") or {}).get("Labels") or {}
            volume_id = volume_id or labels.get(LABEL_VOLUME)
            if data.get("State", {}).get("Running"):
                await self.stop_container(container_id)
            code, _, stderr = await self._docker("rm", "-f", container_id)
            if code != 0 and not _is_missing(stderr):
                raise ContainerProviderError(
                    f"Failed to remove container: {stderr}",
                    operation="remove_container",
                    container_id=container_id,
                )
            logger.info("Container removed", container_id=container_id[:12])
        else:
            logger.debug("Container already gone", container_id=container_id[:12])

        if volume_id and not preserve_volume:
            try:
                await self.delete_volume(volume_id)
            except (ContainerProviderError, VolumeInUseError) as e:
                logger.warning("Failed to remove volume", volume=volume_id, error=str(e))

    async def list_containers(self) -> list[ContainerSummary]:
        """List all containers carrying the sandbox label."""
        code, stdout, stderr = await self._docker(
            "ps", "-a", "--filter", f"label={LABEL_SANDBOX_ID}", "--format", "{{json .}}",
        )
        if code != 0:
            raise ContainerProviderError(
                f"Failed to list containers: {stderr}", operation="list_containers"
            )
        containers: list[ContainerSummary] = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            entry = json.loads(line)
            labels = parse_labels(entry.get("Labels"))
            containers.append(
                ContainerSummary(
                    container_id=entry.get("ID", ""),
                    sandbox_id=labels.get(LABEL_SANDBOX_ID),
                    status=_PS_STATES.get(str(entry.get("State", "")).lower(), ContainerStatus.STOPPED),
                )
            )
        return containers

    async def execute_command(
        self, container_id: str, command: list[str]
    ) -> ExecResult:
        """Run a command via ``docker exec`` with stderr folded into stdout.

        Returns:
            ExecResult with the process exit code. Launch failures return
            TRANSPORT_FAILURE_EXIT_CODE with the error text as output.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                "docker", "exec", container_id, *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=self._env(),
            )
            stdout, _ = await proc.communicate()
        except OSError as e:
            logger.warning("docker exec failed to launch", container_id=container_id[:12], error=str(e))
            return ExecResult(exit_code=TRANSPORT_FAILURE_EXIT_CODE, output=str(e))

        exit_code = proc.returncode if proc.returncode is not None else TRANSPORT_FAILURE_EXIT_CODE
        return ExecResult(exit_code=exit_code, output=stdout.decode(errors="replace").strip())

    async def create_volume(
        self, name: str, labels: dict[str, str] | None = None
    ) -> str:
        """Create a named volume. An existing volume with that name is reused."""
        cmd = ["volume", "create"]
        for key, value in (labels or {}).items():
            cmd.extend(["--label", f"{key}={value}"])
        cmd.append(name)
        code, _, stderr = await self._docker(*cmd)
        if code != 0 and "already exists" not in stderr:
            raise ContainerProviderError(
                f"Failed to create volume {name}: {stderr}", operation="create_volume"
            )
        return name

    async def list_volumes(
        self, label: str | None = None, name_prefix: str | None = None
    ) -> list[VolumeRecord]:
        """List volumes filtered by label key and/or name prefix."""
        cmd = ["volume", "ls", "--format", "{{json .}}"]
        if label:
            cmd.extend(["--filter", f"label={label}"])
        if name_prefix:
            cmd.extend(["--filter", f"name={name_prefix}"])
        code, stdout, stderr = await self._docker(*cmd)
        if code != 0:
            raise ContainerProviderError(
                f"Failed to list volumes: {stderr}", operation="list_volumes"
            )

        volumes: list[VolumeRecord] = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            entry = json.loads(line)
            name = entry.get("Name", "")
            # docker's name filter is a substring match
            if name_prefix and not name.startswith(name_prefix):
                continue
            labels = parse_labels(entry.get("Labels"))
            created_at = None
            if LABEL_CREATED_AT in labels:
                with contextlib.suppress(ValueError):
                    created_at = datetime.fromisoformat(labels[LABEL_CREATED_AT])
            volumes.append(VolumeRecord(name=name, labels=labels, created_at=created_at))
        return volumes

    async def delete_volume(self, name: str) -> None:
        """Remove a volume.

        Raises:
            VolumeInUseError: If a container still references it.
            ContainerProviderError: For other docker failures.
        """
        code, _, stderr = await self._docker("volume", "rm", name)
        if code == 0:
            logger.info("Volume removed", volume=name)
            return
        if "in use" in stderr:
            raise VolumeInUseError(name)
        if _is_missing(stderr):
            return
        raise ContainerProviderError(f"Failed to remove volume {name}: {stderr}", operation="delete_volume")

    async def get_volume_size(self, name: str) -> int:
        """Volume size from ``docker system df -v``; 0 when unavailable."""
        try:
            code, stdout, _ = await self._docker(
                "system", "df", "-v", "--format", "{{json .Volumes}}",
                timeout=self.health_timeout * 4,
            )
        except (TimeoutError, ContainerProviderError):
            return 0
        if code != 0 or not stdout:
            return 0
        try:
            volumes = json.loads(stdout)
        except json.JSONDecodeError:
            return 0
        for volume in volumes or []:
            if volume.get("Name") == name:
                return parse_size(str(volume.get("Size", "")))
        return 0

    async def is_volume_in_use(self, name: str) -> bool:
        """True when a running container mounts the volume."""
        code, stdout, stderr = await self._docker(
            "ps", "-q", "--filter", f"volume={name}", "--filter", "status=running",
        )
        if code != 0:
            raise ContainerProviderError(
                f"Failed to query volume usage: {stderr}", operation="is_volume_in_use"
            )
        return bool(stdout.strip())
