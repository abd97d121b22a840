"""Registered-agent process: heartbeat, poll, and work the tasks it is handed.

The server cannot reach this host, so everything it wants done arrives as
the answer to a poll. A task is claimed by patching it to ``running`` with
the version it was polled at; whoever loses that race skips the task.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import psutil
from loguru import logger

from agent_sandbox.client.api import AgentSandboxClient, AgentSandboxClientError, VersionConflictError
from agent_sandbox.core.exceptions import AgentSandboxError
from agent_sandbox.core.types import InspectRequest, InspectRequestStatus, Task, TaskStatus
from agent_sandbox.sandbox.provider import ContainerProvider
from agent_sandbox.sandbox.provisioner import CLIProvisioner


def collect_host_stats(docker_version: str | None = None, container_count: int | None = None) -> dict[str, Any]:
    """Host stats sent with every heartbeat."""
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage("/")
    return {
        "cpu_percent": psutil.cpu_percent(interval=None),
        "cpu_count": psutil.cpu_count(),
        "memory_total_bytes": memory.total,
        "memory_used_bytes": memory.used,
        "memory_percent": memory.percent,
        "disk_total_bytes": disk.total,
        "disk_used_bytes": disk.used,
        "disk_percent": disk.percent,
        "docker_version": docker_version,
        "container_count": container_count,
    }


class RegisteredAgent:
    """Poll loop for one registered target.

    Args:
        client: API client authenticated with the target's token.
        provider: Local container provider.
        provisioner: Installs and runs agents; built from ``provider`` if omitted.
        poll_interval: Seconds between poll cycles.
    """

    def __init__(
        self,
        client: AgentSandboxClient,
        provider: ContainerProvider,
        provisioner: CLIProvisioner | None = None,
        poll_interval: float = 5.0,
    ):
        self.client = client
        self.provider = provider
        self.provisioner = provisioner or CLIProvisioner(provider)
        self.poll_interval = poll_interval
        self._docker_version: str | None = None

    async def _stats(self) -> dict[str, Any]:
        try:
            count: int | None = len(await self.provider.list_containers())
        except AgentSandboxError as e:
            logger.debug("Could not count containers", error=str(e))
            count = None
        return collect_host_stats(self._docker_version, count)

    async def poll_once(self) -> int:
        """One heartbeat and poll cycle.

        Returns:
            Number of tasks handled.
        """
        await self.client.heartbeat(await self._stats())
        tasks = await self.client.poll_tasks()
        for task in tasks:
            inspect_request = task.typed_config.inspect_request
            if inspect_request is not None and inspect_request.status == InspectRequestStatus.PENDING:
                await self.handle_inspect(task, inspect_request)
            elif task.status == TaskStatus.PENDING:
                await self.process_task(task)
        return len(tasks)

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Poll until ``stop`` is set. Poll failures are logged and retried."""
        stop = stop or asyncio.Event()
        health = await self.provider.health_check()
        self._docker_version = health.version
        if not health.healthy:
            logger.warning("Container provider not healthy, continuing", message=health.message)
        logger.info("Agent started, polling for tasks", server_id=self.client.server_id, interval=self.poll_interval)

        while not stop.is_set():
            try:
                await self.poll_once()
            except (AgentSandboxClientError, AgentSandboxError) as e:
                logger.warning("Poll cycle failed", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass
        logger.info("Agent stopped")

    async def handle_inspect(self, task: Task, request: InspectRequest) -> None:
        """Inspect the task's container and report back on the request."""
        update: dict[str, Any] = {"completed_at": datetime.now(UTC)}
        if not task.container_id:
            update |= {"status": InspectRequestStatus.FAILED, "error": "Container not started"}
        else:
            try:
                info = await self.provider.inspect_container(task.container_id)
            except AgentSandboxError as e:
                update |= {"status": InspectRequestStatus.FAILED, "error": str(e)}
            else:
                update |= {"status": InspectRequestStatus.COMPLETED, "result": info.model_dump(mode="json")}

        resolved = request.model_copy(update=update)
        await self.client.patch_task(task.id, config={"inspect_request": resolved.model_dump(mode="json")})
        logger.info("Inspect request resolved", task_id=task.id, request_id=request.id, status=resolved.status)

    async def process_task(self, task: Task) -> None:
        """Claim a pending task and run it to completion.

        Failures are reported on the task as ``error``; a lost claim is skipped.
        """
        try:
            await self.client.patch_task(task.id, status=TaskStatus.RUNNING, expected_version=task.version)
        except VersionConflictError:
            logger.info("Task claimed elsewhere, skipping", task_id=task.id)
            return
        logger.info("Processing task", task_id=task.id, name=task.name)

        try:
            await self._run(task)
        except Exception as e:
            logger.exception("Task failed", task_id=task.id)
            await self.client.patch_task(task.id, status=TaskStatus.ERROR, error_message=str(e))

    async def _run(self, task: Task) -> None:
        config = task.typed_config
        container_id = task.container_id
        if not container_id:
            created = await self.provider.create_container(task.id, config.sandbox_config())
            container_id = created.container_id
            await self.provider.start_container(container_id)
            await self.client.patch_task(task.id, container_id=container_id, volume_id=created.volume_id)
        else:
            await self.provider.start_container(container_id)

        install = await self.provisioner.install_agent(container_id, task.agent_tool, backend=config.backend)
        if not install.success:
            raise AgentSandboxError(install.message)

        if config.repo_url:
            await self.provisioner.setup_environment(
                container_id, config.repo_url, config.branch, config.github_token
            )

        if not config.prompt:
            await self.client.patch_task(
                task.id,
                status=TaskStatus.COMPLETED,
                output="No prompt provided, environment setup only.",
                exit_code=0,
            )
            return

        result = await self.provisioner.execute_agent_task(
            container_id,
            task.agent_tool,
            config.prompt,
            secrets=config.secrets(task.agent_tool),
            backend=config.backend,
        )
        await self.client.patch_task(
            task.id,
            status=TaskStatus.COMPLETED if result.success else TaskStatus.ERROR,
            output=result.output,
            exit_code=result.exit_code,
            error_message=None if result.success else f"Agent exited with code {result.exit_code}",
        )
        logger.info("Task finished", task_id=task.id, exit_code=result.exit_code)
