"""Sandbox lifecycle for tasks: start, stop, run a prompt, read logs, probe targets.

Outbound targets (direct, tunneled, cluster) are driven here through a
provider built per operation. Registered targets are only queued: their
own agent process picks the task up on its next poll.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from loguru import logger

from agent_sandbox.core.exceptions import (
    AgentSandboxError,
    ContainerProviderError,
    SetupError,
)
from agent_sandbox.core.types import (
    ComputeTarget,
    Message,
    TargetStatus,
    Task,
    TaskStatus,
    ToolCallRecord,
)
from agent_sandbox.sandbox.factory import provider_session
from agent_sandbox.sandbox.provider import ContainerProvider
from agent_sandbox.sandbox.provisioner import CLIProvisioner, TaskExecutionResult
from agent_sandbox.server.database import MessageRepository, ServerRepository, TaskRepository
from agent_sandbox.server.exceptions import InvalidStateError, ServerNotFoundError
from agent_sandbox.server.models.responses import (
    ActionResponse,
    RunTaskResponse,
    ServerProbeResponse,
)


SessionFactory = Callable[[ComputeTarget], AbstractAsyncContextManager[ContainerProvider]]
ProvisionerFactory = Callable[..., CLIProvisioner]


def error_synopsis(output: str, exit_code: int) -> str:
    """Short failure message for a task; the full output is kept separately."""
    for line in reversed(output.strip().splitlines()):
        if line.strip():
            return line.strip()[:200]
    return f"Agent exited with code {exit_code}"


class SandboxService:
    """Drive a task's sandbox on its compute target."""

    def __init__(
        self,
        servers: ServerRepository,
        tasks: TaskRepository,
        messages: MessageRepository,
        session_factory: SessionFactory = provider_session,
        provisioner_factory: ProvisionerFactory = CLIProvisioner,
    ):
        self._servers = servers
        self._tasks = tasks
        self._messages = messages
        self._session_factory = session_factory
        self._provisioner_factory = provisioner_factory

    async def _target(self, task: Task) -> ComputeTarget:
        if task.server_id is None:
            raise InvalidStateError("Task has no compute target", task.id, task.status)
        target = await self._servers.get(task.server_id)
        if target is None:
            raise ServerNotFoundError(task.server_id)
        return target

    async def _fail(self, task: Task, message: str, output: str = "", exit_code: int = 1) -> Task:
        return await self._tasks.update(
            task.id,
            {
                "status": TaskStatus.ERROR,
                "error_message": message,
                "last_result": {"success": False, "exit_code": exit_code, "output": output},
                "last_activity_at": datetime.now(UTC),
            },
        )

    async def _ensure_started(self, provider: ContainerProvider, task: Task) -> Task:
        """Create the compute unit when missing, then start it."""
        try:
            if not task.container_id:
                created = await provider.create_container(task.id, task.typed_config.sandbox_config())
                task = await self._tasks.update(
                    task.id,
                    {"container_id": created.container_id, "volume_id": created.volume_id},
                )
            assert task.container_id is not None
            await provider.start_container(task.container_id)
        except ContainerProviderError as e:
            await self._fail(task, str(e))
            raise
        return await self._tasks.update(
            task.id,
            {"status": TaskStatus.RUNNING, "error_message": None, "last_activity_at": datetime.now(UTC)},
        )

    async def start(self, task: Task) -> ActionResponse:
        """Start a task's sandbox, creating it on first start.

        Raises:
            ContainerProviderError: If the backend rejects the operation; the
                task is marked ``error`` first.
        """
        target = await self._target(task)
        if target.kind == "registered":
            task = await self._tasks.update(task.id, {"status": TaskStatus.PENDING})
            logger.info("Task queued for registered agent", task_id=task.id, server_id=target.id)
            return ActionResponse(status=task.status, task_id=task.id, queued=True)

        async with self._session_factory(target) as provider:
            task = await self._ensure_started(provider, task)
        logger.info("Sandbox started", task_id=task.id, container_id=task.container_id)
        return ActionResponse(status=task.status, task_id=task.id)

    async def stop(self, task: Task) -> ActionResponse:
        """Stop a task's sandbox. Stopping a stopped sandbox is a no-op."""
        target = await self._target(task)
        if target.kind != "registered" and task.container_id:
            async with self._session_factory(target) as provider:
                await provider.stop_container(task.container_id)
        task = await self._tasks.update(
            task.id,
            {"status": TaskStatus.STOPPED, "last_activity_at": datetime.now(UTC)},
        )
        logger.info("Sandbox stopped", task_id=task.id)
        return ActionResponse(status=task.status, task_id=task.id)

    async def run(
        self,
        task: Task,
        prompt: str,
        anthropic_api_key: str | None = None,
        backend: str | None = None,
    ) -> RunTaskResponse:
        """Run a prompt in the task's sandbox.

        Installs the agent, synchronizes the repository when the task config
        names one, executes the prompt and stores the result as an assistant
        message. Install, setup and agent failures mark the task ``error``
        with the output preserved.

        Args:
            task: Task to run.
            prompt: Prompt for the agent.
            anthropic_api_key: Overrides the key stored in the task config.
            backend: Agent runner backend; the runner is used when set.
        """
        await self._messages.create(
            Message(
                id=str(uuid4()),
                task_id=task.id,
                role="user",
                content=prompt,
                created_at=datetime.now(UTC),
            )
        )
        config = task.typed_config
        backend = backend or config.backend
        target = await self._target(task)

        if target.kind == "registered":
            config_patch: dict[str, Any] = {"prompt": prompt}
            if backend:
                config_patch["backend"] = backend
            if anthropic_api_key:
                config_patch["anthropic_api_key"] = anthropic_api_key
            await self._tasks.update(task.id, {"status": TaskStatus.PENDING}, config_patch=config_patch)
            logger.info("Prompt queued for registered agent", task_id=task.id, server_id=target.id)
            return RunTaskResponse(success=False, queued=True)

        if anthropic_api_key:
            config = config.model_copy(update={"anthropic_api_key": anthropic_api_key})

        async with self._session_factory(target) as provider:
            task = await self._ensure_started(provider, task)
            assert task.container_id is not None
            provisioner = self._provisioner_factory(provider, use_runner=backend is not None)

            install = await provisioner.install_agent(task.container_id, task.agent_tool, backend=backend)
            if not install.success:
                await self._fail(task, install.message, output=install.message)
                return RunTaskResponse(
                    success=False,
                    exit_code=1,
                    output=install.message,
                    used_fallback=install.used_fallback,
                )

            if config.repo_url:
                try:
                    await provisioner.setup_environment(
                        task.container_id, config.repo_url, config.branch, config.github_token
                    )
                except SetupError as e:
                    await self._fail(task, str(e), output=str(e))
                    return RunTaskResponse(
                        success=False,
                        exit_code=1,
                        output=str(e),
                        installed=True,
                        version=install.version,
                        used_fallback=install.used_fallback,
                    )

            result = await provisioner.execute_agent_task(
                task.container_id,
                task.agent_tool,
                prompt,
                secrets=config.secrets(task.agent_tool),
                backend=backend,
            )

        message = await self._store_result(task, prompt, result)
        return RunTaskResponse(
            success=result.success,
            exit_code=result.exit_code,
            output=result.output,
            installed=True,
            version=install.version,
            used_fallback=install.used_fallback,
            message_id=message.id,
        )

    async def _store_result(self, task: Task, prompt: str, result: TaskExecutionResult) -> Message:
        tool_calls = [
            *result.tool_calls,
            ToolCallRecord(
                id=str(uuid4()),
                type="cli",
                name=task.agent_tool.value,
                input={"prompt": prompt},
                output=result.output,
            ),
        ]
        message = await self._messages.create(
            Message(
                id=str(uuid4()),
                task_id=task.id,
                role="assistant",
                content=result.output,
                tool_calls=tool_calls,
                created_at=datetime.now(UTC),
            )
        )
        last_result = {"success": result.success, "exit_code": result.exit_code, "output": result.output}
        if result.success:
            await self._tasks.update(
                task.id,
                {"last_result": last_result, "error_message": None, "last_activity_at": datetime.now(UTC)},
            )
        else:
            await self._fail(
                task,
                error_synopsis(result.output, result.exit_code),
                output=result.output,
                exit_code=result.exit_code,
            )
        logger.info("Task run finished", task_id=task.id, exit_code=result.exit_code)
        return message

    async def logs(self, task: Task, tail: int = 100) -> list[str]:
        """Most recent log lines of the task's compute unit.

        Raises:
            InvalidStateError: For registered targets or tasks without a unit.
        """
        target = await self._target(task)
        if target.kind == "registered" or not task.container_id:
            raise InvalidStateError("Logs are not available for this task", task.id, task.status)
        async with self._session_factory(target) as provider:
            return [line async for line in provider.get_logs(task.container_id, tail=tail)]

    async def probe(self, target: ComputeTarget) -> ServerProbeResponse:
        """Health-check a compute target and persist the observed status.

        Registered targets cannot be dialled; their status is whatever their
        last heartbeat left.
        """
        if target.kind == "registered":
            healthy = target.status == TargetStatus.CONNECTED
            message = (
                f"Last heartbeat at {target.last_connected_at.isoformat()}"
                if target.last_connected_at
                else "No heartbeat received"
            )
            return ServerProbeResponse(healthy=healthy, status=target.status, message=message)

        try:
            async with self._session_factory(target) as provider:
                result = await provider.health_check()
        except AgentSandboxError as e:
            result = None
            message = str(e)
        else:
            message = result.message

        healthy = result is not None and result.healthy
        status = TargetStatus.CONNECTED if healthy else TargetStatus.ERROR
        await self._servers.update_status(target.id, status)
        logger.info("Target probed", server_id=target.id, healthy=healthy)
        return ServerProbeResponse(
            healthy=healthy,
            status=status,
            version=result.version if result else None,
            message=message,
        )
