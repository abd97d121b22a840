"""Inspect handshake: live sandbox stats, asynchronously for registered targets.

The server cannot dial a registered target, so inspection is a record in the
task's config (``config.inspect_request``) that the target's agent picks up
on its next poll and resolves through the task patch endpoint. At most one
request per task is pending at a time.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from uuid import uuid4

from loguru import logger

from agent_sandbox.core.exceptions import AgentSandboxError
from agent_sandbox.core.types import (
    ComputeTarget,
    InspectRequest,
    InspectRequestStatus,
    Task,
)
from agent_sandbox.sandbox.factory import provider_session
from agent_sandbox.sandbox.provider import ContainerProvider
from agent_sandbox.server.database import ServerRepository, TaskRepository
from agent_sandbox.server.exceptions import (
    InspectFailedError,
    InvalidStateError,
    ServerNotFoundError,
    TaskNotFoundError,
    TaskVersionConflictError,
)
from agent_sandbox.server.models.responses import InspectResponse


SessionFactory = Callable[[ComputeTarget], AbstractAsyncContextManager[ContainerProvider]]

# Concurrent writers can bump the task version between our read and write.
_MAX_CREATE_ATTEMPTS = 3


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class InspectService:
    """Resolve inspect calls for direct, tunneled, cluster and registered targets."""

    def __init__(
        self,
        tasks: TaskRepository,
        servers: ServerRepository,
        result_ttl_seconds: float = 30.0,
        session_factory: SessionFactory = provider_session,
    ):
        self._tasks = tasks
        self._servers = servers
        self._ttl = result_ttl_seconds
        self._session_factory = session_factory

    async def inspect(self, task: Task, request_id: str | None = None) -> InspectResponse:
        """Inspect a task's sandbox.

        Args:
            task: Task whose compute unit to inspect.
            request_id: Inspect request id returned by an earlier call, used
                to collect its result.

        Returns:
            A completed response, or a pending one carrying the request id.

        Raises:
            InspectFailedError: If inspection failed.
            InvalidStateError: If the task has no target, or (for outbound
                targets) no compute unit yet.
            ServerNotFoundError: If the task's target no longer exists.
        """
        if task.server_id is None:
            raise InvalidStateError("Task has no compute target", task.id, task.status)
        target = await self._servers.get(task.server_id)
        if target is None:
            raise ServerNotFoundError(task.server_id)

        if target.kind == "registered":
            return await self._request(task, request_id)
        return await self._inspect_now(task, target)

    async def _inspect_now(self, task: Task, target: ComputeTarget) -> InspectResponse:
        if not task.container_id:
            raise InvalidStateError("Container not started", task.id, task.status)
        try:
            async with self._session_factory(target) as provider:
                info = await provider.inspect_container(task.container_id)
        except AgentSandboxError as e:
            logger.warning("Inspect failed", task_id=task.id, error=str(e))
            raise InspectFailedError(task.id, str(e)) from e
        return InspectResponse(
            status=InspectRequestStatus.COMPLETED,
            result=info.model_dump(mode="json"),
        )

    def _is_reusable(self, current: InspectRequest, request_id: str | None) -> bool:
        if request_id is not None and request_id == current.id:
            return True
        if current.completed_at is None:
            return False
        age = (datetime.now(UTC) - _aware(current.completed_at)).total_seconds()
        return age <= self._ttl

    @staticmethod
    def _resolved(task: Task, current: InspectRequest) -> InspectResponse:
        if current.status == InspectRequestStatus.FAILED:
            raise InspectFailedError(task.id, current.error or "Inspect failed", current.id)
        return InspectResponse(
            status=InspectRequestStatus.COMPLETED,
            request_id=current.id,
            result=current.result,
        )

    async def _request(self, task: Task, request_id: str | None) -> InspectResponse:
        for _ in range(_MAX_CREATE_ATTEMPTS):
            current = task.typed_config.inspect_request
            if current is not None:
                if current.status == InspectRequestStatus.PENDING:
                    return InspectResponse(status=current.status, request_id=current.id)
                if self._is_reusable(current, request_id):
                    return self._resolved(task, current)

            new_request = InspectRequest(id=str(uuid4()), requested_at=datetime.now(UTC))
            try:
                await self._tasks.update(
                    task.id,
                    config_patch={"inspect_request": new_request.model_dump(mode="json")},
                    expected_version=task.version,
                )
            except TaskVersionConflictError:
                # Re-evaluate against whatever the other writer stored.
                fresh = await self._tasks.get(task.id)
                if fresh is None:
                    raise TaskNotFoundError(task.id) from None
                task = fresh
                continue

            logger.info("Inspect requested", task_id=task.id, request_id=new_request.id)
            return InspectResponse(status=new_request.status, request_id=new_request.id)

        raise TaskVersionConflictError(task.id, task.version, task.version + 1)
