"""Compute target routes: user-facing CRUD and the registered-agent surface.

Registered agents authenticate with their per-target token and drive a
heartbeat, poll, patch cycle against ``/servers/{id}/...``.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Response, status
from loguru import logger

from agent_sandbox.core.types import (
    ComputeTarget,
    Message,
    RegisteredConnection,
    TargetStatus,
    Task,
    TaskStatus,
)
from agent_sandbox.server.auth import generate_server_token, require_server, require_user
from agent_sandbox.server.database import MessageRepository, ServerRepository, TaskRepository
from agent_sandbox.server.dependencies import (
    get_message_repository,
    get_sandbox_service,
    get_server_repository,
    get_task_repository,
)
from agent_sandbox.server.exceptions import (
    DuplicateServerError,
    ForbiddenError,
    ServerNotFoundError,
    TaskNotFoundError,
)
from agent_sandbox.server.models.requests import (
    CreateServerRequest,
    HeartbeatRequest,
    RegisterServerRequest,
    TaskPatchRequest,
)
from agent_sandbox.server.models.responses import (
    RegisterServerResponse,
    ServerListResponse,
    ServerProbeResponse,
    ServerResponse,
    SuccessResponse,
    TaskPatchResponse,
)
from agent_sandbox.server.services.sandbox import SandboxService


router = APIRouter(prefix="/servers", tags=["servers"])


async def _owned_target(server_id: str, user_id: str, servers: ServerRepository) -> ComputeTarget:
    target = await servers.get_for_user(server_id, user_id)
    if target is None:
        raise ServerNotFoundError(server_id)
    return target


@router.post("/register", response_model=RegisterServerResponse)
async def register_server(
    request: RegisterServerRequest,
    user_id: str = Depends(require_user),
    servers: ServerRepository = Depends(get_server_repository),
) -> RegisterServerResponse:
    """Register a self-polling compute target and issue its token.

    Raises:
        DuplicateServerError: If the name is taken and ``force`` is not set.
    """
    token = generate_server_token()
    existing = await servers.get_by_name(user_id, request.name)
    if existing is not None:
        if not request.force:
            raise DuplicateServerError(request.name, existing.id)
        await servers.set_token(existing.id, token)
        await servers.update_status(existing.id, TargetStatus.CONNECTED)
        logger.info("Registered server token rotated", server_id=existing.id)
        return RegisterServerResponse(id=existing.id, token=token)

    target = ComputeTarget(
        id=str(uuid4()),
        user_id=user_id,
        name=request.name,
        connection=RegisteredConnection(),
        status=TargetStatus.CONNECTED,
        token=token,
        last_connected_at=datetime.now(UTC),
        created_at=datetime.now(UTC),
    )
    await servers.create(target)
    logger.info("Server registered", server_id=target.id, name=target.name)
    return RegisterServerResponse(id=target.id, token=token)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ServerResponse)
async def create_server(
    request: CreateServerRequest,
    user_id: str = Depends(require_user),
    servers: ServerRepository = Depends(get_server_repository),
) -> ServerResponse:
    """Create a direct, tunneled or cluster compute target."""
    if request.connection.kind == "registered":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Use /servers/register for registered targets",
        )
    existing = await servers.get_by_name(user_id, request.name)
    if existing is not None:
        raise DuplicateServerError(request.name, existing.id)

    target = ComputeTarget(
        id=str(uuid4()),
        user_id=user_id,
        name=request.name,
        connection=request.connection,
        created_at=datetime.now(UTC),
    )
    await servers.create(target)
    logger.info("Server created", server_id=target.id, kind=target.kind)
    return ServerResponse.from_target(target)


@router.get("", response_model=ServerListResponse)
async def list_servers(
    user_id: str = Depends(require_user),
    servers: ServerRepository = Depends(get_server_repository),
) -> ServerListResponse:
    """List the caller's compute targets."""
    targets = await servers.list_for_user(user_id)
    return ServerListResponse(servers=[ServerResponse.from_target(t) for t in targets])


@router.get("/{server_id}", response_model=ServerResponse)
async def get_server(
    server_id: str,
    user_id: str = Depends(require_user),
    servers: ServerRepository = Depends(get_server_repository),
) -> ServerResponse:
    return ServerResponse.from_target(await _owned_target(server_id, user_id, servers))


@router.delete("/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server(
    server_id: str,
    user_id: str = Depends(require_user),
    servers: ServerRepository = Depends(get_server_repository),
) -> Response:
    await _owned_target(server_id, user_id, servers)
    await servers.delete(server_id)
    logger.info("Server deleted", server_id=server_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{server_id}/test", response_model=ServerProbeResponse)
async def test_server(
    server_id: str,
    user_id: str = Depends(require_user),
    servers: ServerRepository = Depends(get_server_repository),
    sandbox: SandboxService = Depends(get_sandbox_service),
) -> ServerProbeResponse:
    """Probe a compute target and record its connectivity."""
    target = await _owned_target(server_id, user_id, servers)
    return await sandbox.probe(target)


@router.api_route("/{server_id}/heartbeat", methods=["POST", "PUT"], response_model=SuccessResponse)
async def heartbeat(
    request: HeartbeatRequest,
    target: ComputeTarget = Depends(require_server),
    servers: ServerRepository = Depends(get_server_repository),
) -> SuccessResponse:
    """Mark a registered target connected and store its host stats."""
    await servers.update_status(target.id, TargetStatus.CONNECTED, stats=request.stats)
    logger.debug("Heartbeat", server_id=target.id)
    return SuccessResponse()


@router.get("/{server_id}/tasks", response_model=list[Task])
async def poll_tasks(
    target: ComputeTarget = Depends(require_server),
    servers: ServerRepository = Depends(get_server_repository),
    tasks: TaskRepository = Depends(get_task_repository),
) -> list[Task]:
    """Tasks the registered agent must act on.

    Returns pending tasks and tasks with a pending inspect request. Nothing
    is claimed here; the agent claims a task by patching it to ``running``.
    """
    actionable = await tasks.list_actionable_for_server(target.id)
    await servers.update_status(target.id, TargetStatus.CONNECTED)
    return actionable


@router.patch("/{server_id}/tasks/{task_id}", response_model=TaskPatchResponse)
async def patch_task(
    task_id: str,
    request: TaskPatchRequest,
    target: ComputeTarget = Depends(require_server),
    tasks: TaskRepository = Depends(get_task_repository),
    messages: MessageRepository = Depends(get_message_repository),
) -> TaskPatchResponse:
    """Apply a registered agent's update to one of its tasks.

    ``config`` is shallow-merged over the stored config. ``output`` and
    ``exit_code`` become the task's last result.

    Raises:
        TaskNotFoundError: Unknown task.
        ForbiddenError: The task belongs to another target.
        TaskVersionConflictError: ``expected_version`` is stale.
    """
    task = await tasks.get(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    if task.server_id != target.id:
        raise ForbiddenError("Task not assigned to this server")

    changes: dict[str, Any] = {"last_activity_at": datetime.now(UTC)}
    for field in ("status", "container_id", "volume_id", "error_message"):
        value = getattr(request, field)
        if value is not None:
            changes[field] = value

    if request.output is not None or request.exit_code is not None:
        completed = request.status == TaskStatus.COMPLETED
        exit_code = request.exit_code if request.exit_code is not None else (0 if completed else 1)
        changes["last_result"] = {
            "success": exit_code == 0,
            "exit_code": exit_code,
            "output": request.output or "",
        }

    updated = await tasks.update(
        task_id,
        changes,
        config_patch=request.config,
        expected_version=request.expected_version,
    )

    if request.output:
        await messages.create(
            Message(
                id=str(uuid4()),
                task_id=task_id,
                role="assistant",
                content=request.output,
                created_at=datetime.now(UTC),
            )
        )

    logger.info("Task patched by agent", task_id=task_id, server_id=target.id, status=updated.status, version=updated.version)
    return TaskPatchResponse(version=updated.version)
