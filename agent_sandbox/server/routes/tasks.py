"""Task routes and exception handlers."""

from datetime import UTC, datetime
from typing import Annotated, Any
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic_core import ValidationError

from agent_sandbox.core.exceptions import ContainerProviderError, ProviderResolutionError
from agent_sandbox.core.types import InspectRequestStatus, Task, TaskStatus
from agent_sandbox.server.auth import require_user
from agent_sandbox.server.database import MessageRepository, ServerRepository, TaskRepository
from agent_sandbox.server.dependencies import (
    get_inspect_service,
    get_message_repository,
    get_sandbox_service,
    get_server_repository,
    get_task_repository,
)
from agent_sandbox.server.exceptions import (
    DuplicateServerError,
    ForbiddenError,
    InspectFailedError,
    InvalidStateError,
    PromptAlreadyAnsweredError,
    PromptExpiredError,
    PromptNotFoundError,
    ServerNotFoundError,
    TaskNotFoundError,
    TaskVersionConflictError,
    UnauthorizedError,
)
from agent_sandbox.server.models.requests import CreateTaskRequest, RunTaskRequest
from agent_sandbox.server.models.responses import (
    ActionResponse,
    ErrorResponse,
    InspectResponse,
    LogsResponse,
    MessageListResponse,
    RunTaskResponse,
    TaskResponse,
)
from agent_sandbox.server.services.inspect import InspectService
from agent_sandbox.server.services.sandbox import SandboxService


router = APIRouter(prefix="/tasks", tags=["tasks"])


async def get_owned_task(
    task_id: str,
    user_id: str = Depends(require_user),
    tasks: TaskRepository = Depends(get_task_repository),
) -> Task:
    """Resolve ``task_id`` for the calling user.

    Raises:
        TaskNotFoundError: If the task does not exist or belongs to someone else.
    """
    task = await tasks.get_for_user(task_id, user_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


@router.post("", status_code=status.HTTP_201_CREATED, response_model=TaskResponse)
async def create_task(
    request: CreateTaskRequest,
    user_id: str = Depends(require_user),
    servers: ServerRepository = Depends(get_server_repository),
    tasks: TaskRepository = Depends(get_task_repository),
) -> TaskResponse:
    """Create a task on one of the caller's compute targets.

    The task starts ``stopped``; starting or running it provisions the sandbox.
    """
    if await servers.get_for_user(request.server_id, user_id) is None:
        raise ServerNotFoundError(request.server_id)

    now = datetime.now(UTC)
    task = Task(
        id=str(uuid4()),
        user_id=user_id,
        project_id=request.project_id,
        name=request.name,
        status=TaskStatus.STOPPED,
        agent_tool=request.agent_tool,
        server_id=request.server_id,
        config=request.config,
        created_at=now,
        updated_at=now,
    )
    await tasks.create(task)
    logger.info("Created task", task_id=task.id, server_id=task.server_id)
    return TaskResponse.from_task(task)


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task: Task = Depends(get_owned_task)) -> TaskResponse:
    return TaskResponse.from_task(task)


@router.post("/{task_id}/start", response_model=ActionResponse)
async def start_task(
    task: Task = Depends(get_owned_task),
    sandbox: SandboxService = Depends(get_sandbox_service),
) -> ActionResponse:
    """Start the task's sandbox, or queue it for a registered agent."""
    return await sandbox.start(task)


@router.post("/{task_id}/stop", response_model=ActionResponse)
async def stop_task(
    task: Task = Depends(get_owned_task),
    sandbox: SandboxService = Depends(get_sandbox_service),
) -> ActionResponse:
    return await sandbox.stop(task)


@router.post("/{task_id}/run", response_model=RunTaskResponse)
async def run_task(
    request: RunTaskRequest,
    task: Task = Depends(get_owned_task),
    sandbox: SandboxService = Depends(get_sandbox_service),
) -> RunTaskResponse:
    """Run a prompt in the task's sandbox.

    Agent failures are reported in the body (``success: false``) and mark
    the task ``error``; they are not HTTP errors.
    """
    return await sandbox.run(
        task,
        request.prompt,
        anthropic_api_key=request.anthropic_api_key,
        backend=request.backend,
    )


@router.get("/{task_id}/logs", response_model=LogsResponse)
async def get_logs(
    tail: Annotated[int, Query(ge=1, le=10_000)] = 100,
    task: Task = Depends(get_owned_task),
    sandbox: SandboxService = Depends(get_sandbox_service),
) -> LogsResponse:
    return LogsResponse(lines=await sandbox.logs(task, tail=tail))


@router.get("/{task_id}/messages", response_model=MessageListResponse)
async def list_messages(
    after: Annotated[int | None, Query(ge=0, description="Only messages after this seq")] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 200,
    task: Task = Depends(get_owned_task),
    messages: MessageRepository = Depends(get_message_repository),
) -> MessageListResponse:
    return MessageListResponse(
        messages=await messages.list_for_task(task.id, after_seq=after, limit=limit)
    )


@router.get(
    "/{task_id}/inspect",
    response_model=InspectResponse,
    responses={202: {"model": InspectResponse}, 502: {"model": ErrorResponse}},
)
async def inspect_task(
    response: Response,
    request_id: str | None = None,
    task: Task = Depends(get_owned_task),
    inspector: InspectService = Depends(get_inspect_service),
) -> InspectResponse:
    """Inspect the task's sandbox.

    Registered targets answer asynchronously: the first call returns 202
    with a request id; later calls return the same id while it is pending,
    then the result (200) or 502 if the agent reported a failure.
    """
    result = await inspector.inspect(task, request_id=request_id)
    if result.status == InspectRequestStatus.PENDING:
        response.status_code = status.HTTP_202_ACCEPTED
    return result


def _error(status_code: int, code: str, exc: Exception, details: dict[str, Any] | None = None) -> JSONResponse:
    error = ErrorResponse(code=code, error=str(exc), details=details)
    return JSONResponse(status_code=status_code, content=error.model_dump())


def configure_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the FastAPI application.

    Registers handlers for all custom exceptions to return appropriate
    HTTP status codes and error responses.

    Args:
        app: FastAPI application instance.
    """

    @app.exception_handler(TaskNotFoundError)
    async def task_not_found_handler(request: Request, exc: TaskNotFoundError) -> JSONResponse:
        """Handle TaskNotFoundError with 404 Not Found."""
        logger.warning("Task not found", task_id=exc.task_id)
        return _error(404, "TASK_NOT_FOUND", exc, {"task_id": exc.task_id})

    @app.exception_handler(ServerNotFoundError)
    async def server_not_found_handler(request: Request, exc: ServerNotFoundError) -> JSONResponse:
        """Handle ServerNotFoundError with 404 Not Found."""
        logger.warning("Server not found", server_id=exc.server_id)
        return _error(404, "SERVER_NOT_FOUND", exc, {"server_id": exc.server_id})

    @app.exception_handler(UnauthorizedError)
    async def unauthorized_handler(request: Request, exc: UnauthorizedError) -> JSONResponse:
        """Handle UnauthorizedError with 401 Unauthorized."""
        response = _error(401, "UNAUTHORIZED", exc)
        response.headers["WWW-Authenticate"] = "Bearer"
        return response

    @app.exception_handler(ForbiddenError)
    async def forbidden_handler(request: Request, exc: ForbiddenError) -> JSONResponse:
        """Handle ForbiddenError with 403 Forbidden."""
        logger.warning("Forbidden", error=str(exc))
        return _error(403, "FORBIDDEN", exc)

    @app.exception_handler(TaskVersionConflictError)
    async def version_conflict_handler(request: Request, exc: TaskVersionConflictError) -> JSONResponse:
        """Handle TaskVersionConflictError with 409 Conflict.

        The current version is included so the caller can re-read and retry.
        """
        logger.info("Task version conflict", task_id=exc.task_id, expected=exc.expected_version, current=exc.current_version)
        return _error(
            409,
            "VERSION_CONFLICT",
            exc,
            {
                "task_id": exc.task_id,
                "expected_version": exc.expected_version,
                "current_version": exc.current_version,
            },
        )

    @app.exception_handler(DuplicateServerError)
    async def duplicate_server_handler(request: Request, exc: DuplicateServerError) -> JSONResponse:
        """Handle DuplicateServerError with 409 Conflict."""
        return _error(409, "DUPLICATE_SERVER", exc, {"name": exc.name, "server_id": exc.server_id})

    @app.exception_handler(PromptNotFoundError)
    async def prompt_not_found_handler(request: Request, exc: PromptNotFoundError) -> JSONResponse:
        return _error(404, "PROMPT_NOT_FOUND", exc, {"prompt_id": exc.prompt_id})

    @app.exception_handler(PromptExpiredError)
    async def prompt_expired_handler(request: Request, exc: PromptExpiredError) -> JSONResponse:
        return _error(409, "PROMPT_EXPIRED", exc, {"prompt_id": exc.prompt_id})

    @app.exception_handler(PromptAlreadyAnsweredError)
    async def prompt_answered_handler(request: Request, exc: PromptAlreadyAnsweredError) -> JSONResponse:
        return _error(409, "ALREADY_ANSWERED", exc, {"prompt_id": exc.prompt_id})

    @app.exception_handler(InspectFailedError)
    async def inspect_failed_handler(request: Request, exc: InspectFailedError) -> JSONResponse:
        """Handle InspectFailedError with 502 Bad Gateway."""
        return _error(
            502,
            "INSPECT_FAILED",
            exc,
            {"task_id": exc.task_id, "request_id": exc.request_id, "reason": exc.reason},
        )

    @app.exception_handler(InvalidStateError)
    async def invalid_state_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
        """Handle InvalidStateError with 422 Unprocessable Entity."""
        logger.warning("Invalid state for task", task_id=exc.task_id, current_status=exc.current_status)
        return _error(
            422,
            "INVALID_STATE",
            exc,
            {"task_id": exc.task_id, "current_status": exc.current_status},
        )

    @app.exception_handler(ProviderResolutionError)
    async def provider_resolution_handler(request: Request, exc: ProviderResolutionError) -> JSONResponse:
        return _error(422, "INVALID_STATE", exc)

    @app.exception_handler(ContainerProviderError)
    async def provider_error_handler(request: Request, exc: ContainerProviderError) -> JSONResponse:
        """Handle ContainerProviderError with 502 Bad Gateway."""
        logger.error("Provider operation failed", operation=exc.operation, container_id=exc.container_id, error=str(exc))
        return _error(
            502,
            "PROVIDER_ERROR",
            exc,
            {"operation": exc.operation, "container_id": exc.container_id},
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle Pydantic ValidationError with 400 Bad Request."""
        logger.warning("Validation error", error=str(exc))
        errors: list[dict[str, object]] = []
        for error in exc.errors():
            serializable_error: dict[str, object] = {
                "type": error["type"],
                "loc": list(error["loc"]),
                "msg": error["msg"],
            }
            errors.append(serializable_error)
        error_response = ErrorResponse(
            code="VALIDATION_ERROR",
            error="Validation failed",
            details={"errors": errors},
        )
        return JSONResponse(status_code=400, content=error_response.model_dump())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle generic exceptions with 500 Internal Server Error."""
        logger.exception("Unhandled exception", error=str(exc))
        return _error(500, "INTERNAL_ERROR", exc)
