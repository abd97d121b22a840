"""Response schemas for REST API endpoints."""

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from agent_sandbox.core.constants import AgentTool
from agent_sandbox.core.types import (
    ComputeTarget,
    InspectRequestStatus,
    Message,
    TargetStatus,
    Task,
    TaskStatus,
)


# Connection and config keys that are never echoed back to users.
_SECRET_KEYS = frozenset({"private_key", "passphrase", "kubeconfig", "anthropic_api_key", "github_token"})


def _mask(values: dict[str, Any]) -> dict[str, Any]:
    return {k: ("***" if k in _SECRET_KEYS and v else v) for k, v in values.items()}


class ErrorResponse(BaseModel):
    """Error response for failed requests.

    Attributes:
        error: Human-readable error message
        code: Machine-readable error code
        details: Optional additional error details
    """

    error: Annotated[str, Field(description="Human-readable error message")]
    code: Annotated[str, Field(description="Machine-readable error code")]
    details: Annotated[
        dict[str, Any] | None,
        Field(default=None, description="Optional additional error details"),
    ] = None


class RegisterServerResponse(BaseModel):
    """Credentials for a newly registered agent. The token is shown once."""

    id: str
    token: str


class ServerResponse(BaseModel):
    """Compute target as shown to its owner, with secrets masked."""

    id: str
    name: str
    kind: str
    status: TargetStatus
    connection: dict[str, Any]
    stats: dict[str, Any] | None = None
    last_connected_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_target(cls, target: ComputeTarget) -> "ServerResponse":
        return cls(
            id=target.id,
            name=target.name,
            kind=target.kind,
            status=target.status,
            connection=_mask(target.connection.model_dump(mode="json")),
            stats=target.stats,
            last_connected_at=target.last_connected_at,
            created_at=target.created_at,
        )


class ServerListResponse(BaseModel):
    servers: list[ServerResponse]


class ServerProbeResponse(BaseModel):
    """Result of probing a compute target."""

    healthy: bool
    status: TargetStatus
    version: str | None = None
    message: str


class SuccessResponse(BaseModel):
    success: Literal[True] = True


class TaskPatchResponse(BaseModel):
    """Acknowledgement of a task patch, with the task's new version."""

    success: Literal[True] = True
    version: int


class TaskResponse(BaseModel):
    """Task as shown to its owner, with config secrets masked."""

    id: str
    name: str
    status: TaskStatus
    agent_tool: AgentTool
    project_id: str | None = None
    server_id: str | None = None
    container_id: str | None = None
    volume_id: str | None = None
    config: dict[str, Any]
    error_message: str | None = None
    last_result: dict[str, Any] | None = None
    version: int
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime | None = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls.model_validate(
            {**task.model_dump(exclude={"user_id"}), "config": _mask(task.config)}
        )


class ActionResponse(BaseModel):
    """Outcome of a task lifecycle action.

    Attributes:
        status: Task status after the action.
        task_id: Task the action applied to.
        queued: True when a registered agent will carry the action out.
    """

    status: TaskStatus
    task_id: str
    queued: bool = False


class RunTaskResponse(BaseModel):
    """Outcome of running a prompt.

    Attributes:
        success: Agent exited with code 0 (False while queued).
        exit_code: Agent exit code, None while queued.
        output: Agent output.
        installed: Agent tool install succeeded.
        version: Installed agent tool version.
        used_fallback: Install took the pinned fallback path.
        queued: The prompt was handed to a registered agent.
        message_id: Stored assistant message.
    """

    success: bool
    exit_code: int | None = None
    output: str = ""
    installed: bool = False
    version: str | None = None
    used_fallback: bool = False
    queued: bool = False
    message_id: str | None = None


class LogsResponse(BaseModel):
    lines: list[str]


class MessageListResponse(BaseModel):
    messages: list[Message]


class InspectResponse(BaseModel):
    """Inspect handshake state.

    Attributes:
        status: ``pending`` until the sandbox has been inspected.
        request_id: Inspect request id (registered targets only).
        result: Inspection result once completed.
    """

    status: InspectRequestStatus
    request_id: str | None = None
    result: dict[str, Any] | None = None


class PromptAnswerResponse(BaseModel):
    success: Literal[True] = True
    message_id: str
