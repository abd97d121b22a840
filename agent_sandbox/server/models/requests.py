"""Request schemas for REST API endpoints."""

from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field

from agent_sandbox.core.constants import AgentTool
from agent_sandbox.core.types import ConnectionConfig, TaskStatus


class RegisterServerRequest(BaseModel):
    """Register a self-polling compute target.

    Attributes:
        name: Display name, unique per user.
        force: Rotate the token of an existing target with the same name
            instead of rejecting the registration.
    """

    name: Annotated[str, Field(min_length=1, max_length=200)] = "Registered Server"
    force: bool = False


class CreateServerRequest(BaseModel):
    """Create a directly reachable compute target."""

    name: Annotated[str, Field(min_length=1, max_length=200)]
    connection: ConnectionConfig


class HeartbeatRequest(BaseModel):
    """Liveness report from a registered agent."""

    stats: dict[str, Any] | None = None


class TaskPatchRequest(BaseModel):
    """Partial task update sent by a registered agent.

    Attributes:
        status: New task status.
        container_id: Compute unit created for the task.
        volume_id: Volume created for the task.
        error_message: Failure synopsis.
        config: Keys shallow-merged into the persisted config.
        output: Agent output; recorded as the task's last result.
        exit_code: Agent exit code; recorded as the task's last result.
        expected_version: Reject the update unless the task is at this version.
    """

    model_config = ConfigDict(extra="forbid")

    status: TaskStatus | None = None
    container_id: str | None = None
    volume_id: str | None = None
    error_message: str | None = None
    config: dict[str, Any] | None = None
    output: str | None = None
    exit_code: int | None = None
    expected_version: Annotated[int | None, Field(ge=1)] = None


class CreateTaskRequest(BaseModel):
    """Create a task bound to a compute target."""

    name: Annotated[str, Field(min_length=1, max_length=200)]
    server_id: str
    agent_tool: AgentTool = AgentTool.CLAUDE
    project_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class RunTaskRequest(BaseModel):
    """Run a prompt in a task's sandbox.

    Attributes:
        prompt: Prompt for the agent.
        anthropic_api_key: Overrides the key stored in the task config.
        backend: Agent runner backend identifier (e.g. ``sdk:anthropic``).
    """

    prompt: Annotated[str, Field(min_length=1)]
    anthropic_api_key: str | None = None
    backend: str | None = None


class PromptAnswerRequest(BaseModel):
    """Answer to a prompt raised by an agent."""

    tool_call_id: Annotated[str, Field(min_length=1)]
    answer: Annotated[str, Field(min_length=1, max_length=4096)]
