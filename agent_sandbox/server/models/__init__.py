"""Request and response schemas for the agent-sandbox server."""

from agent_sandbox.server.models.requests import (
    CreateServerRequest,
    CreateTaskRequest,
    HeartbeatRequest,
    PromptAnswerRequest,
    RegisterServerRequest,
    RunTaskRequest,
    TaskPatchRequest,
)
from agent_sandbox.server.models.responses import (
    ActionResponse,
    ErrorResponse,
    InspectResponse,
    LogsResponse,
    MessageListResponse,
    PromptAnswerResponse,
    RegisterServerResponse,
    RunTaskResponse,
    ServerListResponse,
    ServerProbeResponse,
    ServerResponse,
    SuccessResponse,
    TaskPatchResponse,
    TaskResponse,
)


__all__ = [
    # Requests
    "CreateServerRequest",
    "CreateTaskRequest",
    "HeartbeatRequest",
    "PromptAnswerRequest",
    "RegisterServerRequest",
    "RunTaskRequest",
    "TaskPatchRequest",
    # Responses
    "ActionResponse",
    "ErrorResponse",
    "InspectResponse",
    "LogsResponse",
    "MessageListResponse",
    "PromptAnswerResponse",
    "RegisterServerResponse",
    "RunTaskResponse",
    "ServerListResponse",
    "ServerProbeResponse",
    "ServerResponse",
    "SuccessResponse",
    "TaskPatchResponse",
    "TaskResponse",
]
