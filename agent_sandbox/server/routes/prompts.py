"""Routes for prompts raised by agents: answers and the live prompt stream."""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request
from starlette.responses import StreamingResponse

from agent_sandbox.core.types import Task
from agent_sandbox.server.config import ServerConfig
from agent_sandbox.server.dependencies import get_config, get_prompt_service
from agent_sandbox.server.models.requests import PromptAnswerRequest
from agent_sandbox.server.models.responses import PromptAnswerResponse
from agent_sandbox.server.routes.tasks import get_owned_task
from agent_sandbox.server.services.prompts import PromptService


router = APIRouter(prefix="/tasks/{task_id}/prompts", tags=["prompts"])


def resume_point(after: str | None, last_event_id: str | None) -> int:
    """Sequence number to resume the stream after.

    ``after`` wins over the ``Last-Event-ID`` header; anything that is not a
    non-negative integer starts from the beginning.
    """
    for candidate in (after, last_event_id):
        if candidate and candidate.strip().isdigit():
            return int(candidate.strip())
    return 0


@router.post("/{prompt_id}/answer", response_model=PromptAnswerResponse)
async def answer_prompt(
    prompt_id: str,
    request: PromptAnswerRequest,
    task: Task = Depends(get_owned_task),
    prompts: PromptService = Depends(get_prompt_service),
) -> PromptAnswerResponse:
    """Answer a prompt.

    Raises:
        PromptNotFoundError: 404 if the prompt or tool call is unknown.
        PromptExpiredError: 409 once the prompt has expired.
        PromptAlreadyAnsweredError: 409 on a second answer.
    """
    message = await prompts.answer(task.id, prompt_id, request.tool_call_id, request.answer)
    return PromptAnswerResponse(message_id=message.id)


@router.get("/stream")
async def stream_prompts(
    request: Request,
    after: Annotated[str | None, Query(description="Resume after this event id")] = None,
    last_event_id: Annotated[str | None, Header()] = None,
    task: Task = Depends(get_owned_task),
    prompts: PromptService = Depends(get_prompt_service),
    config: ServerConfig = Depends(get_config),
) -> StreamingResponse:
    """Server-sent events for prompts awaiting an answer."""
    events = prompts.stream(
        task.id,
        request.is_disconnected,
        after_seq=resume_point(after, last_event_id),
        ping_seconds=config.prompt_stream_ping_seconds,
        poll_seconds=config.prompt_stream_poll_seconds,
    )
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )
