"""Prompts raised by agents: answering them and streaming new ones."""

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from loguru import logger

from agent_sandbox.core.types import Message, ToolCallRecord
from agent_sandbox.server.database import MessageRepository
from agent_sandbox.server.exceptions import (
    PromptAlreadyAnsweredError,
    PromptExpiredError,
    PromptNotFoundError,
)


PROMPT_TOOL_CALL = "prompt"
PROMPT_ANSWER_TOOL_CALL = "prompt_answer"


def prompt_calls(message: Message) -> list[ToolCallRecord]:
    """Prompt tool calls carried by a message."""
    return [
        call
        for call in message.tool_calls or []
        if call.type == PROMPT_TOOL_CALL and isinstance(call.input.get("prompt_id"), str)
    ]


def is_expired(expires_at: Any, now: datetime | None = None) -> bool:
    """True when ``expires_at`` (ISO timestamp) lies in the past.

    Missing or unparseable values never expire.
    """
    if not isinstance(expires_at, str) or not expires_at:
        return False
    try:
        deadline = datetime.fromisoformat(expires_at)
    except ValueError:
        return False
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=UTC)
    return (now or datetime.now(UTC)) > deadline


def format_sse(event: str, data: Any, event_id: str | None = None) -> str:
    """Encode one server-sent event frame."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, default=str)}")
    return "\n".join(lines) + "\n\n"


class PromptService:
    """Answer prompts and find unanswered ones."""

    def __init__(self, messages: MessageRepository):
        self._messages = messages

    async def find_prompt(self, task_id: str, prompt_id: str, tool_call_id: str) -> ToolCallRecord:
        """Locate the prompt tool call a caller wants to answer.

        Raises:
            PromptNotFoundError: If no message carries that prompt and tool call.
        """
        for message in await self._messages.list_for_task(task_id):
            for call in prompt_calls(message):
                if call.input["prompt_id"] == prompt_id and call.id == tool_call_id:
                    return call
        raise PromptNotFoundError(task_id, prompt_id)

    async def answer(self, task_id: str, prompt_id: str, tool_call_id: str, answer: str) -> Message:
        """Store the user's answer to a prompt.

        Checks run in order: the prompt exists, it has not expired, it has not
        been answered. The answer is recorded atomically, so of two concurrent
        answers exactly one succeeds.

        Returns:
            The stored answer message.

        Raises:
            PromptNotFoundError: Unknown prompt or tool call.
            PromptExpiredError: The prompt's ``expires_at`` has passed.
            PromptAlreadyAnsweredError: The prompt already has an answer.
        """
        call = await self.find_prompt(task_id, prompt_id, tool_call_id)
        if is_expired(call.input.get("expires_at")):
            raise PromptExpiredError(prompt_id)

        message = Message(
            id=str(uuid4()),
            task_id=task_id,
            role="user",
            content=answer,
            tool_calls=[
                ToolCallRecord(
                    id=str(uuid4()),
                    type=PROMPT_ANSWER_TOOL_CALL,
                    name=PROMPT_ANSWER_TOOL_CALL,
                    input={"prompt_id": prompt_id, "tool_call_id": tool_call_id, "answer": answer},
                )
            ],
            created_at=datetime.now(UTC),
        )
        stored = await self._messages.record_answer(prompt_id, tool_call_id, message)
        if stored is None:
            raise PromptAlreadyAnsweredError(prompt_id)
        logger.info("Prompt answered", task_id=task_id, prompt_id=prompt_id)
        return stored

    async def unanswered_after(self, task_id: str, after_seq: int) -> tuple[list[Message], int]:
        """Prompt messages newer than ``after_seq`` that still await an answer.

        Returns:
            The messages and the highest ``seq`` examined, so answered prompts
            are skipped for good.
        """
        answered = await self._messages.answered_prompts(task_id)
        pending: list[Message] = []
        last_seq = after_seq
        for message in await self._messages.list_for_task(task_id, after_seq=after_seq):
            last_seq = max(last_seq, message.seq or last_seq)
            calls = prompt_calls(message)
            if calls and any((c.input["prompt_id"], c.id) not in answered for c in calls):
                pending.append(message)
        return pending, last_seq

    async def stream(
        self,
        task_id: str,
        is_disconnected: Callable[[], Awaitable[bool]],
        after_seq: int = 0,
        ping_seconds: float = 2.0,
        poll_seconds: float = 0.5,
    ) -> AsyncIterator[str]:
        """Server-sent events for prompts that need an answer.

        Emits ``ready`` first, then one ``prompt`` event (id = message seq) per
        unanswered prompt message, with a ``: ping`` comment every
        ``ping_seconds``. Returns as soon as the client disconnects.

        Args:
            task_id: Task to watch.
            is_disconnected: The request's disconnect probe.
            after_seq: Resume after this event id.
            ping_seconds: Keepalive interval.
            poll_seconds: Lookup interval.
        """
        loop = asyncio.get_running_loop()
        yield format_sse("ready", {})
        last_seq = after_seq
        last_ping = loop.time()
        while not await is_disconnected():
            messages, last_seq = await self.unanswered_after(task_id, last_seq)
            for message in messages:
                yield format_sse("prompt", message.model_dump(mode="json"), event_id=str(message.seq))
            if loop.time() - last_ping >= ping_seconds:
                last_ping = loop.time()
                yield ": ping\n\n"
            await asyncio.sleep(poll_seconds)
        logger.debug("Prompt stream closed", task_id=task_id)
