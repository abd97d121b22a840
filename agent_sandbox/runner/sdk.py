"""Streaming model call through pydantic-ai."""

import json
import time
import uuid
from collections.abc import AsyncIterator, Mapping
from datetime import UTC, datetime, timedelta

from loguru import logger
from pydantic_ai import Agent
from pydantic_ai.messages import (
    PartDeltaEvent,
    PartStartEvent,
    TextPart,
    TextPartDelta,
    ToolCallPart,
)
from pydantic_ai.models import Model
from pydantic_ai.models.openrouter import OpenRouterModel
from pydantic_ai.providers.openrouter import OpenRouterProvider

from agent_sandbox.runner.base import RunRequest
from agent_sandbox.runner.events import (
    PromptEvent,
    RunnerEvent,
    StatusEvent,
    StderrEvent,
    StdoutEvent,
    ToolCallEvent,
    normalize_prompt_options,
)
from agent_sandbox.runner.tools import WorkspaceContext, read_file, run_shell_command, write_file


DEFAULT_SDK_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "openrouter": "anthropic/claude-sonnet-4-20250514",
}

DEFAULT_PROMPT_OPTIONS = [
    {"id": "approve", "label": "Approve", "value": "approve"},
    {"id": "revise", "label": "Revise", "value": "revise"},
]


def requested_prompt(env: Mapping[str, str]) -> PromptEvent | None:
    """Build the prompt event requested through ``AGENT_RUNNER_PROMPT*`` variables."""
    if env.get("AGENT_RUNNER_PROMPT") != "1":
        return None

    options: list[object] = list(DEFAULT_PROMPT_OPTIONS)
    raw_options = env.get("AGENT_RUNNER_PROMPT_OPTIONS")
    if raw_options:
        try:
            parsed = json.loads(raw_options)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list) and normalize_prompt_options(parsed):
            options = parsed

    expires_at = None
    expires_ms = env.get("AGENT_RUNNER_PROMPT_EXPIRES_MS", "")
    if expires_ms.strip().isdigit():
        expires_at = datetime.now(UTC) + timedelta(milliseconds=int(expires_ms))

    return PromptEvent(
        id=env.get("AGENT_RUNNER_PROMPT_ID") or str(uuid.uuid4()),
        question=env.get("AGENT_RUNNER_PROMPT_QUESTION") or "Select an option",
        options=options,
        expires_at=expires_at,
    )


def build_model(provider: str, model_name: str | None, env: Mapping[str, str]) -> Model | str:
    """Resolve a pydantic-ai model for ``provider``.

    Raises:
        ValueError: If the provider is not supported or its key is missing.
    """
    if provider not in DEFAULT_SDK_MODELS:
        raise ValueError(f"Unknown SDK provider: {provider}")
    name = model_name or DEFAULT_SDK_MODELS[provider]
    if provider == "openrouter":
        api_key = env.get("OPENROUTER_API_KEY", "")
        if not api_key:
            raise ValueError("OPENROUTER_API_KEY environment variable not set")
        return OpenRouterModel(name, provider=OpenRouterProvider(api_key=api_key))
    return f"{provider}:{name}"


async def mock_stream(prompt: str, provider: str) -> AsyncIterator[RunnerEvent]:
    """Deterministic stand-in for a model call."""
    yield ToolCallEvent(name="sdk.generateText", input={"prompt": prompt, "provider": provider})
    words = f"SDK response: {prompt}".split(" ")
    for index, word in enumerate(words):
        yield StdoutEvent(data=word + ("\n" if index == len(words) - 1 else " "))


class SdkBackend:
    """Runs a model through pydantic-ai and streams its output.

    Text deltas and tool calls are read from the same node stream, so their
    relative order is the order the model produced them.
    """

    id = "sdk"

    def __init__(self, agent_factory: type[Agent] = Agent) -> None:
        self.agent_factory = agent_factory

    async def run(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        env = request.resolved_env()
        provider = request.backend_suffix or env.get("AGENT_RUNNER_SDK_PROVIDER") or "mock"
        yield StatusEvent(status="starting")
        yield StatusEvent(status="running", message=f"Streaming SDK response ({provider})")

        prompt_event = requested_prompt(env)
        if prompt_event is not None:
            yield prompt_event

        if provider == "mock":
            async for event in mock_stream(request.prompt, env.get("AGENT_RUNNER_SDK_PROVIDER", "mock")):
                yield event
            yield StatusEvent(status="completed", exit_code=0)
            return

        try:
            model = build_model(provider, env.get("AGENT_RUNNER_SDK_MODEL"), env)
        except ValueError as e:
            yield StderrEvent(data=f"{e}\n")
            yield StatusEvent(status="failed", exit_code=2)
            return

        started = time.monotonic()
        try:
            async for event in self._stream(model, request):
                yield event
        except Exception as e:
            logger.error("SDK run failed", provider=provider, error=str(e), error_type=type(e).__name__)
            yield StderrEvent(data=f"{e}\n")
            yield StatusEvent(status="failed", exit_code=1)
            return

        logger.debug("SDK run finished", provider=provider, duration_s=round(time.monotonic() - started, 2))
        yield StatusEvent(status="completed", exit_code=0)

    async def _stream(self, model: Model | str, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        agent = self.agent_factory(
            model,
            output_type=str,
            deps_type=WorkspaceContext,
            tools=[run_shell_command, read_file, write_file],
        )
        context = WorkspaceContext(cwd=request.workspace)

        async with agent.iter(request.prompt, deps=context) as agent_run:
            async for node in agent_run:
                if Agent.is_model_request_node(node):
                    async with node.stream(agent_run.ctx) as request_stream:
                        async for stream_event in request_stream:
                            if isinstance(stream_event, PartStartEvent) and isinstance(stream_event.part, TextPart):
                                if stream_event.part.content:
                                    yield StdoutEvent(data=stream_event.part.content)
                            elif isinstance(stream_event, PartDeltaEvent) and isinstance(
                                stream_event.delta, TextPartDelta
                            ):
                                yield StdoutEvent(data=stream_event.delta.content_delta)
                elif Agent.is_call_tools_node(node):
                    for part in node.model_response.parts:
                        if isinstance(part, ToolCallPart):
                            yield ToolCallEvent(
                                id=part.tool_call_id,
                                name=part.tool_name,
                                input=part.args_as_dict(),
                            )
