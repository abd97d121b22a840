"""Agent runner: invokes a coding agent and normalizes its output into events."""

from agent_sandbox.runner.base import RunnerBackend, RunRequest
from agent_sandbox.runner.events import (
    PromptAnsweredEvent,
    PromptEvent,
    PromptOption,
    RunnerEvent,
    StatusEvent,
    StderrEvent,
    StdoutEvent,
    ToolCallEvent,
    normalize_prompt_options,
    parse_event_line,
)
from agent_sandbox.runner.registry import get_backend, run_agent


__all__ = [
    "PromptAnsweredEvent",
    "PromptEvent",
    "PromptOption",
    "RunRequest",
    "RunnerBackend",
    "RunnerEvent",
    "StatusEvent",
    "StderrEvent",
    "StdoutEvent",
    "ToolCallEvent",
    "get_backend",
    "normalize_prompt_options",
    "parse_event_line",
    "run_agent",
]
