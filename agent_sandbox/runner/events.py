"""Event types emitted by the agent runner.

Every backend reports progress as an ordered sequence of these events. On
the process interface they are written one JSON object per line.
"""

import json
import re
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator


RunStatus = Literal["starting", "running", "completed", "failed"]

_SLUG_RE = re.compile(r"[^a-z0-9]+")

# Keys accepted for an option's id, in order of preference.
_OPTION_ID_KEYS = ("id", "optionId", "value", "name", "label")


class PromptOption(BaseModel):
    """One discrete answer to a prompt."""

    id: str
    label: str
    value: str


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-")


def _first_str(data: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def normalize_prompt_options(options: Iterable[Any] | None) -> list[PromptOption]:
    """Convert backend-specific option lists to ``{id, label, value}`` options.

    Strings become ``{id: slug, label: s, value: s}``. Mappings take their id
    from the first of ``id``, ``optionId``, ``value``, ``name``, ``label``.
    Entries without a usable id are dropped; duplicate ids get ``-2``, ``-3``
    suffixes in order of appearance.

    Args:
        options: Strings, mappings or PromptOption instances.

    Returns:
        Normalized options with unique ids.
    """
    normalized: list[PromptOption] = []
    seen: dict[str, int] = {}
    for option in options or []:
        if isinstance(option, PromptOption):
            option_id, label, value = option.id, option.label, option.value
        elif isinstance(option, str):
            option_id, label, value = slugify(option), option, option
        elif isinstance(option, Mapping):
            raw_id = _first_str(option, _OPTION_ID_KEYS)
            if raw_id is None:
                continue
            option_id = raw_id
            label = _first_str(option, ("label", "name")) or raw_id
            value = _first_str(option, ("value", "optionId", "id")) or raw_id
        else:
            continue
        if not option_id:
            continue

        count = seen.get(option_id, 0) + 1
        seen[option_id] = count
        unique_id = option_id if count == 1 else f"{option_id}-{count}"
        normalized.append(PromptOption(id=unique_id, label=label, value=value))
    return normalized


class StdoutEvent(BaseModel):
    type: Literal["stdout"] = "stdout"
    data: str


class StderrEvent(BaseModel):
    type: Literal["stderr"] = "stderr"
    data: str


class ToolCallEvent(BaseModel):
    """The agent invoked a tool."""

    type: Literal["tool_call"] = "tool_call"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class PromptEvent(BaseModel):
    """The agent is waiting for a human choice.

    Options are normalized on construction, so consumers always see
    ``{id, label, value}`` regardless of the backend's encoding.
    """

    type: Literal["prompt"] = "prompt"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    question: str
    options: list[PromptOption]
    expires_at: datetime | None = None

    @field_validator("options", mode="before")
    @classmethod
    def _normalize_options(cls, value: Any) -> list[PromptOption]:
        return normalize_prompt_options(value)


class PromptAnsweredEvent(BaseModel):
    type: Literal["prompt_answered"] = "prompt_answered"
    id: str
    option_id: str | None = None


class StatusEvent(BaseModel):
    """Run progress. A ``completed`` or ``failed`` event ends the stream."""

    type: Literal["status"] = "status"
    status: RunStatus
    exit_code: int | None = None
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


RunnerEvent = Annotated[
    StdoutEvent | StderrEvent | ToolCallEvent | PromptEvent | PromptAnsweredEvent | StatusEvent,
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[RunnerEvent] = TypeAdapter(RunnerEvent)


def parse_event_line(line: str) -> RunnerEvent | None:
    """Parse one JSON line; None when the line is not a runner event."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    try:
        return _EVENT_ADAPTER.validate_python(data)
    except ValidationError:
        return None


def encode_event(event: BaseModel) -> str:
    """Serialize an event as one JSON line (without the newline)."""
    return event.model_dump_json(exclude_none=True)
