"""Tests for runner event types and prompt option normalization."""
import pytest

from agent_sandbox.runner.events import (
    PromptEvent,
    PromptOption,
    StatusEvent,
    StdoutEvent,
    ToolCallEvent,
    encode_event,
    normalize_prompt_options,
    parse_event_line,
)


class TestNormalizePromptOptions:
    def test_strings_are_slugged(self):
        options = normalize_prompt_options(["Approve it", "Revise!"])

        assert options == [
            PromptOption(id="approve-it", label="Approve it", value="Approve it"),
            PromptOption(id="revise", label="Revise!", value="Revise!"),
        ]

    def test_mapping_id_precedence(self):
        options = normalize_prompt_options(
            [
                {"optionId": "allow_once", "name": "Allow once", "kind": "allow_once"},
                {"value": "v", "label": "Value only"},
                {"label": "Label only"},
            ]
        )

        assert [(o.id, o.label, o.value) for o in options] == [
            ("allow_once", "Allow once", "allow_once"),
            ("v", "Value only", "v"),
            ("Label only", "Label only", "Label only"),
        ]

    def test_duplicate_ids_get_suffixes(self):
        options = normalize_prompt_options(["Yes", "yes", {"id": "yes"}])

        assert [o.id for o in options] == ["yes", "yes-2", "yes-3"]

    def test_unusable_entries_dropped(self):
        assert normalize_prompt_options([{"kind": "x"}, 42, None, {"id": ""}]) == []
        assert normalize_prompt_options(None) == []

    def test_prompt_event_normalizes_on_construction(self):
        event = PromptEvent(question="Continue?", options=["Yes", "No"])

        assert [o.id for o in event.options] == ["yes", "no"]
        assert event.id


class TestParseEventLine:
    def test_round_trips_encoded_event(self):
        line = encode_event(ToolCallEvent(id="t1", name="Bash", input={"command": "ls"}))

        assert parse_event_line(line) == ToolCallEvent(id="t1", name="Bash", input={"command": "ls"})

    @pytest.mark.parametrize(
        "line",
        ["plain text", "{not json", '{"type": "unknown"}', '{"type": "stdout"}', "[1, 2]", ""],
    )
    def test_non_events(self, line):
        assert parse_event_line(line) is None

    def test_encode_omits_none_fields(self):
        assert encode_event(StatusEvent(status="running")) == '{"type":"status","status":"running"}'

    def test_stdout(self):
        assert parse_event_line('  {"type": "stdout", "data": "hi"}  ') == StdoutEvent(data="hi")


def test_terminal_status():
    assert StatusEvent(status="completed", exit_code=0).is_terminal
    assert StatusEvent(status="failed", exit_code=1).is_terminal
    assert not StatusEvent(status="running").is_terminal
