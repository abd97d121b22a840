"""Tests for the SDK backend."""
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from agent_sandbox.runner.base import RunRequest
from agent_sandbox.runner.events import PromptEvent, StatusEvent, StderrEvent, StdoutEvent, ToolCallEvent
from agent_sandbox.runner.sdk import SdkBackend, build_model, requested_prompt


async def _collect(backend, request):
    return [event async for event in backend.run(request)]


class TestRequestedPrompt:
    def test_disabled_by_default(self):
        assert requested_prompt({}) is None

    def test_defaults(self):
        prompt = requested_prompt({"AGENT_RUNNER_PROMPT": "1"})

        assert prompt.question == "Select an option"
        assert [o.id for o in prompt.options] == ["approve", "revise"]
        assert prompt.expires_at is None

    def test_overrides(self):
        prompt = requested_prompt(
            {
                "AGENT_RUNNER_PROMPT": "1",
                "AGENT_RUNNER_PROMPT_ID": "p-7",
                "AGENT_RUNNER_PROMPT_QUESTION": "Ship it?",
                "AGENT_RUNNER_PROMPT_OPTIONS": '["Ship", "Hold"]',
                "AGENT_RUNNER_PROMPT_EXPIRES_MS": "60000",
            }
        )

        assert prompt.id == "p-7"
        assert prompt.question == "Ship it?"
        assert [o.id for o in prompt.options] == ["ship", "hold"]
        assert prompt.expires_at > datetime.now(UTC)

    def test_invalid_options_fall_back_to_defaults(self):
        prompt = requested_prompt({"AGENT_RUNNER_PROMPT": "1", "AGENT_RUNNER_PROMPT_OPTIONS": "not json"})

        assert [o.id for o in prompt.options] == ["approve", "revise"]


class TestBuildModel:
    def test_known_provider_uses_default_model(self):
        assert build_model("anthropic", None, {}) == "anthropic:claude-sonnet-4-20250514"

    def test_explicit_model(self):
        assert build_model("openai", "gpt-4.1", {}) == "openai:gpt-4.1"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown SDK provider"):
            build_model("cohere", None, {})

    def test_openrouter_requires_key(self):
        with pytest.raises(ValueError, match="OPENROUTER_API_KEY"):
            build_model("openrouter", None, {})


class TestSdkBackend:
    async def test_mock_provider(self, monkeypatch):
        monkeypatch.delenv("AGENT_RUNNER_SDK_PROVIDER", raising=False)

        events = await _collect(SdkBackend(), RunRequest(backend="sdk:mock", prompt="add tests"))

        assert events[0] == StatusEvent(status="starting")
        assert isinstance(events[2], ToolCallEvent)
        assert events[2].name == "sdk.generateText"
        text = "".join(e.data for e in events if isinstance(e, StdoutEvent))
        assert text == "SDK response: add tests\n"
        assert events[-1] == StatusEvent(status="completed", exit_code=0)

    async def test_prompt_is_emitted_before_output(self):
        request = RunRequest(backend="sdk:mock", prompt="x", env={"AGENT_RUNNER_PROMPT": "1"})

        events = await _collect(SdkBackend(), request)

        assert isinstance(events[2], PromptEvent)

    async def test_unknown_provider_fails_with_usage_code(self):
        events = await _collect(SdkBackend(), RunRequest(backend="sdk:cohere", prompt="x"))

        assert isinstance(events[-2], StderrEvent)
        assert events[-1] == StatusEvent(status="failed", exit_code=2)

    async def test_model_errors_become_failed_status(self, tmp_path):
        agent_factory = MagicMock(side_effect=RuntimeError("rate limited"))
        request = RunRequest(backend="sdk:anthropic", prompt="x", workspace=str(tmp_path))

        events = await _collect(SdkBackend(agent_factory=agent_factory), request)

        assert events[-2] == StderrEvent(data="rate limited\n")
        assert events[-1] == StatusEvent(status="failed", exit_code=1)
