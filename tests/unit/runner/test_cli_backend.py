"""Tests for the CLI backend, spawning real bash processes."""
from agent_sandbox.runner.base import RunRequest
from agent_sandbox.runner.cli import CliBackend, run_shell
from agent_sandbox.runner.events import StatusEvent, StderrEvent, StdoutEvent


async def _collect(stream):
    return [event async for event in stream]


class TestCliBackend:
    async def test_echo_backend(self):
        events = await _collect(CliBackend().run(RunRequest(backend="cli:echo", prompt="hi there")))

        assert events == [
            StatusEvent(status="starting"),
            StdoutEvent(data="hi there\n"),
            StatusEvent(status="completed", exit_code=0),
        ]

    async def test_unknown_agent(self):
        events = await _collect(CliBackend().run(RunRequest(backend="cli:vim", prompt="x")))

        assert events[-1] == StatusEvent(status="failed", exit_code=2)
        assert isinstance(events[-2], StderrEvent)


class TestRunShell:
    async def test_streams_both_outputs_and_exit_code(self, tmp_path):
        request = RunRequest(prompt="", workspace=str(tmp_path), env={"GREETING": "hello"})

        events = await _collect(run_shell('echo "$GREETING"; echo oops >&2; pwd; exit 3', request))

        stdout = [e.data for e in events if isinstance(e, StdoutEvent)]
        stderr = [e.data for e in events if isinstance(e, StderrEvent)]
        assert stdout == ["hello\n", f"{tmp_path.resolve()}\n"]
        assert stderr == ["oops\n"]
        assert events[-1] == StatusEvent(status="failed", exit_code=3)

    async def test_missing_workspace(self, tmp_path):
        request = RunRequest(prompt="", workspace=str(tmp_path / "missing"))

        events = await _collect(run_shell("true", request))

        assert events[-1] == StatusEvent(status="failed", exit_code=1)

    async def test_long_lines_are_not_truncated(self, tmp_path):
        request = RunRequest(prompt="", workspace=str(tmp_path))

        events = await _collect(run_shell("head -c 200000 /dev/zero | tr '\\0' a; echo", request))

        (line,) = [e.data for e in events if isinstance(e, StdoutEvent)]
        assert len(line) == 200001
