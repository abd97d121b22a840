"""``agent-sandbox-runner`` process entrypoint.

Runs one agent invocation and writes its events to stdout, one JSON object
per line. The process exit code is the agent's exit code.
"""

import asyncio
import os
import sys
from typing import Annotated

import typer

from agent_sandbox import __version__
from agent_sandbox.core.constants import DEFAULT_RUNNER_BACKEND, WORKSPACE_MOUNT_PATH
from agent_sandbox.core.exceptions import AgentRunnerError
from agent_sandbox.logging import configure_logging
from agent_sandbox.runner.base import RunRequest
from agent_sandbox.runner.events import StatusEvent, encode_event
from agent_sandbox.runner.registry import run_agent


runner_app = typer.Typer(name="agent-sandbox-runner", help="Run a coding agent and stream its events.")


def parse_env_pairs(pairs: list[str]) -> dict[str, str]:
    """Turn ``KEY=VALUE`` strings into a dict, skipping malformed entries."""
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if sep and key:
            env[key] = value
    return env


def _emit(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


async def _run(request: RunRequest) -> int:
    exit_code = 1
    async for event in run_agent(request):
        _emit(encode_event(event))
        if isinstance(event, StatusEvent) and event.is_terminal:
            exit_code = event.exit_code if event.exit_code is not None else 1
    return exit_code


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"agent-sandbox-runner {__version__}")
        raise typer.Exit()


@runner_app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version and exit."),
    ] = False,
    log_level: Annotated[
        str,
        typer.Option("--log-level", envvar="AGENT_RUNNER_LOG_LEVEL", help="Diagnostics level (stderr)."),
    ] = "WARNING",
) -> None:
    """Agent runner: normalizes agent backends into one event stream."""
    configure_logging(log_level)


@runner_app.command()
def run(
    backend: Annotated[
        str | None,
        typer.Option("--backend", "-b", help="Backend id, e.g. cli:claude-code, sdk:anthropic, acp:kimi."),
    ] = None,
    workspace: Annotated[
        str,
        typer.Option("--workspace", "-w", help="Working directory for the agent."),
    ] = WORKSPACE_MOUNT_PATH,
    prompt: Annotated[
        str | None,
        typer.Option("--prompt", "-p", help="Prompt text; read from stdin when omitted."),
    ] = None,
    env: Annotated[
        list[str] | None,
        typer.Option("--env", "-e", help="Extra environment as KEY=VALUE (repeatable)."),
    ] = None,
) -> None:
    """Run one agent invocation, printing JSON events to stdout."""
    if not prompt:
        prompt = sys.stdin.read().strip() if not sys.stdin.isatty() else ""

    request = RunRequest(
        backend=backend or os.environ.get("AGENT_RUNNER_BACKEND") or DEFAULT_RUNNER_BACKEND,
        prompt=prompt,
        workspace=workspace,
        env=parse_env_pairs(env or []),
    )
    try:
        exit_code = asyncio.run(_run(request))
    except AgentRunnerError as e:
        _emit(encode_event(StatusEvent(status="failed", exit_code=2, message=str(e))))
        raise typer.Exit(code=2) from None
    raise typer.Exit(code=exit_code)


if __name__ == "__main__":
    runner_app()
