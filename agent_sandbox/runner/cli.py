"""Direct shell invocation of an agent CLI."""

import asyncio
import contextlib
import shlex
from collections.abc import AsyncIterator, Callable

from loguru import logger

from agent_sandbox.runner.base import RunRequest, read_lines_chunked
from agent_sandbox.runner.events import RunnerEvent, StatusEvent, StderrEvent, StdoutEvent


def _claude_command(prompt: str) -> str:
    quoted = shlex.quote(prompt)
    return (
        f"command -v claude >/dev/null 2>&1 && claude -p {quoted} "
        f"|| npx -y @anthropic-ai/claude-code@latest -p {quoted}"
    )


def _opencode_command(prompt: str) -> str:
    quoted = shlex.quote(prompt)
    return (
        f"command -v opencode >/dev/null 2>&1 && opencode run -- {quoted} "
        f"|| npx -y opencode-ai@latest run -- {quoted}"
    )


CLI_AGENTS: dict[str, tuple[str, Callable[[str], str]]] = {
    "claude-code": ("Claude Code CLI", _claude_command),
    "opencode": ("OpenCode CLI", _opencode_command),
}

# Sentinel marking the end of one output stream.
_EOF = object()


class CliBackend:
    """Spawns the agent CLI under ``bash -lc`` and relays its output.

    stdout and stderr are read concurrently into one queue, so lines are
    emitted in the order they arrive.
    """

    id = "cli"

    async def run(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        agent = request.backend_suffix or "claude-code"
        yield StatusEvent(status="starting")

        if agent == "echo":
            yield StdoutEvent(data=f"{request.prompt}\n")
            yield StatusEvent(status="completed", exit_code=0)
            return

        if agent not in CLI_AGENTS:
            yield StderrEvent(data=f"Unknown CLI backend: {request.backend}\n")
            yield StatusEvent(status="failed", exit_code=2)
            return

        label, build_command = CLI_AGENTS[agent]
        yield StatusEvent(status="running", message=f"Running {label}")
        async for event in run_shell(build_command(request.prompt), request):
            yield event


async def run_shell(command: str, request: RunRequest) -> AsyncIterator[RunnerEvent]:
    """Run ``command`` in the request's workspace, streaming its output.

    Yields:
        stdout/stderr events in arrival order, then a terminal status event
        carrying the process exit code.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            "bash", "-lc", command,
            cwd=request.workspace,
            env=request.resolved_env(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error("Failed to launch agent", error=str(e))
        yield StderrEvent(data=f"{e}\n")
        yield StatusEvent(status="failed", exit_code=1)
        return

    queue: asyncio.Queue[RunnerEvent | object] = asyncio.Queue()

    async def pump(stream: asyncio.StreamReader | None, make: Callable[[str], RunnerEvent]) -> None:
        try:
            if stream is not None:
                async for line in read_lines_chunked(stream):
                    await queue.put(make(line.decode(errors="replace") + "\n"))
        finally:
            await queue.put(_EOF)

    readers = [
        asyncio.create_task(pump(process.stdout, lambda data: StdoutEvent(data=data))),
        asyncio.create_task(pump(process.stderr, lambda data: StderrEvent(data=data))),
    ]
    try:
        open_streams = len(readers)
        while open_streams:
            item = await queue.get()
            if item is _EOF:
                open_streams -= 1
                continue
            yield item  # type: ignore[misc]

        returncode = await process.wait()
    finally:
        for reader in readers:
            reader.cancel()
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    logger.debug("Agent process exited", returncode=returncode)
    yield StatusEvent(
        status="completed" if returncode == 0 else "failed",
        exit_code=returncode,
    )
