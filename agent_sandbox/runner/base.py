import asyncio
import os
from collections.abc import AsyncIterator
from typing import Protocol

from pydantic import BaseModel, Field

from agent_sandbox.core.constants import DEFAULT_RUNNER_BACKEND, WORKSPACE_MOUNT_PATH
from agent_sandbox.runner.events import RunnerEvent


class RunRequest(BaseModel):
    """One agent invocation.

    Attributes:
        backend: Backend identifier such as ``cli:claude-code`` or ``acp:kimi``.
        prompt: Task prompt.
        workspace: Working directory for the agent process.
        env: Extra environment, layered over the runner's own.
    """

    backend: str = DEFAULT_RUNNER_BACKEND
    prompt: str
    workspace: str = WORKSPACE_MOUNT_PATH
    env: dict[str, str] = Field(default_factory=dict)

    @property
    def backend_prefix(self) -> str:
        return self.backend.partition(":")[0]

    @property
    def backend_suffix(self) -> str:
        return self.backend.partition(":")[2].strip()

    def resolved_env(self) -> dict[str, str]:
        """Process environment with the request's variables applied."""
        return {**os.environ, **self.env}


class RunnerBackend(Protocol):
    """Runs an agent and reports what it does as events.

    Implementations yield events in the order the agent produced them and
    finish with a terminal ``StatusEvent`` carrying the exit code.
    """

    id: str

    def run(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        """Run the agent for ``request``.

        Args:
            request: The invocation to perform.

        Yields:
            Runner events, ending with a completed/failed status.
        """
        ...


async def read_lines_chunked(
    stream: asyncio.StreamReader,
    chunk_size: int = 64 * 1024,  # 64KB chunks
) -> AsyncIterator[bytes]:
    """Read lines from a stream using chunks to handle arbitrarily large lines.

    This avoids the LimitOverrunError that occurs with readline() when a single
    line exceeds the buffer limit.

    Args:
        stream: The asyncio StreamReader to read from.
        chunk_size: Size of chunks to read at a time.

    Yields:
        Complete lines as bytes (without trailing newline).
    """
    buffer = b""
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            if buffer:
                yield buffer
            break

        buffer += chunk
        while b"\n" in buffer:
            line, buffer = buffer.split(b"\n", 1)
            yield line
