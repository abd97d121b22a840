"""Tool definitions for pydantic-ai agent runs inside a sandbox workspace."""
import asyncio
import contextlib
from dataclasses import dataclass
from pathlib import Path

from pydantic_ai import RunContext


MAX_COMMAND_TIMEOUT = 300  # 5 minutes max
MAX_COMMAND_SIZE = 10_000  # 10KB max command
MAX_OUTPUT_SIZE = 100_000


@dataclass
class WorkspaceContext:
    """Context for tool execution.

    Attributes:
        cwd: Workspace directory; file tools may not leave it.
    """

    cwd: str

    def __post_init__(self) -> None:
        cwd_path = Path(self.cwd)
        if not cwd_path.is_dir():
            raise ValueError(f"Working directory does not exist: {self.cwd}")
        self.cwd = str(cwd_path.resolve())

    def resolve(self, file_path: str) -> Path:
        """Resolve ``file_path`` against the workspace.

        Raises:
            ValueError: If the path escapes the workspace.
        """
        root = Path(self.cwd)
        path = (root / file_path).resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Path is outside the workspace: {file_path}")
        return path


async def run_shell_command(
    ctx: RunContext[WorkspaceContext],
    command: str,
    timeout: int = 30,
) -> str:
    """Execute a shell command in the workspace.

    Use this to run commands like ls, cat, grep, git, npm or python.

    Args:
        ctx: Run context containing the working directory.
        command: The shell command to execute.
        timeout: Maximum execution time in seconds. Defaults to 30. Capped at 300.

    Returns:
        Combined stdout and stderr, followed by the exit code when non-zero.
    """
    if len(command) > MAX_COMMAND_SIZE:
        raise ValueError(f"Command size ({len(command)} bytes) exceeds maximum ({MAX_COMMAND_SIZE} bytes)")
    if timeout <= 0:
        raise ValueError("timeout must be positive")
    timeout = min(timeout, MAX_COMMAND_TIMEOUT)

    process = await asyncio.create_subprocess_exec(
        "bash", "-lc", command,
        cwd=ctx.deps.cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        return f"Command timed out after {timeout}s"

    output = stdout.decode(errors="replace")[-MAX_OUTPUT_SIZE:]
    if process.returncode:
        output += f"\n[exit code {process.returncode}]"
    return output


async def read_file(ctx: RunContext[WorkspaceContext], file_path: str) -> str:
    """Read a text file from the workspace.

    Args:
        ctx: Run context containing the working directory.
        file_path: Path relative to the workspace.

    Returns:
        File content.
    """
    path = ctx.deps.resolve(file_path)
    return await asyncio.to_thread(path.read_text, errors="replace")


async def write_file(
    ctx: RunContext[WorkspaceContext],
    file_path: str,
    content: str,
) -> str:
    """Create or overwrite a file in the workspace.

    Args:
        ctx: Run context containing the working directory.
        file_path: Path relative to the workspace.
        content: Content to write to the file.

    Returns:
        Success message confirming the write operation.
    """
    path = ctx.deps.resolve(file_path)

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    await asyncio.to_thread(_write)
    return f"Wrote {len(content)} characters to {file_path}"
