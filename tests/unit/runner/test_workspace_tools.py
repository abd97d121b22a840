"""Tests for the workspace tools exposed to SDK agent runs."""
from types import SimpleNamespace

import pytest

from agent_sandbox.runner.tools import (
    MAX_COMMAND_SIZE,
    WorkspaceContext,
    read_file,
    run_shell_command,
    write_file,
)


@pytest.fixture
def ctx(tmp_path):
    return SimpleNamespace(deps=WorkspaceContext(cwd=str(tmp_path)))


class TestWorkspaceContext:
    def test_missing_directory(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            WorkspaceContext(cwd=str(tmp_path / "nope"))

    def test_resolve_rejects_escape(self, ctx):
        with pytest.raises(ValueError, match="outside the workspace"):
            ctx.deps.resolve("../etc/passwd")

    def test_resolve_inside(self, ctx, tmp_path):
        assert ctx.deps.resolve("src/app.py") == tmp_path.resolve() / "src" / "app.py"


class TestTools:
    async def test_write_then_read(self, ctx, tmp_path):
        message = await write_file(ctx, "notes/todo.txt", "ship it")

        assert message == "Wrote 7 characters to notes/todo.txt"
        assert (tmp_path / "notes" / "todo.txt").read_text() == "ship it"
        assert await read_file(ctx, "notes/todo.txt") == "ship it"

    async def test_shell_command_reports_exit_code(self, ctx):
        output = await run_shell_command(ctx, "echo out; echo err >&2; exit 4")

        assert output == "out\nerr\n\n[exit code 4]"

    async def test_shell_command_timeout(self, ctx):
        output = await run_shell_command(ctx, "sleep 5", timeout=1)

        assert output == "Command timed out after 1s"

    async def test_shell_command_size_limit(self, ctx):
        with pytest.raises(ValueError, match="exceeds maximum"):
            await run_shell_command(ctx, "x" * (MAX_COMMAND_SIZE + 1))
