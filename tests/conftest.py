"""Shared fixtures and helpers for all tests.

Factories for tasks, compute targets and messages, plus a mock container
provider that behaves like a healthy, empty backend.
"""
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from agent_sandbox.core.types import (
    ComputeTarget,
    ContainerStatus,
    DirectConnection,
    Message,
    RegisteredConnection,
    Task,
    TaskStatus,
)
from agent_sandbox.sandbox.provider import (
    ContainerInfo,
    CreateContainerResult,
    ExecResult,
    HealthCheckResult,
)
from agent_sandbox.server.database import Database


class AsyncIteratorMock:
    """Mock async iterator for testing async generators.

    Usage:
        mock_stream = AsyncIteratorMock(["line 1", "line 2"])
        async for item in mock_stream:
            print(item)
    """

    def __init__(self, items: list[Any]) -> None:
        self.items = items
        self.index = 0

    def __aiter__(self) -> "AsyncIteratorMock":
        return self

    async def __anext__(self) -> Any:
        if self.index >= len(self.items):
            raise StopAsyncIteration
        item = self.items[self.index]
        self.index += 1
        return item


@pytest.fixture
def make_target() -> Callable[..., ComputeTarget]:
    """Factory for ComputeTarget instances (direct connection by default)."""

    def _make(
        id: str = "srv-1",
        user_id: str = "user-1",
        name: str = "local",
        connection: Any = None,
        **kwargs: Any,
    ) -> ComputeTarget:
        return ComputeTarget(
            id=id,
            user_id=user_id,
            name=name,
            connection=connection or DirectConnection(),
            created_at=kwargs.pop("created_at", datetime.now(UTC)),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_registered_target(make_target: Callable[..., ComputeTarget]) -> Callable[..., ComputeTarget]:
    """Factory for registered targets carrying a token."""

    def _make(id: str = "srv-reg", token: str = "agent-secret", **kwargs: Any) -> ComputeTarget:
        return make_target(
            id=id,
            name=kwargs.pop("name", "remote-box"),
            connection=RegisteredConnection(),
            token=token,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Factory for Task instances."""

    def _make(
        id: str = "task-1",
        user_id: str = "user-1",
        server_id: str | None = "srv-1",
        status: TaskStatus = TaskStatus.STOPPED,
        config: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Task:
        now = datetime.now(UTC)
        return Task(
            id=id,
            user_id=user_id,
            name=kwargs.pop("name", "Fix the tests"),
            server_id=server_id,
            status=status,
            config=config or {},
            created_at=kwargs.pop("created_at", now),
            updated_at=kwargs.pop("updated_at", now),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Factory for Message instances."""

    def _make(
        task_id: str = "task-1",
        role: str = "assistant",
        content: str = "hello",
        id: str | None = None,
        **kwargs: Any,
    ) -> Message:
        return Message(
            id=id or f"msg-{uuid4().hex[:12]}",
            task_id=task_id,
            role=role,  # type: ignore[arg-type]
            content=content,
            created_at=kwargs.pop("created_at", datetime.now(UTC)),
            **kwargs,
        )

    return _make


@pytest.fixture
def mock_provider() -> MagicMock:
    """A container provider that reports healthy and succeeds at everything."""
    provider = MagicMock()
    provider.health_check = AsyncMock(
        return_value=HealthCheckResult(healthy=True, version="27.0.1", message="Docker is running")
    )
    provider.create_container = AsyncMock(
        return_value=CreateContainerResult(container_id="ctr-1", volume_id="agent-sandbox-task-1")
    )
    provider.start_container = AsyncMock()
    provider.stop_container = AsyncMock()
    provider.remove_container = AsyncMock()
    provider.inspect_container = AsyncMock(
        return_value=ContainerInfo(container_id="ctr-1", status=ContainerStatus.RUNNING)
    )
    provider.list_containers = AsyncMock(return_value=[])
    provider.execute_command = AsyncMock(return_value=ExecResult(exit_code=0, output=""))
    provider.create_volume = AsyncMock()
    provider.list_volumes = AsyncMock(return_value=[])
    provider.delete_volume = AsyncMock()
    provider.get_volume_size = AsyncMock(return_value=0)
    provider.is_volume_in_use = AsyncMock(return_value=False)
    provider.get_logs = MagicMock(return_value=AsyncIteratorMock(["line 1", "line 2"]))
    return provider


@pytest.fixture
def session_factory(mock_provider: MagicMock) -> Callable[[ComputeTarget], Any]:
    """provider_session replacement that yields ``mock_provider``."""

    @asynccontextmanager
    async def _session(target: ComputeTarget) -> AsyncIterator[MagicMock]:
        yield mock_provider

    return _session


@pytest.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    """Connected database with the schema applied."""
    async with Database(tmp_path / "test.db") as database:
        await database.ensure_schema()
        yield database
