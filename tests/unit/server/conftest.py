"""Fixtures for API tests: an app bound to a real SQLite database."""
from collections.abc import AsyncIterator, Callable, Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi import FastAPI

from agent_sandbox.core.types import ComputeTarget, Task
from agent_sandbox.server.config import ServerConfig
from agent_sandbox.server.database import Database, MessageRepository, ServerRepository, TaskRepository
from agent_sandbox.server.dependencies import (
    clear_config,
    clear_database,
    get_inspect_service,
    get_sandbox_service,
    set_config,
    set_database,
)
from agent_sandbox.server.main import create_app
from agent_sandbox.server.services.inspect import InspectService
from agent_sandbox.server.services.sandbox import SandboxService


USER_TOKEN = "user-token-1"
OTHER_USER_TOKEN = "user-token-2"


@pytest.fixture
def server_config(tmp_path: Path) -> ServerConfig:
    return ServerConfig(
        database_path=tmp_path / "test.db",
        api_tokens={USER_TOKEN: "user-1", OTHER_USER_TOKEN: "user-2"},
        prompt_stream_ping_seconds=0.01,
        prompt_stream_poll_seconds=0.01,
    )


@pytest.fixture
def app(db: Database, server_config: ServerConfig, session_factory: Any) -> Iterator[FastAPI]:
    """App with module-level dependencies set, bypassing the lifespan."""
    set_database(db)
    set_config(server_config)
    application = create_app()
    application.dependency_overrides[get_sandbox_service] = lambda: SandboxService(
        ServerRepository(db),
        TaskRepository(db),
        MessageRepository(db),
        session_factory=session_factory,
    )
    application.dependency_overrides[get_inspect_service] = lambda: InspectService(
        TaskRepository(db),
        ServerRepository(db),
        result_ttl_seconds=server_config.inspect_result_ttl_seconds,
        session_factory=session_factory,
    )
    yield application
    clear_database()
    clear_config()


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {USER_TOKEN}"}


@pytest.fixture
def agent_headers() -> dict[str, str]:
    return {"Authorization": "Bearer agent-secret"}


@pytest.fixture
def seed(db: Database) -> Callable[..., Any]:
    """Insert targets and tasks directly through the repositories."""

    async def _seed(*records: ComputeTarget | Task) -> None:
        for record in records:
            if isinstance(record, ComputeTarget):
                await ServerRepository(db).create(record)
            else:
                await TaskRepository(db).create(record)

    return _seed
