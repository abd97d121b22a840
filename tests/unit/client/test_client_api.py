"""Tests for AgentSandboxClient using httpx.MockTransport."""
import json

import httpx
import pytest

from agent_sandbox.client.api import (
    AgentSandboxClient,
    AgentSandboxClientError,
    AuthenticationError,
    InvalidRequestError,
    NotFoundError,
    ServerUnreachableError,
    VersionConflictError,
)
from agent_sandbox.core.types import TaskStatus


def _client(handler, **kwargs) -> AgentSandboxClient:
    return AgentSandboxClient(
        "http://agent-sandbox.test/",
        server_id=kwargs.pop("server_id", "srv-reg"),
        token=kwargs.pop("token", "agent-secret"),
        transport=httpx.MockTransport(handler),
    )


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status_code: int = 200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


class TestRequests:
    async def test_register_uses_user_token(self):
        handler = Recorder(201, {"id": "srv-9", "token": "new-secret"})

        registered = await _client(handler, server_id=None, token=None).register("user-token-1", "box", force=True)

        assert (registered.id, registered.token) == ("srv-9", "new-secret")
        assert handler.last.url.path == "/api/servers/register"
        assert handler.last.headers["Authorization"] == "Bearer user-token-1"
        assert json.loads(handler.last.content) == {"name": "box", "force": True}

    async def test_heartbeat(self):
        handler = Recorder(200, {"success": True})

        await _client(handler).heartbeat({"cpu_percent": 1.5})

        assert handler.last.method == "PUT"
        assert handler.last.url.path == "/api/servers/srv-reg/heartbeat"
        assert handler.last.headers["Authorization"] == "Bearer agent-secret"
        assert json.loads(handler.last.content) == {"stats": {"cpu_percent": 1.5}}

    async def test_poll_tasks(self):
        task = {
            "id": "task-1",
            "user_id": "user-1",
            "name": "Fix",
            "server_id": "srv-reg",
            "status": "pending",
            "config": {"prompt": "go"},
            "version": 3,
            "created_at": "2026-01-01T00:00:00Z",
            "updated_at": "2026-01-01T00:00:00Z",
        }
        handler = Recorder(200, [task])

        tasks = await _client(handler).poll_tasks()

        assert [(t.id, t.status, t.version) for t in tasks] == [("task-1", TaskStatus.PENDING, 3)]
        assert handler.last.url.path == "/api/servers/srv-reg/tasks"

    async def test_patch_task_sends_only_set_fields(self):
        handler = Recorder(200, {"success": True, "version": 4})

        version = await _client(handler).patch_task(
            "task-1", status=TaskStatus.RUNNING, expected_version=3
        )

        assert version == 4
        assert handler.last.method == "PATCH"
        assert json.loads(handler.last.content) == {"status": "running", "expected_version": 3}

    async def test_patch_task_rejects_unknown_fields_locally(self):
        handler = Recorder()

        with pytest.raises(ValueError):
            await _client(handler).patch_task("task-1", nickname="x")

        assert handler.requests == []

    async def test_server_id_required(self):
        with pytest.raises(AgentSandboxClientError, match="Register first"):
            await _client(Recorder(), server_id=None).poll_tasks()


class TestErrorMapping:
    @pytest.mark.parametrize(
        ("status_code", "body", "error_type"),
        [
            (401, {"detail": "Missing bearer token"}, AuthenticationError),
            (403, {"error": "Token does not match", "code": "FORBIDDEN"}, AuthenticationError),
            (404, {"error": "Task not found", "code": "NOT_FOUND"}, NotFoundError),
            (409, {"error": "stale", "code": "VERSION_CONFLICT"}, VersionConflictError),
            (409, {"error": "Name taken", "code": "CONFLICT"}, InvalidRequestError),
            (422, {"error": "Validation failed", "code": "VALIDATION_ERROR"}, InvalidRequestError),
        ],
    )
    async def test_status_codes(self, status_code, body, error_type):
        with pytest.raises(error_type) as exc_info:
            await _client(Recorder(status_code, body)).heartbeat()

        assert exc_info.value.code == body.get("code")

    async def test_server_error_raises_http_status_error(self):
        with pytest.raises(httpx.HTTPStatusError):
            await _client(Recorder(500, {"error": "boom"})).heartbeat()

    async def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(404, text="<html>nope</html>")

        with pytest.raises(NotFoundError, match="Not Found"):
            await _client(handler).heartbeat()

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ServerUnreachableError, match="agent-sandbox.test"):
            await _client(handler).poll_tasks()
