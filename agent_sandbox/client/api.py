"""REST API client used by registered agents."""
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from pydantic import TypeAdapter

from agent_sandbox.core.types import Task, TaskStatus
from agent_sandbox.server.models.requests import TaskPatchRequest
from agent_sandbox.server.models.responses import RegisterServerResponse, TaskPatchResponse


_TASK_LIST = TypeAdapter(list[Task])


class AgentSandboxClientError(Exception):
    """Base exception for API client errors.

    Attributes:
        code: Machine-readable error code from the server, if any.
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class ServerUnreachableError(AgentSandboxClientError):
    """Raised when server cannot be reached."""

    pass


class AuthenticationError(AgentSandboxClientError):
    """Raised when the server rejects the token (401/403)."""

    pass


class NotFoundError(AgentSandboxClientError):
    """Raised when the target or task is unknown (404)."""

    pass


class VersionConflictError(AgentSandboxClientError):
    """Raised when a task update carried a stale version (409 VERSION_CONFLICT)."""

    pass


class InvalidRequestError(AgentSandboxClientError):
    """Raised when request validation fails (400/422) or another conflict occurs."""

    pass


def _raise_for_error(response: httpx.Response) -> None:
    """Map an error response to a client exception.

    Raises:
        AuthenticationError: 401 and 403.
        NotFoundError: 404.
        VersionConflictError: 409 with code VERSION_CONFLICT.
        InvalidRequestError: 400, 422 and other 409s.
        httpx.HTTPStatusError: For other non-2xx status codes.
    """
    if response.is_success:
        return
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("error") or body.get("detail") or response.reason_phrase
    code = body.get("code")

    if response.status_code in (401, 403):
        raise AuthenticationError(str(message), code=code)
    if response.status_code == 404:
        raise NotFoundError(str(message), code=code)
    if response.status_code == 409 and code == "VERSION_CONFLICT":
        raise VersionConflictError(str(message), code=code)
    if response.status_code in (400, 409, 422):
        raise InvalidRequestError(f"Invalid request: {message}", code=code)
    response.raise_for_status()


class AgentSandboxClient:
    """HTTP client for the registered-agent surface of the agent-sandbox API.

    Example:
        >>> client = AgentSandboxClient("http://127.0.0.1:8430", server_id, token)
        >>> await client.heartbeat({"cpu_percent": 3.5})
        >>> for task in await client.poll_tasks():
        ...     await client.patch_task(task.id, status="running", expected_version=task.version)
    """

    def __init__(
        self,
        base_url: str,
        server_id: str | None = None,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize API client.

        Args:
            base_url: Base URL of the agent-sandbox server.
            server_id: Registered target id.
            token: Per-target token.
            timeout: Request timeout in seconds.
            transport: Custom httpx transport (tests).
        """
        self.base_url = base_url.rstrip("/")
        self.server_id = server_id
        self._token = token
        self._timeout = httpx.Timeout(timeout, connect=5.0)
        self._transport = transport

    @asynccontextmanager
    async def _http_client(self, token: str | None = None) -> AsyncIterator[httpx.AsyncClient]:
        """HTTP client with the bearer token set and connection errors mapped.

        Raises:
            ServerUnreachableError: If server cannot be reached.
        """
        bearer = token or self._token
        headers = {"Authorization": f"Bearer {bearer}"} if bearer else {}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                yield client
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise ServerUnreachableError(
                f"Cannot connect to agent-sandbox server at {self.base_url}. "
                f"Is the server running? Try: agent-sandbox server"
            ) from e

    def _server_path(self, suffix: str) -> str:
        if not self.server_id:
            raise AgentSandboxClientError("No server id configured. Register first.")
        return f"/api/servers/{self.server_id}{suffix}"

    async def register(self, user_token: str, name: str, force: bool = False) -> RegisterServerResponse:
        """Register this host as a compute target.

        Args:
            user_token: The user's API token.
            name: Display name of the target.
            force: Rotate the token if the name is already registered.

        Returns:
            The target id and its token.
        """
        async with self._http_client(token=user_token) as client:
            response = await client.post(
                "/api/servers/register", json={"name": name, "force": force}
            )
            _raise_for_error(response)
        return RegisterServerResponse.model_validate(response.json())

    async def heartbeat(self, stats: dict[str, Any] | None = None) -> None:
        """Report liveness and host stats."""
        async with self._http_client() as client:
            response = await client.put(self._server_path("/heartbeat"), json={"stats": stats})
            _raise_for_error(response)

    async def poll_tasks(self) -> list[Task]:
        """Tasks waiting for this host: pending ones and pending inspect requests."""
        async with self._http_client() as client:
            response = await client.get(self._server_path("/tasks"))
            _raise_for_error(response)
        return _TASK_LIST.validate_python(response.json())

    async def patch_task(
        self,
        task_id: str,
        status: TaskStatus | None = None,
        **fields: Any,
    ) -> int:
        """Send a partial task update.

        Args:
            task_id: Task to update.
            status: New status.
            fields: Other TaskPatchRequest fields (container_id, config,
                output, exit_code, expected_version, ...).

        Returns:
            The task's version after the update.

        Raises:
            VersionConflictError: If ``expected_version`` was stale.
        """
        body = TaskPatchRequest(status=status, **fields)
        async with self._http_client() as client:
            response = await client.patch(
                self._server_path(f"/tasks/{task_id}"),
                content=body.model_dump_json(exclude_none=True),
                headers={"Content-Type": "application/json"},
            )
            _raise_for_error(response)
        return TaskPatchResponse.model_validate(response.json()).version
