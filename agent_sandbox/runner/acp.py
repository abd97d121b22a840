"""Agent Client Protocol session with an external agent process.

The runner acts as the ACP client: it speaks JSON-RPC 2.0 over the agent's
stdin/stdout, one message per line. Session updates become runner events
and permission requests become prompts.
"""

import asyncio
import contextlib
import json
import shlex
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any

from loguru import logger

from agent_sandbox.core.constants import ACP_AGENT_ARGS, ACP_AGENTS
from agent_sandbox.runner.base import RunRequest, read_lines_chunked
from agent_sandbox.runner.events import (
    PromptAnsweredEvent,
    PromptEvent,
    RunnerEvent,
    StatusEvent,
    StderrEvent,
    StdoutEvent,
    ToolCallEvent,
)


ACP_PROTOCOL_VERSION = 1
JSONRPC_METHOD_NOT_FOUND = -32601
SHUTDOWN_TIMEOUT_SECONDS = 5.0

# Chooses an optionId for a permission request, or None to cancel it.
PermissionResponder = Callable[[PromptEvent, list[dict[str, Any]]], Awaitable[str | None]]


class AcpError(Exception):
    """Raised when the agent answers a request with a JSON-RPC error."""

    def __init__(self, method: str, error: Mapping[str, Any]):
        self.message = str(error.get("message", "unknown error"))
        super().__init__(f"{method} failed: {self.message}")
        self.method = method
        self.code = error.get("code")


async def allow_first(prompt: PromptEvent, options: list[dict[str, Any]]) -> str | None:
    """Default responder: pick the first ``allow_*`` option."""
    for option in options:
        if str(option.get("kind", "")).startswith("allow"):
            return str(option.get("optionId"))
    return None


def parse_args(raw: str | None) -> list[str] | None:
    """Parse ``AGENT_RUNNER_ACP_ARGS``: a JSON string array or whitespace-separated words."""
    if not raw or not raw.strip():
        return None
    text = raw.strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            args = [item for item in parsed if isinstance(item, str)]
            return args or None
    return shlex.split(text) or None


def resolve_command(request: RunRequest, env: Mapping[str, str]) -> tuple[str, list[str]] | None:
    """Executable and arguments for the requested agent, or None if unspecified."""
    agent = request.backend_suffix
    override = env.get("AGENT_RUNNER_ACP_COMMAND", "").strip()
    args = parse_args(env.get("AGENT_RUNNER_ACP_ARGS"))
    if override:
        return override, args or []
    if not agent:
        return None
    command = ACP_AGENTS[agent][0] if agent in ACP_AGENTS else agent
    return command, args if args is not None else list(ACP_AGENT_ARGS.get(agent, []))


class AcpConnection:
    """JSON-RPC 2.0 peer over a subprocess's stdio.

    Responses resolve pending requests. Agent-initiated requests and
    notifications are handed to ``on_request`` / ``on_notification``.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_notification: Callable[[str, dict[str, Any]], None],
        on_request: Callable[[str, dict[str, Any]], Awaitable[Any]],
    ) -> None:
        self.process = process
        self.on_notification = on_notification
        self.on_request = on_request
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._handlers: set[asyncio.Task[None]] = set()
        self._reader: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop())

    async def _send(self, message: dict[str, Any]) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise ConnectionError("Agent stdin is closed")
        async with self._write_lock:
            stdin.write((json.dumps({"jsonrpc": "2.0", **message}) + "\n").encode())
            await stdin.drain()

    async def request(self, method: str, params: dict[str, Any]) -> Any:
        """Send a request and wait for its result.

        Raises:
            AcpError: If the agent answers with an error.
            ConnectionError: If the agent exits first.
        """
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"id": request_id, "method": method, "params": params})
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self.process.stdout is not None
        try:
            async for raw in read_lines_chunked(self.process.stdout):
                line = raw.decode(errors="replace").strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON agent output", line=line[:200])
                    continue
                if isinstance(message, dict):
                    self._dispatch(message)
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("Agent process closed its output"))

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method is None:
            future = self._pending.get(message.get("id"))  # type: ignore[arg-type]
            if future is None or future.done():
                return
            if "error" in message:
                future.set_exception(AcpError(f"request {message.get('id')}", message["error"]))
            else:
                future.set_result(message.get("result"))
            return

        params = message.get("params") or {}
        if "id" not in message:
            self.on_notification(method, params)
            return
        task = asyncio.create_task(self._answer(message["id"], method, params))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def _answer(self, request_id: Any, method: str, params: dict[str, Any]) -> None:
        try:
            result = await self.on_request(method, params)
        except AcpError as e:
            await self._send({"id": request_id, "error": {"code": e.code, "message": e.message}})
            return
        await self._send({"id": request_id, "result": result})

    async def close(self) -> None:
        """Close stdin and wait for the agent to exit, killing it if it lingers."""
        if self.process.stdin is not None and not self.process.stdin.is_closing():
            self.process.stdin.close()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=SHUTDOWN_TIMEOUT_SECONDS)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                self.process.kill()
            await self.process.wait()
        for task in [self._reader, *self._handlers]:
            if task is not None and not task.done():
                task.cancel()


async def mock_stream(prompt: str) -> AsyncIterator[RunnerEvent]:
    """Deterministic stand-in for an agent session."""
    yield ToolCallEvent(name="acp.mockTool", input={"prompt": prompt})
    words = f"ACP mock response: {prompt}".split(" ")
    for index, word in enumerate(words):
        yield StdoutEvent(data=word + ("\n" if index == len(words) - 1 else " "))


class AcpBackend:
    """Drives one ACP session per run.

    Args:
        responder: Answers permission requests; defaults to the first
            ``allow_*`` option.
    """

    id = "acp"

    def __init__(self, responder: PermissionResponder = allow_first) -> None:
        self.responder = responder

    async def run(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        env = request.resolved_env()
        resolved = resolve_command(request, env)
        if resolved is None:
            yield StderrEvent(data="ACP backend requires a command\n")
            yield StatusEvent(status="failed", exit_code=2)
            return
        command, args = resolved

        yield StatusEvent(status="starting")
        yield StatusEvent(status="running", message=f"Streaming ACP response ({command})")

        if env.get("AGENT_RUNNER_ACP_MOCK") == "1":
            async for event in mock_stream(request.prompt):
                yield event
            yield StatusEvent(status="completed", exit_code=0)
            return

        try:
            process = await asyncio.create_subprocess_exec(
                command, *args,
                cwd=request.workspace,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            yield StderrEvent(data=f"Failed to start {command}: {e}\n")
            yield StatusEvent(status="failed", exit_code=2)
            return

        queue: asyncio.Queue[RunnerEvent] = asyncio.Queue()
        session = _Session(queue, self.responder)
        connection = AcpConnection(process, session.on_notification, session.on_request)
        connection.start()
        stderr_task = asyncio.create_task(_pump_stderr(process, queue))

        prompt_task = asyncio.create_task(
            self._converse(connection, request, env.get("AGENT_RUNNER_ACP_AUTH_METHOD", "").strip())
        )
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({getter, prompt_task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break

            # Updates that arrived alongside the final response.
            await asyncio.sleep(0)
            while not queue.empty():
                yield queue.get_nowait()

            try:
                stop_reason = prompt_task.result()
            except (AcpError, ConnectionError) as e:
                logger.warning("ACP session failed", command=command, error=str(e))
                yield StderrEvent(data=f"{e}\n")
                yield StatusEvent(status="failed", exit_code=1)
                return
            yield StatusEvent(status="completed", exit_code=0, message=stop_reason)
        finally:
            if not prompt_task.done():
                prompt_task.cancel()
            await connection.close()
            stderr_task.cancel()

    async def _converse(self, connection: AcpConnection, request: RunRequest, auth_method: str) -> str | None:
        """initialize, authenticate, session/new, session/prompt.

        Returns:
            The prompt turn's stop reason.
        """
        await connection.request(
            "initialize",
            {
                "protocolVersion": ACP_PROTOCOL_VERSION,
                "clientCapabilities": {
                    "fs": {"readTextFile": False, "writeTextFile": False},
                    "terminal": False,
                },
            },
        )
        if auth_method:
            await connection.request("authenticate", {"methodId": auth_method})
        session = await connection.request("session/new", {"cwd": request.workspace, "mcpServers": []})
        session_id = (session or {}).get("sessionId")
        result = await connection.request(
            "session/prompt",
            {"sessionId": session_id, "prompt": [{"type": "text", "text": request.prompt}]},
        )
        return (result or {}).get("stopReason")


class _Session:
    """Translates one session's agent messages into runner events."""

    def __init__(self, queue: asyncio.Queue[RunnerEvent], responder: PermissionResponder) -> None:
        self.queue = queue
        self.responder = responder

    def on_notification(self, method: str, params: dict[str, Any]) -> None:
        if method != "session/update":
            logger.debug("Ignoring ACP notification", method=method)
            return
        update = params.get("update") or {}
        kind = update.get("sessionUpdate")
        if kind == "agent_message_chunk":
            content = update.get("content") or {}
            if content.get("type") == "text" and content.get("text"):
                self.queue.put_nowait(StdoutEvent(data=content["text"]))
        elif kind == "tool_call":
            self.queue.put_nowait(
                ToolCallEvent(
                    id=update.get("toolCallId") or str(uuid.uuid4()),
                    name=update.get("title") or update.get("kind") or "tool",
                    input=update.get("rawInput") or {},
                )
            )

    async def on_request(self, method: str, params: dict[str, Any]) -> Any:
        if method != "session/request_permission":
            raise AcpError(method, {"code": JSONRPC_METHOD_NOT_FOUND, "message": f"Method not found: {method}"})

        tool_call = params.get("toolCall") or {}
        raw_options = [option for option in params.get("options") or [] if isinstance(option, dict)]
        prompt = PromptEvent(
            id=tool_call.get("toolCallId") or str(uuid.uuid4()),
            question=tool_call.get("title") or "Permission requested",
            options=raw_options,
        )
        await self.queue.put(prompt)

        option_id = await self.responder(prompt, raw_options)
        await self.queue.put(PromptAnsweredEvent(id=prompt.id, option_id=option_id))
        if option_id is None:
            return {"outcome": {"outcome": "cancelled"}}
        return {"outcome": {"outcome": "selected", "optionId": option_id}}


async def _pump_stderr(process: asyncio.subprocess.Process, queue: asyncio.Queue[RunnerEvent]) -> None:
    if process.stderr is None:
        return
    async for line in read_lines_chunked(process.stderr):
        await queue.put(StderrEvent(data=line.decode(errors="replace") + "\n"))
