"""SSH tunnel exposing a remote docker socket on a local TCP port.

One paramiko session per tunnel. Each accepted local connection becomes a
new session channel running ``docker system dial-stdio`` against the remote
socket, with bytes piped both ways. Unexpected session loss triggers a
reconnect loop with a fixed backoff sequence.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import shlex
from collections.abc import Sequence
from enum import StrEnum

import paramiko
from loguru import logger

from agent_sandbox.core.constants import (
    SSH_CONNECT_TIMEOUT_SECONDS,
    SSH_KEEPALIVE_INTERVAL_SECONDS,
    SSH_RECONNECT_DELAYS,
)
from agent_sandbox.core.exceptions import TunnelError
from agent_sandbox.core.types import TunneledConnection


_PIPE_CHUNK_SIZE = 64 * 1024
_MONITOR_INTERVAL_SECONDS = 1.0

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


class TunnelState(StrEnum):
    """Lifecycle of an SSH tunnel."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


def load_private_key(text: str, passphrase: str | None = None) -> paramiko.PKey:
    """Load a PEM/OpenSSH private key of any supported type.

    Raises:
        TunnelError: If no key type accepts the material.
    """
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.SSHException:
            continue
    raise TunnelError("Unsupported or invalid SSH private key")


class SSHTunnel:
    """Forwards a local TCP port to a docker socket on a remote host.

    State machine: ``disconnected -> connecting -> connected``; an unexpected
    session loss moves to ``reconnecting`` and retries with the delays in
    ``reconnect_delays`` (the last entry repeats). A successful reconnect
    resets the backoff. ``disconnect()`` moves to ``closed`` for good.

    The local listener is created once, after the first session is ready, and
    keeps its port across reconnects. Connections accepted while the session
    is down are closed immediately.

    Each forwarded connection runs ``docker system dial-stdio`` on the remote
    host over an exec channel instead of opening the socket directly, because
    paramiko has no streamlocal (unix socket) forwarding. The remote host
    therefore needs the docker CLI on PATH, not only the daemon.

    Args:
        connection: SSH host, credentials and remote socket path.
        reconnect_delays: Non-decreasing backoff delays in seconds.
        keepalive_interval: Seconds between SSH keepalive packets.
        connect_timeout: Seconds allowed for TCP connect and SSH handshake.
    """

    def __init__(
        self,
        connection: TunneledConnection,
        reconnect_delays: Sequence[float] = SSH_RECONNECT_DELAYS,
        keepalive_interval: int = SSH_KEEPALIVE_INTERVAL_SECONDS,
        connect_timeout: float = SSH_CONNECT_TIMEOUT_SECONDS,
    ) -> None:
        if not reconnect_delays:
            raise ValueError("reconnect_delays must not be empty")
        self.connection = connection
        self.reconnect_delays = tuple(reconnect_delays)
        self.keepalive_interval = keepalive_interval
        self.connect_timeout = connect_timeout

        self.state = TunnelState.DISCONNECTED
        self.reconnect_attempt = 0
        self._client: paramiko.SSHClient | None = None
        self._server: asyncio.Server | None = None
        self._local_port: int | None = None
        self._closed = False
        self._connect_lock = asyncio.Lock()
        self._monitor_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def local_port(self) -> int | None:
        """Local TCP port of the listener, once connected."""
        return self._local_port

    @property
    def is_connected(self) -> bool:
        return self.state == TunnelState.CONNECTED

    def next_reconnect_delay(self) -> float:
        """Delay before the next reconnect attempt, capped at the last configured delay."""
        index = min(self.reconnect_attempt, len(self.reconnect_delays) - 1)
        return self.reconnect_delays[index]

    async def connect(self) -> int:
        """Open the SSH session and the local listener.

        Returns:
            Local TCP port forwarding to the remote docker socket.

        Raises:
            TunnelError: If the tunnel was disconnected or the session fails.
        """
        async with self._connect_lock:
            if self._closed:
                raise TunnelError("Tunnel has been disconnected")
            if self.state == TunnelState.CONNECTED and self._local_port is not None:
                return self._local_port
            await self._establish()
            assert self._local_port is not None
            return self._local_port

    async def _establish(self) -> None:
        """Open a fresh session; create the listener on first success."""
        previous = self.state
        self.state = TunnelState.CONNECTING
        try:
            client = await asyncio.to_thread(self._open_session)
        except TunnelError:
            self.state = previous if previous == TunnelState.RECONNECTING else TunnelState.DISCONNECTED
            raise

        if self._closed:
            client.close()
            raise TunnelError("Tunnel has been disconnected")

        self._client = client
        if self._server is None:
            self._server = await asyncio.start_server(self._handle_client, "127.0.0.1", 0)
            self._local_port = self._server.sockets[0].getsockname()[1]

        self.state = TunnelState.CONNECTED
        self.reconnect_attempt = 0
        self._monitor_task = asyncio.create_task(self._monitor(client))
        logger.info(
            "SSH tunnel connected",
            host=self.connection.host,
            local_port=self._local_port,
            remote_socket=self.connection.remote_socket_path,
        )

    def _open_session(self) -> paramiko.SSHClient:
        """Blocking: connect and authenticate one SSH client."""
        pkey: paramiko.PKey | None = None
        if self.connection.auth_type == "ssh-key":
            if not self.connection.private_key:
                raise TunnelError("ssh-key authentication requires a private key")
            pkey = load_private_key(self.connection.private_key, self.connection.passphrase)

        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.connection.host,
                port=self.connection.port,
                username=self.connection.username,
                pkey=pkey,
                allow_agent=self.connection.auth_type == "ssh-agent",
                look_for_keys=False,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TunnelError(
                f"SSH connection to {self.connection.host}:{self.connection.port} failed: {e}"
            ) from e

        transport = client.get_transport()
        if transport is None:
            client.close()
            raise TunnelError("SSH transport not available after connect")
        transport.set_keepalive(self.keepalive_interval)
        return client

    async def _monitor(self, client: paramiko.SSHClient) -> None:
        """Watch the session; hand off to the reconnect loop when it drops."""
        while not self._closed and self._client is client:
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                self._on_session_lost()
                return
            await asyncio.sleep(_MONITOR_INTERVAL_SECONDS)

    def _on_session_lost(self) -> None:
        if self._closed or self.state == TunnelState.RECONNECTING:
            return
        logger.warning("SSH session lost", host=self.connection.host)
        if self._client is not None:
            self._client.close()
            self._client = None
        self.state = TunnelState.RECONNECTING
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Retry until connected or disconnected, following the backoff sequence."""
        while not self._closed:
            delay = self.next_reconnect_delay()
            self.reconnect_attempt += 1
            logger.info(
                "Reconnecting SSH tunnel",
                host=self.connection.host,
                attempt=self.reconnect_attempt,
                delay=delay,
            )
            await asyncio.sleep(delay)
            if self._closed:
                return
            try:
                async with self._connect_lock:
                    if self._closed:
                        return
                    await self._establish()
                return
            except TunnelError as e:
                self.state = TunnelState.RECONNECTING
                logger.warning("SSH reconnect failed", host=self.connection.host, error=str(e))

    async def disconnect(self) -> None:
        """Close the tunnel permanently. Safe to call in any state."""
        self._closed = True
        self.state = TunnelState.CLOSED

        current = asyncio.current_task()
        for task in (self._reconnect_task, self._monitor_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reconnect_task = None
        self._monitor_task = None

        if self._server is not None:
            self._server.close()
            self._server = None
        if self._client is not None:
            self._client.close()
            self._client = None
        self._local_port = None
        logger.info("SSH tunnel closed", host=self.connection.host)

    def _open_channel(self, transport: paramiko.Transport) -> paramiko.Channel:
        """Blocking: open a channel bridged to the remote docker socket."""
        channel = transport.open_session(timeout=self.connect_timeout)
        socket_url = shlex.quote(f"unix://{self.connection.remote_socket_path}")
        channel.exec_command(f"DOCKER_HOST={socket_url} docker system dial-stdio")
        return channel

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Forward one local connection over a new channel."""
        client = self._client
        transport = client.get_transport() if client is not None else None
        if self.state != TunnelState.CONNECTED or transport is None or not transport.is_active():
            writer.close()
            return

        try:
            channel = await asyncio.to_thread(self._open_channel, transport)
        except (paramiko.SSHException, OSError) as e:
            logger.warning("Failed to open SSH channel", host=self.connection.host, error=str(e))
            writer.close()
            return

        await pipe_streams(reader, writer, channel)


async def pipe_streams(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    channel: paramiko.Channel,
) -> None:
    """Copy bytes between a local stream and an SSH channel until either side closes.

    Whichever direction finishes first tears down both ends.
    """

    async def local_to_remote() -> None:
        while True:
            data = await reader.read(_PIPE_CHUNK_SIZE)
            if not data:
                return
            await asyncio.to_thread(channel.sendall, data)

    async def remote_to_local() -> None:
        while True:
            data = await asyncio.to_thread(channel.recv, _PIPE_CHUNK_SIZE)
            if not data:
                return
            writer.write(data)
            await writer.drain()

    tasks = [
        asyncio.create_task(local_to_remote()),
        asyncio.create_task(remote_to_local()),
    ]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        channel.close()
        writer.close()
        for task in tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.debug("Tunnel stream closed with error", error=str(result))
