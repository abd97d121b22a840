"""Tests for TunneledDockerProvider."""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agent_sandbox.core.exceptions import TunnelError
from agent_sandbox.core.types import ContainerStatus, TunneledConnection
from agent_sandbox.sandbox.provider import ExecResult, HealthCheckResult
from agent_sandbox.sandbox.remote import Connected, Disconnected, TunneledDockerProvider


@pytest.fixture
def tunnel() -> MagicMock:
    tunnel = MagicMock()
    tunnel.connect = AsyncMock(return_value=40123)
    tunnel.disconnect = AsyncMock()
    return tunnel


@pytest.fixture
def provider(tunnel) -> TunneledDockerProvider:
    connection = TunneledConnection(host="build-box", username="dev", private_key="key")
    return TunneledDockerProvider(connection, tunnel=tunnel)


class TestTunneledDockerProvider:
    async def test_binds_docker_provider_to_tunnel_port(self, provider):
        with patch(
            "agent_sandbox.sandbox.docker.DockerContainerProvider.health_check",
            AsyncMock(return_value=HealthCheckResult(healthy=True, version="27.0.1", message="ok")),
        ):
            result = await provider.health_check()

        assert result.healthy is True
        match provider.state:
            case Connected(local_port=port, provider=docker):
                assert port == 40123
                assert docker.docker_host == "tcp://127.0.0.1:40123"
            case _:
                pytest.fail("provider should be connected")

    async def test_reuses_binding_for_same_port(self, provider, tunnel):
        first = await provider._resolve()
        second = await provider._resolve()

        assert first is second

        tunnel.connect.return_value = 40999
        third = await provider._resolve()

        assert third is not first
        assert third.docker_host == "tcp://127.0.0.1:40999"

    async def test_health_check_reports_tunnel_failure(self, provider, tunnel):
        tunnel.connect.side_effect = TunnelError("SSH connection to build-box:22 failed: timed out")

        result = await provider.health_check()

        assert result.healthy is False
        assert "timed out" in result.message

    async def test_execute_command_reports_tunnel_failure(self, provider, tunnel):
        tunnel.connect.side_effect = TunnelError("down")

        result = await provider.execute_command("ctr-1", ["ls"])

        assert result == ExecResult(exit_code=255, output="down")

    async def test_lifecycle_calls_raise_tunnel_failure(self, provider, tunnel):
        tunnel.connect.side_effect = TunnelError("down")

        with pytest.raises(TunnelError):
            await provider.start_container("ctr-1")

    async def test_close_disconnects(self, provider, tunnel):
        await provider._resolve()

        await provider.close()

        tunnel.disconnect.assert_awaited_once()
        assert isinstance(provider.state, Disconnected)


class TestLifecycleThroughTunnel:
    @pytest.fixture
    def docker(self):
        mock = AsyncMock()
        with patch("agent_sandbox.sandbox.docker.DockerContainerProvider._docker", mock):
            yield mock

    async def test_start_is_idempotent(self, provider, docker, tunnel):
        docker.return_value = (0, json.dumps({"State": {"Running": True}}), "")

        await provider.start_container("ctr-1")
        await provider.start_container("ctr-1")

        assert [call.args[0] for call in docker.await_args_list] == ["inspect", "inspect"]
        assert tunnel.connect.await_count == 2

    async def test_stop_is_idempotent(self, provider, docker):
        docker.return_value = (0, json.dumps({"State": {"Running": False}}), "")

        await provider.stop_container("ctr-1")
        await provider.stop_container("ctr-1")

        assert [call.args[0] for call in docker.await_args_list] == ["inspect", "inspect"]

    async def test_inspect_after_remove_reports_missing(self, provider, docker):
        docker.side_effect = [
            (0, json.dumps({"Id": "ctr-1", "State": {"Running": False}, "Config": {"Labels": {}}}), ""),
            (0, "ctr-1", ""),
            (1, "", "Error: No such container: ctr-1"),
        ]

        await provider.remove_container("ctr-1")
        info = await provider.inspect_container("ctr-1")

        assert (info.status, info.exists) == (ContainerStatus.STOPPED, False)
