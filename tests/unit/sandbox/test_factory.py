"""Tests for resolving connections to container providers."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agent_sandbox.core.exceptions import ProviderResolutionError
from agent_sandbox.core.types import (
    ClusterConnection,
    DirectConnection,
    RegisteredConnection,
    TunneledConnection,
)
from agent_sandbox.sandbox.docker import DockerContainerProvider
from agent_sandbox.sandbox.factory import (
    close_provider,
    create_provider,
    is_loopback_host,
    provider_for_connection,
    provider_session,
)
from agent_sandbox.sandbox.remote import TunneledDockerProvider


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("localhost", True),
        ("LOCALHOST", True),
        ("127.0.0.1", True),
        ("127.8.9.10", True),
        ("::1", True),
        ("[::1]", True),
        ("10.0.0.5", False),
        ("build-box.internal", False),
    ],
)
def test_is_loopback_host(host, expected):
    assert is_loopback_host(host) is expected


class TestProviderForConnection:
    def test_direct(self):
        provider = provider_for_connection(DirectConnection(socket_path="/run/docker.sock"))

        assert isinstance(provider, DockerContainerProvider)
        assert provider.docker_host == "unix:///run/docker.sock"

    def test_tunneled_loopback_short_circuits_to_local_socket(self):
        provider = provider_for_connection(TunneledConnection(host="127.0.0.1", username="dev"))

        assert isinstance(provider, DockerContainerProvider)
        assert provider.docker_host == "unix:///var/run/docker.sock"

    def test_tunneled_remote(self):
        connection = TunneledConnection(host="10.0.0.5", username="dev", private_key="key")

        provider = provider_for_connection(connection)

        assert isinstance(provider, TunneledDockerProvider)
        assert provider.connection == connection

    def test_cluster(self):
        connection = ClusterConnection(namespace="sandboxes")
        with patch("agent_sandbox.sandbox.factory.KubernetesContainerProvider") as k8s:
            provider = provider_for_connection(connection)

        k8s.assert_called_once_with(connection)
        assert provider is k8s.return_value

    def test_registered_has_no_provider(self):
        with pytest.raises(ProviderResolutionError):
            provider_for_connection(RegisteredConnection())


class TestCreateProvider:
    def test_each_call_returns_new_instance(self, make_target):
        target = make_target()

        assert create_provider(target) is not create_provider(target)

    def test_registered_error_names_target(self, make_registered_target):
        with pytest.raises(ProviderResolutionError, match="srv-reg"):
            create_provider(make_registered_target())


class TestProviderSession:
    async def test_closes_provider_on_exit(self, make_target):
        provider = MagicMock()
        provider.close = AsyncMock()
        with patch("agent_sandbox.sandbox.factory.create_provider", return_value=provider):
            async with provider_session(make_target()) as session:
                assert session is provider

        provider.close.assert_awaited_once()

    async def test_closes_provider_on_error(self, make_target):
        provider = MagicMock()
        provider.close = AsyncMock()
        with patch("agent_sandbox.sandbox.factory.create_provider", return_value=provider):
            with pytest.raises(RuntimeError):
                async with provider_session(make_target()):
                    raise RuntimeError("boom")

        provider.close.assert_awaited_once()

    async def test_close_provider_without_close_method(self):
        await close_provider(DockerContainerProvider())
