"""Tests for shared domain types."""
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from agent_sandbox.core.constants import AgentTool
from agent_sandbox.core.types import (
    ClusterConnection,
    ComputeTarget,
    SandboxConfig,
    TaskConfig,
    TunneledConnection,
)


class TestComputeTarget:
    def test_connection_discriminated_by_kind(self):
        target = ComputeTarget.model_validate(
            {
                "id": "srv-1",
                "user_id": "user-1",
                "name": "k8s",
                "connection": {"kind": "cluster", "namespace": "ci"},
                "created_at": datetime.now(UTC),
            }
        )

        assert isinstance(target.connection, ClusterConnection)
        assert target.kind == "cluster"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            ComputeTarget.model_validate(
                {
                    "id": "srv-1",
                    "user_id": "user-1",
                    "name": "x",
                    "connection": {"kind": "serial"},
                    "created_at": datetime.now(UTC),
                }
            )

    def test_tunneled_defaults(self):
        connection = TunneledConnection(host="box", username="dev")

        assert connection.port == 22
        assert connection.auth_type == "ssh-key"
        assert connection.remote_socket_path == "/var/run/docker.sock"

    def test_tunneled_port_range(self):
        with pytest.raises(ValidationError):
            TunneledConnection(host="box", username="dev", port=70000)


class TestTaskConfig:
    def test_unknown_keys_preserved(self):
        config = TaskConfig.model_validate({"prompt": "go", "team": "infra"})

        assert config.model_dump()["team"] == "infra"

    def test_sandbox_config_defaults(self):
        assert TaskConfig().sandbox_config() == SandboxConfig()

    def test_sandbox_config_overrides(self):
        config = TaskConfig(image="python:3.12", memory_limit="4g", cpu_limit=4)

        assert config.sandbox_config() == SandboxConfig(image="python:3.12", memory_limit="4g", cpu_limit=4)

    def test_secrets_use_tool_env_var(self):
        assert TaskConfig(anthropic_api_key="sk-1").secrets(AgentTool.CLAUDE) == {"ANTHROPIC_API_KEY": "sk-1"}
        assert TaskConfig().secrets(AgentTool.OPENCODE) == {}


def test_sandbox_config_rejects_non_positive_cpu():
    with pytest.raises(ValidationError):
        SandboxConfig(cpu_limit=0)
