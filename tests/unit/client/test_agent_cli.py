"""Tests for the ``agent-sandbox agent`` commands."""
from unittest.mock import AsyncMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from agent_sandbox.client.api import ServerUnreachableError
from agent_sandbox.client.cli import agent_app
from agent_sandbox.server.models.responses import RegisterServerResponse


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    for key in ("SERVER_URL", "SERVER_ID", "TOKEN", "USER_TOKEN", "SETTINGS"):
        monkeypatch.delenv(f"AGENT_SANDBOX_AGENT_{key}", raising=False)
    monkeypatch.chdir(tmp_path)


class TestRegister:
    def test_writes_id_and_token(self, runner, tmp_path):
        config = tmp_path / "agent.yaml"
        config.write_text("poll_interval_seconds: 2\n")
        register = AsyncMock(return_value=RegisterServerResponse(id="srv-9", token="secret-9"))

        with patch("agent_sandbox.client.cli.AgentSandboxClient.register", register):
            result = runner.invoke(
                agent_app,
                ["register", "--name", "gpu-box", "--user-token", "user-token-1", "--config", str(config)],
            )

        assert result.exit_code == 0, result.output
        register.assert_awaited_once_with("user-token-1", "gpu-box", force=False)
        saved = yaml.safe_load(config.read_text())
        assert saved["server_id"] == "srv-9"
        assert saved["token"] == "secret-9"
        assert saved["poll_interval_seconds"] == 2

    def test_requires_user_token(self, runner):
        result = runner.invoke(agent_app, ["register", "--name", "box"])

        assert result.exit_code == 1
        assert "user token is required" in result.output

    def test_unreachable_server(self, runner):
        register = AsyncMock(side_effect=ServerUnreachableError("Cannot connect"))

        with patch("agent_sandbox.client.cli.AgentSandboxClient.register", register):
            result = runner.invoke(agent_app, ["register", "--user-token", "t"])

        assert result.exit_code == 1
        assert "agent-sandbox server" in result.output


class TestStart:
    def test_requires_registration(self, runner):
        result = runner.invoke(agent_app, ["start"])

        assert result.exit_code == 1
        assert "Not registered" in result.output

    def test_missing_explicit_config(self, runner, tmp_path):
        result = runner.invoke(agent_app, ["start", "--config", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_runs_agent_with_flags(self, runner):
        run_agent = AsyncMock()

        with patch("agent_sandbox.client.cli._run_agent", run_agent):
            result = runner.invoke(agent_app, ["start", "--server-id", "srv-1", "--token", "t", "--use-runner"])

        assert result.exit_code == 0, result.output
        settings = run_agent.await_args.args[0]
        assert (settings.server_id, settings.token, settings.use_runner) == ("srv-1", "t", True)
