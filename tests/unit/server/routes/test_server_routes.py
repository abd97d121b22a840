"""Tests for compute target routes and the registered-agent surface."""
import pytest

from agent_sandbox.core.types import TargetStatus, TaskStatus
from agent_sandbox.sandbox.provider import HealthCheckResult
from agent_sandbox.server.database import MessageRepository, ServerRepository, TaskRepository


class TestAuthentication:
    """Bearer token checks for users and agents."""

    async def test_missing_user_token_is_401(self, client):
        response = await client.get("/api/servers")

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"
        assert response.headers["www-authenticate"] == "Bearer"

    async def test_unknown_user_token_is_401(self, client):
        response = await client.get("/api/servers", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    async def test_agent_without_token_is_401(self, client, seed, make_registered_target):
        await seed(make_registered_target())

        response = await client.get("/api/servers/srv-reg/tasks")

        assert response.status_code == 401
        assert response.json()["error"] == "Missing token"

    async def test_agent_with_wrong_token_is_401(self, client, seed, make_registered_target):
        await seed(make_registered_target())

        response = await client.get(
            "/api/servers/srv-reg/tasks", headers={"Authorization": "Bearer wrong"}
        )

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid token"

    async def test_agent_for_unknown_server_is_404(self, client, agent_headers):
        response = await client.get("/api/servers/ghost/tasks", headers=agent_headers)

        assert response.status_code == 404
        assert response.json()["code"] == "SERVER_NOT_FOUND"

    async def test_user_token_is_not_an_agent_token(self, client, seed, make_registered_target, user_headers):
        await seed(make_registered_target())

        response = await client.get("/api/servers/srv-reg/tasks", headers=user_headers)

        assert response.status_code == 401


class TestRegister:
    """POST /api/servers/register."""

    async def test_register_issues_token(self, client, db, user_headers):
        response = await client.post(
            "/api/servers/register", json={"name": "gpu-box"}, headers=user_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["token"]
        target = await ServerRepository(db).get(body["id"])
        assert target.kind == "registered"
        assert target.status == TargetStatus.CONNECTED
        assert target.token == body["token"]

    async def test_duplicate_name_rejected(self, client, user_headers):
        await client.post("/api/servers/register", json={"name": "gpu-box"}, headers=user_headers)

        response = await client.post(
            "/api/servers/register", json={"name": "gpu-box"}, headers=user_headers
        )

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_SERVER"

    async def test_force_rotates_token_and_keeps_id(self, client, user_headers):
        first = (
            await client.post("/api/servers/register", json={"name": "gpu-box"}, headers=user_headers)
        ).json()

        response = await client.post(
            "/api/servers/register", json={"name": "gpu-box", "force": True}, headers=user_headers
        )

        second = response.json()
        assert second["id"] == first["id"]
        assert second["token"] != first["token"]
        old = await client.get(
            f"/api/servers/{first['id']}/tasks", headers={"Authorization": f"Bearer {first['token']}"}
        )
        assert old.status_code == 401


class TestServerCrud:
    """User-facing target management."""

    async def test_create_direct_target(self, client, user_headers):
        response = await client.post(
            "/api/servers",
            json={"name": "laptop", "connection": {"kind": "direct"}},
            headers=user_headers,
        )

        assert response.status_code == 201
        assert response.json()["kind"] == "direct"

    async def test_create_registered_target_is_rejected(self, client, user_headers):
        response = await client.post(
            "/api/servers",
            json={"name": "laptop", "connection": {"kind": "registered"}},
            headers=user_headers,
        )

        assert response.status_code == 400

    async def test_tunneled_secrets_are_masked(self, client, user_headers):
        response = await client.post(
            "/api/servers",
            json={
                "name": "remote",
                "connection": {
                    "kind": "tunneled",
                    "host": "example.com",
                    "username": "deploy",
                    "private_key": "-----BEGIN KEY-----",
                },
            },
            headers=user_headers,
        )

        assert response.status_code == 201
        assert "BEGIN KEY" not in response.text

    async def test_other_users_target_is_404(self, client, seed, make_target):
        await seed(make_target(user_id="user-2"))

        response = await client.get(
            "/api/servers/srv-1", headers={"Authorization": "Bearer user-token-1"}
        )

        assert response.status_code == 404

    async def test_delete_target(self, client, seed, make_target, user_headers):
        await seed(make_target())

        response = await client.delete("/api/servers/srv-1", headers=user_headers)

        assert response.status_code == 204
        listing = await client.get("/api/servers", headers=user_headers)
        assert listing.json()["servers"] == []

    async def test_probe_direct_target_marks_connected(self, client, db, seed, make_target, user_headers):
        await seed(make_target())

        response = await client.post("/api/servers/srv-1/test", headers=user_headers)

        assert response.status_code == 200
        assert response.json()["healthy"] is True
        assert (await ServerRepository(db).get("srv-1")).status == TargetStatus.CONNECTED

    async def test_probe_unhealthy_target_marks_error(
        self, client, db, seed, make_target, user_headers, mock_provider
    ):
        mock_provider.health_check.return_value = HealthCheckResult(healthy=False, message="daemon down")
        await seed(make_target())

        response = await client.post("/api/servers/srv-1/test", headers=user_headers)

        assert response.json()["healthy"] is False
        assert response.json()["message"] == "daemon down"
        assert (await ServerRepository(db).get("srv-1")).status == TargetStatus.ERROR


class TestAgentSurface:
    """Heartbeat, poll and patch by a registered agent."""

    @pytest.fixture
    async def registered(self, seed, make_registered_target, make_task):
        await seed(
            make_registered_target(),
            make_task(id="task-1", server_id="srv-reg", status=TaskStatus.PENDING),
            make_task(id="task-2", server_id="srv-reg", status=TaskStatus.STOPPED),
        )

    @pytest.mark.parametrize("method", ["post", "put"])
    async def test_heartbeat_stores_stats(self, client, db, registered, agent_headers, method):
        response = await client.request(
            method.upper(),
            "/api/servers/srv-reg/heartbeat",
            json={"stats": {"cpu_percent": 12.5}},
            headers=agent_headers,
        )

        assert response.status_code == 200
        target = await ServerRepository(db).get("srv-reg")
        assert target.status == TargetStatus.CONNECTED
        assert target.stats == {"cpu_percent": 12.5}

    async def test_poll_returns_only_pending(self, client, registered, agent_headers):
        response = await client.get("/api/servers/srv-reg/tasks", headers=agent_headers)

        assert response.status_code == 200
        assert [t["id"] for t in response.json()] == ["task-1"]
        assert response.json()[0]["version"] == 1

    async def test_patch_claim_with_version(self, client, db, registered, agent_headers):
        response = await client.patch(
            "/api/servers/srv-reg/tasks/task-1",
            json={"status": "running", "expected_version": 1},
            headers=agent_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "version": 2}
        assert (await TaskRepository(db).get("task-1")).status == TaskStatus.RUNNING

    async def test_second_claim_conflicts(self, client, registered, agent_headers):
        await client.patch(
            "/api/servers/srv-reg/tasks/task-1",
            json={"status": "running", "expected_version": 1},
            headers=agent_headers,
        )

        response = await client.patch(
            "/api/servers/srv-reg/tasks/task-1",
            json={"status": "running", "expected_version": 1},
            headers=agent_headers,
        )

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "VERSION_CONFLICT"
        assert body["details"]["current_version"] == 2

    async def test_patch_output_records_result_and_message(self, client, db, registered, agent_headers):
        response = await client.patch(
            "/api/servers/srv-reg/tasks/task-1",
            json={"status": "completed", "output": "All tests pass", "exit_code": 0},
            headers=agent_headers,
        )

        assert response.status_code == 200
        task = await TaskRepository(db).get("task-1")
        assert task.status == TaskStatus.COMPLETED
        assert task.last_result == {"success": True, "exit_code": 0, "output": "All tests pass"}
        assert task.last_activity_at is not None
        [message] = await MessageRepository(db).list_for_task("task-1")
        assert message.role == "assistant"
        assert message.content == "All tests pass"

    async def test_patch_config_is_merged(self, client, db, seed, make_registered_target, make_task, agent_headers):
        await seed(
            make_registered_target(),
            make_task(server_id="srv-reg", config={"repo_url": "https://github.com/o/r"}),
        )

        await client.patch(
            "/api/servers/srv-reg/tasks/task-1",
            json={"config": {"branch": "main"}},
            headers=agent_headers,
        )

        task = await TaskRepository(db).get("task-1")
        assert task.config == {"repo_url": "https://github.com/o/r", "branch": "main"}

    async def test_patch_task_of_other_server_is_403(
        self, client, seed, make_registered_target, make_target, make_task, agent_headers
    ):
        await seed(make_registered_target(), make_target(id="srv-other"), make_task(server_id="srv-other"))

        response = await client.patch(
            "/api/servers/srv-reg/tasks/task-1", json={"status": "running"}, headers=agent_headers
        )

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    async def test_patch_unknown_task_is_404(self, client, registered, agent_headers):
        response = await client.patch(
            "/api/servers/srv-reg/tasks/ghost", json={"status": "running"}, headers=agent_headers
        )

        assert response.status_code == 404
        assert response.json()["code"] == "TASK_NOT_FOUND"

    async def test_patch_rejects_unknown_fields(self, client, registered, agent_headers):
        response = await client.patch(
            "/api/servers/srv-reg/tasks/task-1", json={"user_id": "me"}, headers=agent_headers
        )

        assert response.status_code == 422
