"""Repositories for compute targets, tasks, messages and prompt answers."""

import json
from datetime import UTC, datetime
from typing import Any

import aiosqlite
from loguru import logger
from pydantic import BaseModel

from agent_sandbox.core.types import (
    ComputeTarget,
    Message,
    Task,
    TargetStatus,
    TaskStatus,
)
from agent_sandbox.server.database.connection import Database, SqliteValue
from agent_sandbox.server.exceptions import TaskNotFoundError, TaskVersionConflictError


# Optimistic writes without an expected version retry this many times
# before giving up on a hot task.
_MAX_WRITE_ATTEMPTS = 5

# Task fields that can be changed through TaskRepository.update, by column.
_TASK_COLUMNS: dict[str, str] = {
    "name": "name",
    "project_id": "project_id",
    "status": "status",
    "agent_tool": "agent_tool",
    "server_id": "server_id",
    "container_id": "container_id",
    "volume_id": "volume_id",
    "config": "config_json",
    "error_message": "error_message",
    "last_result": "last_result_json",
    "last_activity_at": "last_activity_at",
}


def _pydantic_encoder(obj: Any) -> Any:
    """json.dumps default hook for pydantic models and datetimes."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value, default=_pydantic_encoder)


def _loads(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _ts(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def _now() -> datetime:
    return datetime.now(UTC)


def _encode_task_value(field: str, value: Any) -> SqliteValue:
    if field in ("config", "last_result"):
        return _dumps(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class ServerRepository:
    """Persistence for compute targets."""

    def __init__(self, db: Database):
        self._db = db

    def _row_to_target(self, row: aiosqlite.Row) -> ComputeTarget:
        return ComputeTarget.model_validate(
            {
                "id": row["id"],
                "user_id": row["user_id"],
                "name": row["name"],
                "connection": json.loads(row["connection_json"]),
                "status": row["status"],
                "token": row["token"],
                "stats": _loads(row["stats_json"]),
                "last_connected_at": row["last_connected_at"],
                "created_at": row["created_at"],
            }
        )

    async def create(self, target: ComputeTarget) -> None:
        """Insert a compute target.

        Raises:
            aiosqlite.IntegrityError: If the user already has a target with this name.
        """
        await self._db.execute(
            """
            INSERT INTO servers (
                id, user_id, name, kind, connection_json, status,
                token, stats_json, last_connected_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                target.id,
                target.user_id,
                target.name,
                target.kind,
                target.connection.model_dump_json(),
                target.status,
                target.token,
                _dumps(target.stats),
                _ts(target.last_connected_at),
                _ts(target.created_at),
            ),
        )

    async def get(self, server_id: str) -> ComputeTarget | None:
        """Get a compute target by id, regardless of owner."""
        row = await self._db.fetch_one("SELECT * FROM servers WHERE id = ?", (server_id,))
        return self._row_to_target(row) if row else None

    async def get_for_user(self, server_id: str, user_id: str) -> ComputeTarget | None:
        """Get a compute target owned by ``user_id``."""
        row = await self._db.fetch_one(
            "SELECT * FROM servers WHERE id = ? AND user_id = ?",
            (server_id, user_id),
        )
        return self._row_to_target(row) if row else None

    async def get_by_name(self, user_id: str, name: str) -> ComputeTarget | None:
        row = await self._db.fetch_one(
            "SELECT * FROM servers WHERE user_id = ? AND name = ?",
            (user_id, name),
        )
        return self._row_to_target(row) if row else None

    async def list_for_user(self, user_id: str) -> list[ComputeTarget]:
        rows = await self._db.fetch_all(
            "SELECT * FROM servers WHERE user_id = ? ORDER BY created_at",
            (user_id,),
        )
        return [self._row_to_target(row) for row in rows]

    async def update_status(
        self,
        server_id: str,
        status: TargetStatus,
        stats: dict[str, Any] | None = None,
    ) -> None:
        """Record connectivity. A connected status also stamps ``last_connected_at``.

        Args:
            server_id: Compute target id.
            status: New status.
            stats: Host stats to store; existing stats are kept when None.
        """
        connected_at = _ts(_now()) if status == TargetStatus.CONNECTED else None
        await self._db.execute(
            """
            UPDATE servers SET
                status = ?,
                stats_json = COALESCE(?, stats_json),
                last_connected_at = COALESCE(?, last_connected_at)
            WHERE id = ?
            """,
            (status, _dumps(stats), connected_at, server_id),
        )

    async def set_token(self, server_id: str, token: str) -> None:
        await self._db.execute("UPDATE servers SET token = ? WHERE id = ?", (token, server_id))

    async def delete(self, server_id: str) -> bool:
        """Delete a compute target. Returns False if it did not exist."""
        return await self._db.execute("DELETE FROM servers WHERE id = ?", (server_id,)) > 0


class TaskRepository:
    """Persistence for tasks with optimistic concurrency on ``version``."""

    def __init__(self, db: Database):
        self._db = db

    def _row_to_task(self, row: aiosqlite.Row) -> Task:
        return Task.model_validate(
            {
                "id": row["id"],
                "user_id": row["user_id"],
                "project_id": row["project_id"],
                "name": row["name"],
                "status": row["status"],
                "agent_tool": row["agent_tool"],
                "server_id": row["server_id"],
                "container_id": row["container_id"],
                "volume_id": row["volume_id"],
                "config": json.loads(row["config_json"]),
                "error_message": row["error_message"],
                "last_result": _loads(row["last_result_json"]),
                "version": row["version"],
                "created_at": row["created_at"],
                "updated_at": row["updated_at"],
                "last_activity_at": row["last_activity_at"],
            }
        )

    async def create(self, task: Task) -> None:
        await self._db.execute(
            """
            INSERT INTO tasks (
                id, user_id, project_id, name, status, agent_tool, server_id,
                container_id, volume_id, config_json, error_message,
                last_result_json, version, created_at, updated_at, last_activity_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.user_id,
                task.project_id,
                task.name,
                task.status,
                task.agent_tool,
                task.server_id,
                task.container_id,
                task.volume_id,
                _dumps(task.config) or "{}",
                task.error_message,
                _dumps(task.last_result),
                task.version,
                _ts(task.created_at),
                _ts(task.updated_at),
                _ts(task.last_activity_at),
            ),
        )

    async def get(self, task_id: str) -> Task | None:
        row = await self._db.fetch_one("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    async def get_for_user(self, task_id: str, user_id: str) -> Task | None:
        """Get a task owned by ``user_id``."""
        row = await self._db.fetch_one(
            "SELECT * FROM tasks WHERE id = ? AND user_id = ?",
            (task_id, user_id),
        )
        return self._row_to_task(row) if row else None

    async def list_actionable_for_server(self, server_id: str) -> list[Task]:
        """Tasks a registered agent has to act on.

        That is every ``pending`` task plus every task carrying a pending
        inspect request, oldest first.
        """
        rows = await self._db.fetch_all(
            """
            SELECT * FROM tasks
            WHERE server_id = ?
            AND (
                status = ?
                OR json_extract(config_json, '$.inspect_request.status') = 'pending'
            )
            ORDER BY created_at
            """,
            (server_id, TaskStatus.PENDING),
        )
        return [self._row_to_task(row) for row in rows]

    async def list_ids(self) -> list[str]:
        rows = await self._db.fetch_all("SELECT id FROM tasks")
        return [row["id"] for row in rows]

    async def _write(self, task_id: str, values: dict[str, Any], version: int) -> bool:
        """Conditional write: applies only while the row is still at ``version``."""
        assignments = [f"{_TASK_COLUMNS[field]} = ?" for field in values]
        params: list[SqliteValue] = [
            _encode_task_value(field, value) for field, value in values.items()
        ]
        sql = (
            "UPDATE tasks SET "
            + ", ".join([*assignments, "version = version + 1", "updated_at = ?"])
            + " WHERE id = ? AND version = ?"
        )
        params.extend([_ts(_now()), task_id, version])
        return await self._db.execute(sql, params) == 1

    async def update(
        self,
        task_id: str,
        changes: dict[str, Any] | None = None,
        config_patch: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> Task:
        """Apply field changes and a shallow config merge, bumping ``version``.

        Args:
            task_id: Task to update.
            changes: New values keyed by task field name.
            config_patch: Keys merged over the persisted config; other keys are kept.
            expected_version: When given, the update applies only if the task
                is still at this version.

        Returns:
            The updated task.

        Raises:
            TaskNotFoundError: If the task does not exist.
            TaskVersionConflictError: If ``expected_version`` is stale, or
                concurrent writers kept winning the race.
            ValueError: If ``changes`` names a field that cannot be updated.
        """
        changes = dict(changes or {})
        unknown = set(changes) - set(_TASK_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")

        current: Task | None = None
        for _ in range(_MAX_WRITE_ATTEMPTS):
            current = await self.get(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            if expected_version is not None and current.version != expected_version:
                raise TaskVersionConflictError(task_id, expected_version, current.version)

            values = dict(changes)
            if config_patch is not None:
                values["config"] = {**current.config, **config_patch}
            if await self._write(task_id, values, current.version):
                updated = await self.get(task_id)
                if updated is None:
                    raise TaskNotFoundError(task_id)
                return updated
            logger.debug("Task write lost a race, retrying", task_id=task_id)

        assert current is not None
        raise TaskVersionConflictError(task_id, current.version, current.version + 1)

    async def delete(self, task_id: str) -> bool:
        return await self._db.execute("DELETE FROM tasks WHERE id = ?", (task_id,)) > 0


class MessageRepository:
    """Persistence for task messages and prompt answers."""

    def __init__(self, db: Database):
        self._db = db

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        return Message.model_validate(
            {
                "id": row["id"],
                "seq": row["seq"],
                "task_id": row["task_id"],
                "role": row["role"],
                "content": row["content"],
                "tool_calls": _loads(row["tool_calls_json"]),
                "created_at": row["created_at"],
            }
        )

    async def _insert(self, message: Message) -> Message:
        seq = await self._db.execute_insert(
            """
            INSERT INTO messages (id, task_id, role, content, tool_calls_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.task_id,
                message.role,
                message.content,
                _dumps(message.tool_calls),
                _ts(message.created_at),
            ),
        )
        return message.model_copy(update={"seq": seq})

    async def create(self, message: Message) -> Message:
        """Insert a message and return it with its assigned ``seq``."""
        return await self._insert(message)

    async def list_for_task(
        self,
        task_id: str,
        after_seq: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Messages of a task in insertion order.

        Args:
            task_id: Owning task.
            after_seq: Only return messages with a larger ``seq``.
            limit: Maximum number of messages.
        """
        sql = "SELECT * FROM messages WHERE task_id = ? AND seq > ? ORDER BY seq"
        params: list[SqliteValue] = [task_id, after_seq or 0]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._db.fetch_all(sql, params)
        return [self._row_to_message(row) for row in rows]

    async def answered_prompts(self, task_id: str) -> set[tuple[str, str]]:
        """``(prompt_id, tool_call_id)`` pairs already answered for a task."""
        rows = await self._db.fetch_all(
            "SELECT prompt_id, tool_call_id FROM prompt_answers WHERE task_id = ?",
            (task_id,),
        )
        return {(row["prompt_id"], row["tool_call_id"]) for row in rows}

    async def record_answer(
        self, prompt_id: str, tool_call_id: str, message: Message
    ) -> Message | None:
        """Store an answer message unless the prompt was already answered.

        The answer marker and the message are written in one transaction.

        Returns:
            The stored message, or None if an answer already existed.
        """
        async with self._db.transaction():
            inserted = await self._db.execute(
                """
                INSERT OR IGNORE INTO prompt_answers (
                    task_id, prompt_id, tool_call_id, message_id, answered_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (message.task_id, prompt_id, tool_call_id, message.id, _ts(_now())),
            )
            if inserted == 0:
                return None
            return await self._insert(message)
