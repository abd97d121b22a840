"""Database connection management with SQLite."""
import asyncio
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
from loguru import logger


# Type alias for SQLite-compatible values
SqliteValue = None | int | float | str | bytes


class Database:
    """Async SQLite database connection manager.

    Configures SQLite with:
    - WAL mode for concurrent read/write
    - Foreign keys enforced
    - 5 second busy timeout
    """

    def __init__(self, db_path: Path):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        # One connection is shared by all requests; explicit transactions must not nest.
        self._transaction_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection with optimized settings.

        Raises:
            RuntimeError: If PRAGMA verification fails.
        """
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self._db_path,
            isolation_level=None,  # Autocommit mode (we manage transactions)
        )
        self._connection.row_factory = aiosqlite.Row

        cursor = await self._connection.execute("PRAGMA journal_mode = WAL")
        result = await cursor.fetchone()
        if result is None or result[0].lower() != "wal":
            raise RuntimeError(
                f"Failed to set WAL journal mode. Got: {result[0] if result else None}"
            )

        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute("PRAGMA busy_timeout = 5000")

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning(f"Error closing database connection: {e}")
            finally:
                self._connection = None

    async def __aenter__(self) -> "Database":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def connection(self) -> aiosqlite.Connection:
        """Get the active connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def is_healthy(self) -> bool:
        """Check if connection is valid and database is accessible."""
        if self._connection is None:
            return False
        try:
            cursor = await self._connection.execute("SELECT 1")
            result = await cursor.fetchone()
            return result is not None and result[0] == 1
        except Exception:
            return False

    async def execute(
        self,
        sql: str,
        parameters: Sequence[SqliteValue] = (),
    ) -> int:
        """Execute SQL statement.

        Args:
            sql: SQL statement to execute.
            parameters: Optional parameters for the statement.

        Returns:
            Number of rows affected (for INSERT/UPDATE/DELETE).
        """
        cursor = await self.connection.execute(sql, parameters)
        return cursor.rowcount

    async def execute_insert(
        self,
        sql: str,
        parameters: Sequence[SqliteValue] = (),
    ) -> int:
        """Execute INSERT statement and return the last inserted row ID."""
        cursor = await self.connection.execute(sql, parameters)
        return cursor.lastrowid if cursor.lastrowid is not None else 0

    async def fetch_one(
        self,
        sql: str,
        parameters: Sequence[SqliteValue] = (),
    ) -> aiosqlite.Row | None:
        """Fetch a single row.

        Args:
            sql: SQL query.
            parameters: Optional parameters.

        Returns:
            Single row or None if not found.
        """
        cursor = await self.connection.execute(sql, parameters)
        return await cursor.fetchone()

    async def fetch_all(
        self,
        sql: str,
        parameters: Sequence[SqliteValue] = (),
    ) -> list[aiosqlite.Row]:
        """Fetch all matching rows."""
        cursor = await self.connection.execute(sql, parameters)
        result = await cursor.fetchall()
        return list(result)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[None, None]:
        """Write transaction (BEGIN IMMEDIATE). Commits on success, rolls back on exception.

        Transactions are serialized across callers sharing this connection.
        """
        async with self._transaction_lock:
            await self.connection.execute("BEGIN IMMEDIATE")
            try:
                yield
                await self.connection.execute("COMMIT")
            except Exception:
                await self.connection.execute("ROLLBACK")
                raise

    async def ensure_schema(self) -> None:
        """Create database schema if it doesn't exist.

        Uses CREATE TABLE IF NOT EXISTS for idempotent schema creation.
        Call this after connect() to ensure tables exist.
        """
        await self.execute("""
            CREATE TABLE IF NOT EXISTS servers (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                connection_json TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'disconnected',
                token TEXT,
                stats_json TEXT,
                last_connected_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, name)
            )
        """)

        await self.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                project_id TEXT,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                agent_tool TEXT NOT NULL,
                server_id TEXT REFERENCES servers(id) ON DELETE SET NULL,
                container_id TEXT,
                volume_id TEXT,
                config_json TEXT NOT NULL DEFAULT '{}',
                error_message TEXT,
                last_result_json TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                last_activity_at TEXT
            )
        """)

        await self.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                tool_calls_json TEXT,
                created_at TEXT NOT NULL
            )
        """)

        # One answer per prompt tool call; the unique key makes answering atomic
        await self.execute("""
            CREATE TABLE IF NOT EXISTS prompt_answers (
                task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                prompt_id TEXT NOT NULL,
                tool_call_id TEXT NOT NULL,
                message_id TEXT NOT NULL,
                answered_at TEXT NOT NULL,
                UNIQUE (task_id, prompt_id, tool_call_id)
            )
        """)

        # Indexes
        await self.execute(
            "CREATE INDEX IF NOT EXISTS idx_servers_user ON servers(user_id)"
        )
        await self.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_server_status ON tasks(server_id, status)"
        )
        await self.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id)"
        )
        await self.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_task ON messages(task_id, seq)"
        )
