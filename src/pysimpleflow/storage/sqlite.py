"""SQLite-backed execution store.

Design Pattern: Adapter Pattern
SqliteExecutionStore adapts an SQLite database to the ExecutionStore
interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Results stored as JSON documents next to the columns used for lookups
- INTEGER timestamps (milliseconds) for ordering
"""

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from pysimpleflow.models import FlowResult, StepResult
from pysimpleflow.storage.base import ExecutionStore, StorageError


def _dumps(data: dict) -> str:
    # Handler outputs may hold arbitrary objects; store their text form
    return json.dumps(data, default=str)


class SqliteExecutionStore(ExecutionStore):
    """SQLite-backed durable history.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteExecutionStore("history.db")
        await store.connect()
        try:
            engine = FlowEngine(registry).with_store(store)
            ...
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize the store (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls) -> "SqliteExecutionStore":
        """Create and connect an in-memory store (for tests)."""
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteExecutionStore(in-memory)"
        return f"SqliteExecutionStore({self.db_path})"

    async def connect(self) -> None:
        """Open the database connection and initialize the schema.

        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._create_schema()

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        Schema design:
        - step_results: one row per saved step result, ordered by seq
        - flow_results: one row per finished execution
        - UPPERCASE status values
        """
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS step_results (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                flow_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'SUCCESS','FAILED','SKIPPED','TIMEOUT','CANCELLED','RETRYING'
                ) ) NOT NULL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                saved_at INTEGER NOT NULL,
                payload TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_step_results_execution
            ON step_results(execution_id, seq)
        """)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS flow_results (
                execution_id TEXT PRIMARY KEY,
                flow_id TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'SUCCESS','FAILED','CANCELLED','TIMEOUT','PARTIAL'
                ) ) NOT NULL,
                started_at INTEGER NOT NULL,
                ended_at INTEGER NOT NULL,
                payload TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_flow_results_flow
            ON flow_results(flow_id, started_at)
        """)

    def _check_connected(self) -> None:
        """Guard clause: ensure the connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def save_step_result(self, execution_id: str, flow_id: str, result: StepResult) -> None:
        self._check_connected()
        saved_at = int(datetime.now(UTC).timestamp() * 1000)
        async with self._lock:
            await self._connection.execute(
                """
                INSERT INTO step_results
                    (execution_id, flow_id, step_id, status, retry_count, saved_at, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    flow_id,
                    result.step_id,
                    result.status.value,
                    result.retry_count,
                    saved_at,
                    _dumps(result.to_dict()),
                ),
            )

    async def save_flow_result(self, result: FlowResult) -> None:
        self._check_connected()
        async with self._lock:
            await self._connection.execute(
                """
                INSERT INTO flow_results
                    (execution_id, flow_id, status, started_at, ended_at, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(execution_id) DO UPDATE SET
                    status = excluded.status,
                    ended_at = excluded.ended_at,
                    payload = excluded.payload
                """,
                (
                    result.execution_id,
                    result.flow_id,
                    result.status.value,
                    int(result.started_at.timestamp() * 1000),
                    int(result.ended_at.timestamp() * 1000),
                    _dumps(result.to_dict()),
                ),
            )

    async def get_flow_result(self, execution_id: str) -> FlowResult | None:
        """Return the stored result; None when not found (not an error condition)."""
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT payload FROM flow_results WHERE execution_id = ?", (execution_id,)
            )
            row = await cursor.fetchone()
            await cursor.close()
        if row is None:
            return None
        try:
            return FlowResult.from_dict(json.loads(row[0]))
        except (KeyError, ValueError) as e:
            raise StorageError(f"Corrupt flow result for execution {execution_id}: {e}") from e

    async def get_step_results(self, execution_id: str) -> list[StepResult]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT payload FROM step_results WHERE execution_id = ? ORDER BY seq",
                (execution_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        try:
            return [StepResult.from_dict(json.loads(row[0])) for row in rows]
        except (KeyError, ValueError) as e:
            raise StorageError(f"Corrupt step result for execution {execution_id}: {e}") from e

    async def list_executions(self, flow_id: str) -> list[str]:
        self._check_connected()
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT execution_id FROM flow_results WHERE flow_id = ? ORDER BY started_at",
                (flow_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row[0] for row in rows]

    async def close(self) -> None:
        """Close the connection. Explicit resource cleanup, not relying on GC."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
