"""
PostgreSQL State Backend - asyncpg-backed snapshot storage.

Stores the latest StateSnapshot per workspace with a row-level
compare-and-swap on the serial, keeps every written serial in
``state_history`` and records run outcomes in ``run_history``.
"""

import hashlib
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from converge.errors import StateConflict, StateLocked
from converge.migrate import run_migrations
from converge.state import StateBackend, StateSnapshot

logger = logging.getLogger(__name__)


class PostgresStateBackend(StateBackend):
    """Manages PostgreSQL storage of state snapshots for one workspace."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        workspace: str = "default",
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.workspace = workspace
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL state backend "
            f"(workspace: {self.workspace}, pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)

    # ==================== Snapshot Methods ====================

    async def read(self) -> StateSnapshot:
        """Read the latest snapshot for the workspace."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT serial, lineage, data FROM state_snapshots WHERE workspace = $1",
                self.workspace,
            )
        if not row:
            return StateSnapshot()
        snapshot = StateSnapshot.from_dict(self._parse_json(row["data"]))
        snapshot.serial = row["serial"]
        snapshot.lineage = row["lineage"]
        return snapshot

    async def write(self, snapshot: StateSnapshot, expected_serial: int) -> StateSnapshot:
        """
        Compare-and-swap write of a snapshot.

        The UPDATE only matches when the stored serial equals
        ``expected_serial``; the first write for a workspace is an INSERT
        that only succeeds when no row exists yet.

        Raises:
            StateConflict: If the stored serial differs
        """
        self._ensure_connected()
        stored = snapshot.copy()
        stored.serial = expected_serial + 1
        data = json.dumps(stored.to_dict())

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if expected_serial == 0:
                    new_serial = await conn.fetchval(
                        """
                        INSERT INTO state_snapshots (workspace, serial, lineage, data)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (workspace) DO NOTHING
                        RETURNING serial
                        """,
                        self.workspace,
                        stored.serial,
                        stored.lineage,
                        data,
                    )
                else:
                    new_serial = await conn.fetchval(
                        """
                        UPDATE state_snapshots
                        SET serial = $1, lineage = $2, data = $3, updated_at = NOW()
                        WHERE workspace = $4 AND serial = $5
                        RETURNING serial
                        """,
                        stored.serial,
                        stored.lineage,
                        data,
                        self.workspace,
                        expected_serial,
                    )

                if new_serial is None:
                    actual = await conn.fetchval(
                        "SELECT serial FROM state_snapshots WHERE workspace = $1",
                        self.workspace,
                    )
                    raise StateConflict(expected=expected_serial, actual=actual or 0)

                await conn.execute(
                    """
                    INSERT INTO state_history (workspace, serial, data)
                    VALUES ($1, $2, $3)
                    """,
                    self.workspace,
                    new_serial,
                    data,
                )

        logger.debug(f"Stored state serial {stored.serial} for {self.workspace}")
        return stored

    @asynccontextmanager
    async def lock(self, owner: str) -> AsyncIterator[None]:
        """
        Hold a session-level advisory lock for the workspace.

        Raises:
            StateLocked: If another session holds the lock
        """
        self._ensure_connected()
        lock_id = self._lock_id()
        async with self.pool.acquire() as conn:
            acquired = await conn.fetchval("SELECT pg_try_advisory_lock($1)", lock_id)
            if not acquired:
                raise StateLocked(f"State workspace '{self.workspace}' is locked")
            logger.debug(f"Acquired state lock for {self.workspace} ({owner})")
            try:
                yield
            finally:
                await conn.execute("SELECT pg_advisory_unlock($1)", lock_id)
                logger.debug(f"Released state lock for {self.workspace}")

    # ==================== History Methods ====================

    async def get_state_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """List recently stored serials for the workspace."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT serial, written_at
                FROM state_history
                WHERE workspace = $1
                ORDER BY serial DESC
                LIMIT $2
                """,
                self.workspace,
                limit,
            )
            return [dict(row) for row in rows]

    async def record_run(
        self,
        run_kind: str,
        success: bool,
        serial: Optional[int] = None,
        summary: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """Record an apply or drift run in history."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO run_history (
                    workspace, run_kind, success, serial,
                    summary, details, duration_seconds
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                self.workspace,
                run_kind,
                success,
                serial,
                summary,
                json.dumps(details or {}),
                duration_seconds,
            )

    async def get_run_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Get recent run history for the workspace."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM run_history
                WHERE workspace = $1
                ORDER BY run_time DESC
                LIMIT $2
                """,
                self.workspace,
                limit,
            )
            results = []
            for row in rows:
                entry = dict(row)
                entry["details"] = self._parse_json(entry.get("details"))
                results.append(entry)
            return results

    def _parse_json(self, value: Any) -> Dict[str, Any]:
        """JSONB columns arrive as text unless a codec is registered."""
        if value is None:
            return {}
        return json.loads(value) if isinstance(value, str) else value

    def _lock_id(self) -> int:
        """Stable signed 64-bit advisory lock id for the workspace."""
        digest = hashlib.sha256(f"converge:{self.workspace}".encode()).digest()
        return int.from_bytes(digest[:8], "big", signed=True)
