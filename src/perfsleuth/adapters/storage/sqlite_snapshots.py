"""SQLite storage adapter for published dashboard snapshots."""

import asyncio
import json
from collections.abc import AsyncIterable
from typing import Any

import aiosqlite

from perfsleuth.core.encoding.snapshot import encode_snapshot
from perfsleuth.core.logs import get_logger
from perfsleuth.core.models import DashboardSnapshot

logger = get_logger(__name__)

_SNAPSHOTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    findings INTEGER NOT NULL DEFAULT 0,
    recommendations INTEGER NOT NULL DEFAULT 0,
    body TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_snapshots_timestamp ON snapshots(timestamp);
"""

_INSERT_SNAPSHOT = """
INSERT INTO snapshots (timestamp, findings, recommendations, body)
VALUES (?, ?, ?, ?)
"""

_SELECT_SNAPSHOTS_SINCE = """
SELECT id, body FROM snapshots
WHERE timestamp > ?
ORDER BY timestamp ASC, id ASC
"""

_COUNT_SNAPSHOTS = """
SELECT COUNT(*) FROM snapshots
"""

_DELETE_SNAPSHOTS_BEFORE = """
DELETE FROM snapshots WHERE timestamp < ?
"""


class SQLiteSnapshotSink:
    """SQLite implementation of SnapshotSinkPort and SnapshotHistoryPort.

    Each snapshot is stored as the same JSON document clients receive,
    next to its timestamp and finding/recommendation counts. The sink
    holds one aiosqlite connection, opened on first use. File databases
    run in WAL mode. A ``:memory:`` database lives as long as that
    connection: ``close()`` discards its data.

    Args:
        db_path: Database file path, or ":memory:".
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._open_lock: asyncio.Lock | None = None

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn
        if self._open_lock is None:
            self._open_lock = asyncio.Lock()
        async with self._open_lock:
            if self._conn is None:
                conn = await aiosqlite.connect(self._db_path)
                if self._db_path != ":memory:":
                    await conn.execute("PRAGMA journal_mode=WAL")
                await conn.executescript(_SNAPSHOTS_SCHEMA)
                self._conn = conn
        return self._conn

    async def write(self, snapshot: DashboardSnapshot) -> None:
        """Persist one snapshot."""
        db = await self._connection()
        await db.execute(
            _INSERT_SNAPSHOT,
            (
                snapshot.timestamp,
                len(snapshot.findings),
                len(snapshot.recommendations),
                encode_snapshot(snapshot),
            ),
        )
        await db.commit()

    async def read(self, since: float = 0) -> AsyncIterable[dict[str, Any]]:
        """Read stored snapshots with timestamp > since, oldest first.

        Rows whose body is not valid JSON are skipped with a warning.

        Yields:
            Decoded snapshot objects (the same shape clients receive).
        """
        db = await self._connection()
        async with db.execute(_SELECT_SNAPSHOTS_SINCE, (since,)) as cursor:
            rows = await cursor.fetchall()
        for row_id, body in rows:
            try:
                data = json.loads(body)
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable snapshot row %d", row_id)
                continue
            yield data

    async def count(self) -> int:
        """Return total number of stored snapshots."""
        db = await self._connection()
        async with db.execute(_COUNT_SNAPSHOTS) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def delete_before(self, timestamp: float) -> int:
        """Delete snapshots older than ``timestamp``. Returns rows removed."""
        db = await self._connection()
        cursor = await db.execute(_DELETE_SNAPSHOTS_BEFORE, (timestamp,))
        deleted = cursor.rowcount
        await db.commit()
        return deleted

    async def close(self) -> None:
        """Close the connection. The next call reopens the database."""
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await conn.close()
