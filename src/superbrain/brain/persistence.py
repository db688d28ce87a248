"""SQLite persistence for memories, the Q-table, the file index and runtime config.

One connection per process, opened in WAL mode. Every logical write (a
memory batch, the Q-table, one file's chunks, a config value) runs in its
own BEGIN IMMEDIATE transaction and is rolled back on any failure, including
task cancellation.
"""

import asyncio
import json
import sqlite3
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from superbrain.brain.vectors import from_bytes, to_bytes
from superbrain.core.errors import PersistenceError
from superbrain.core.logging import get_logger
from superbrain.core.types import (
    Belief,
    FileChunk,
    FileRecord,
    Goal,
    GoalStatus,
    Memory,
    MemoryType,
)

logger = get_logger("brain.persistence")


def _adapt_datetime(dt: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage."""
    return dt.isoformat()


def _convert_datetime(val: bytes) -> datetime:
    """Convert ISO format string from SQLite to datetime."""
    return datetime.fromisoformat(val.decode())


# Explicit registration; the stdlib default adapters are deprecated since 3.12
sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("DATETIME", _convert_datetime)

SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    vector BLOB NOT NULL,
    memory_type TEXT NOT NULL,
    importance REAL NOT NULL,
    created_at DATETIME NOT NULL,
    last_accessed DATETIME NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    connections TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(memory_type);

CREATE TABLE IF NOT EXISTS q_table (
    state TEXT NOT NULL,
    action TEXT NOT NULL,
    value REAL NOT NULL,
    visit_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (state, action)
);

CREATE TABLE IF NOT EXISTS file_index (
    path TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    file_type TEXT NOT NULL,
    mtime REAL NOT NULL,
    content_hash TEXT NOT NULL,
    chunk_count INTEGER NOT NULL,
    indexed_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS file_chunks (
    path TEXT NOT NULL REFERENCES file_index(path) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    vector BLOB NOT NULL,
    file_type TEXT NOT NULL,
    mtime REAL NOT NULL,
    PRIMARY KEY (path, chunk_index)
);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS goals (
    id TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    priority REAL NOT NULL,
    progress REAL NOT NULL,
    status TEXT NOT NULL,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS beliefs (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    confidence REAL NOT NULL,
    source TEXT NOT NULL,
    created_at DATETIME NOT NULL
);
"""


# Columns added after the first release: (table, column, definition)
MIGRATIONS = [
    ("memories", "connections", "TEXT NOT NULL DEFAULT '[]'"),
]


class BrainPersistence:
    """Durable storage backed by a single aiosqlite connection."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the database, switch to WAL and create the schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: transactions are opened explicitly below
            self._conn = await aiosqlite.connect(
                self.db_path,
                detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
                isolation_level=None,
            )
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=FULL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
            await self._conn.executescript(SCHEMA)
            await self._migrate()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        logger.info(f"Connected to brain database: {self.db_path}")

    async def _migrate(self) -> None:
        """Add columns that older databases lack."""
        for table, column, definition in MIGRATIONS:
            async with self._conn.execute(f"PRAGMA table_info({table})") as cursor:
                columns = {row[1] for row in await cursor.fetchall()}
            if column not in columns:
                await self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                logger.info(f"Added column {table}.{column}")

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise PersistenceError("Database not connected. Call connect() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialised write transaction; commits on success, rolls back otherwise."""
        conn = self.conn
        async with self._write_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot begin transaction: {e}") from e
            try:
                yield conn
                await conn.execute("COMMIT")
            except BaseException as e:
                try:
                    await conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.error(f"Rollback failed: {rollback_error}")
                if isinstance(e, sqlite3.Error):
                    raise PersistenceError(f"Transaction failed: {e}") from e
                raise

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[Any]:
        try:
            async with self.conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise PersistenceError(f"Query failed: {e}") from e

    # Memories

    async def save_memories(self, memories: Sequence[Memory], deleted_ids: Sequence[str] = ()) -> None:
        async with self.transaction() as conn:
            await conn.executemany(
                """INSERT INTO memories
                   (id, content, vector, memory_type, importance, created_at,
                    last_accessed, access_count, connections)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       content = excluded.content,
                       vector = excluded.vector,
                       memory_type = excluded.memory_type,
                       importance = excluded.importance,
                       last_accessed = excluded.last_accessed,
                       access_count = excluded.access_count,
                       connections = excluded.connections""",
                [
                    (
                        m.id,
                        m.content,
                        to_bytes(m.vector),
                        m.memory_type.value,
                        m.importance,
                        m.created_at,
                        m.last_accessed,
                        m.access_count,
                        json.dumps(list(m.connections)),
                    )
                    for m in memories
                ],
            )
            if deleted_ids:
                await conn.executemany(
                    "DELETE FROM memories WHERE id = ?", [(i,) for i in deleted_ids]
                )

    async def load_memories(self) -> list[Memory]:
        rows = await self._fetchall(
            """SELECT id, content, vector, memory_type, importance,
                      created_at, last_accessed, access_count, connections
               FROM memories ORDER BY created_at"""
        )
        memories = []
        for row in rows:
            try:
                memory_type = MemoryType(row[3])
            except ValueError:
                logger.warning(f"Skipping memory {row[0]} with unknown type {row[3]!r}")
                continue
            memories.append(Memory(
                id=row[0],
                content=row[1],
                vector=from_bytes(row[2]),
                memory_type=memory_type,
                importance=row[4],
                created_at=row[5],
                last_accessed=row[6],
                access_count=row[7],
                connections=tuple(json.loads(row[8])),
            ))
        return memories

    async def memory_count(self) -> int:
        rows = await self._fetchall("SELECT COUNT(*) FROM memories")
        return rows[0][0]

    # Q-table

    async def save_q_table(self, rows: Sequence[tuple[str, str, float, int]]) -> None:
        """Replace the stored Q-table with rows in one transaction."""
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM q_table")
            await conn.executemany(
                "INSERT INTO q_table (state, action, value, visit_count) VALUES (?, ?, ?, ?)",
                list(rows),
            )

    async def load_q_table(self) -> list[tuple[str, str, float, int]]:
        rows = await self._fetchall("SELECT state, action, value, visit_count FROM q_table")
        return [(r[0], r[1], r[2], r[3]) for r in rows]

    # Goals and beliefs

    async def save_goals(self, goals: Sequence[Goal]) -> None:
        """Replace the stored goals in one transaction."""
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM goals")
            await conn.executemany(
                """INSERT INTO goals
                   (id, description, priority, progress, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [
                    (g.id, g.description, g.priority, g.progress, g.status.value,
                     g.created_at, g.updated_at)
                    for g in goals
                ],
            )

    async def load_goals(self) -> list[Goal]:
        rows = await self._fetchall(
            """SELECT id, description, priority, progress, status, created_at, updated_at
               FROM goals ORDER BY created_at"""
        )
        goals = []
        for row in rows:
            try:
                status = GoalStatus(row[4])
            except ValueError:
                logger.warning(f"Skipping goal {row[0]} with unknown status {row[4]!r}")
                continue
            goals.append(Goal(
                id=row[0],
                description=row[1],
                priority=row[2],
                progress=row[3],
                status=status,
                created_at=row[5],
                updated_at=row[6],
            ))
        return goals

    async def save_beliefs(self, beliefs: Sequence[Belief]) -> None:
        """Replace the stored beliefs in one transaction."""
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM beliefs")
            await conn.executemany(
                """INSERT INTO beliefs (id, content, confidence, source, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                [(b.id, b.content, b.confidence, b.source, b.created_at) for b in beliefs],
            )

    async def load_beliefs(self) -> list[Belief]:
        rows = await self._fetchall(
            """SELECT id, content, confidence, source, created_at
               FROM beliefs ORDER BY created_at"""
        )
        return [Belief(*row) for row in rows]

    # File index

    async def replace_file_chunks(self, record: FileRecord, chunks: Sequence[FileChunk]) -> None:
        """Swap one file's chunks and bookkeeping in one transaction."""
        async with self.transaction() as conn:
            await conn.execute(
                """INSERT INTO file_index
                   (path, name, file_type, mtime, content_hash, chunk_count, indexed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(path) DO UPDATE SET
                       name = excluded.name,
                       file_type = excluded.file_type,
                       mtime = excluded.mtime,
                       content_hash = excluded.content_hash,
                       chunk_count = excluded.chunk_count,
                       indexed_at = excluded.indexed_at""",
                (
                    record.path,
                    record.name,
                    record.file_type,
                    record.mtime,
                    record.content_hash,
                    record.chunk_count,
                    record.indexed_at,
                ),
            )
            await conn.execute("DELETE FROM file_chunks WHERE path = ?", (record.path,))
            await conn.executemany(
                """INSERT INTO file_chunks (path, chunk_index, text, vector, file_type, mtime)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (c.path, c.chunk_index, c.text, to_bytes(c.vector), c.file_type, c.mtime)
                    for c in chunks
                ],
            )

    async def touch_file(self, path: str, mtime: float) -> None:
        """Record a new mtime for a file whose content did not change."""
        async with self.transaction() as conn:
            await conn.execute("UPDATE file_index SET mtime = ? WHERE path = ?", (mtime, path))
            await conn.execute("UPDATE file_chunks SET mtime = ? WHERE path = ?", (mtime, path))

    async def delete_file(self, path: str) -> None:
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM file_chunks WHERE path = ?", (path,))
            await conn.execute("DELETE FROM file_index WHERE path = ?", (path,))

    async def load_file_index(self) -> list[tuple[FileRecord, list[FileChunk]]]:
        record_rows = await self._fetchall(
            """SELECT path, name, file_type, mtime, content_hash, chunk_count, indexed_at
               FROM file_index"""
        )
        chunk_rows = await self._fetchall(
            """SELECT path, chunk_index, text, vector, file_type, mtime
               FROM file_chunks ORDER BY path, chunk_index"""
        )
        chunks_by_path: dict[str, list[FileChunk]] = {}
        for row in chunk_rows:
            chunks_by_path.setdefault(row[0], []).append(FileChunk(
                path=row[0],
                chunk_index=row[1],
                text=row[2],
                vector=from_bytes(row[3]),
                file_type=row[4],
                mtime=row[5],
            ))

        result = []
        for row in record_rows:
            record = FileRecord(
                path=row[0],
                name=row[1],
                file_type=row[2],
                mtime=row[3],
                content_hash=row[4],
                chunk_count=row[5],
                indexed_at=row[6],
            )
            result.append((record, chunks_by_path.get(record.path, [])))
        return result

    # Config

    async def save_config(self, key: str, value: Any) -> None:
        payload = json.dumps(value, default=str)
        async with self.transaction() as conn:
            await conn.execute(
                """INSERT INTO config (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, payload, datetime.now()),
            )

    async def load_config(self, key: str) -> Any | None:
        rows = await self._fetchall("SELECT value FROM config WHERE key = ?", (key,))
        if not rows:
            return None
        try:
            return json.loads(rows[0][0])
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt config value for {key!r}: {e}") from e
