"""SQLite state store shared by checkpoints, the change log, transfer intents, locks and run records."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
import structlog

from ..constants import STATE_DB_FILENAME

logger = structlog.get_logger()

BUSY_TIMEOUT_MS = 30000

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        scope TEXT NOT NULL,
        status TEXT NOT NULL,
        config TEXT NOT NULL,  -- JSON serialized MigrationConfig
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_error TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id TEXT NOT NULL,
        phase TEXT NOT NULL,
        batch INTEGER NOT NULL DEFAULT 0,
        data TEXT NOT NULL,  -- JSON serialized Checkpoint
        is_current INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS changelog (
        run_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        phase TEXT NOT NULL,
        operation TEXT NOT NULL,
        record_id TEXT,
        data TEXT NOT NULL,  -- JSON serialized ChangeLogEntry
        created_at TEXT NOT NULL,
        PRIMARY KEY (run_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transfer_intents (
        run_id TEXT NOT NULL,
        intent_id TEXT NOT NULL,
        phase TEXT NOT NULL,
        data TEXT NOT NULL,  -- JSON serialized TransferIntent
        created_at TEXT NOT NULL,
        PRIMARY KEY (run_id, intent_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS locks (
        scope TEXT PRIMARY KEY,
        run_id TEXT NOT NULL,
        holder TEXT NOT NULL,
        acquired_at REAL NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS snapshots (
        run_id TEXT PRIMARY KEY,
        record_count INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS snapshot_records (
        run_id TEXT NOT NULL,
        record_id TEXT NOT NULL,
        data TEXT NOT NULL,  -- JSON serialized Record
        PRIMARY KEY (run_id, record_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS duplicate_groups (
        run_id TEXT NOT NULL,
        group_key TEXT NOT NULL,
        status TEXT NOT NULL,
        data TEXT NOT NULL,  -- JSON serialized DuplicateGroup
        updated_at TEXT NOT NULL,
        PRIMARY KEY (run_id, group_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_run_current ON checkpoints(run_id, is_current)",
    "CREATE INDEX IF NOT EXISTS idx_checkpoints_created ON checkpoints(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_changelog_run_phase ON changelog(run_id, phase)",
    "CREATE INDEX IF NOT EXISTS idx_runs_scope ON runs(scope, status)",
)


class StateStore:
    """Crash-safe run state in one SQLite database (WAL journal).

    Every manager opens its own short-lived connection through ``connect()``
    so state written by one invocation is readable from any later process.
    """

    def __init__(self, state_dir: Path | str, filename: str = STATE_DB_FILENAME):
        self.state_dir = Path(state_dir)
        self.db_path = self.state_dir / filename
        self._initialized = False

    async def initialize(self) -> None:
        """Create the state directory and schema (idempotent)."""
        if self._initialized:
            return
        self.state_dir.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()
        self._initialized = True
        logger.info("State store initialized", db_path=str(self.db_path))

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with row access by column name."""
        if not self._initialized:
            await self.initialize()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Connection inside an immediate write transaction.

        Commits on normal exit and rolls back on any exception, so a
        multi-statement write is never half-applied.
        """
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()
