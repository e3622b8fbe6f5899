"""SQLite-backed metadata repository."""

from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from pathlib import Path

import aiosqlite

from ..models.records import Record
from ..utils import clean_path
from .base import MetadataRepository

_COLUMNS = "id, filename, location, path, size, fingerprint, modified_at, live"


def _row_to_record(row: aiosqlite.Row) -> Record:
    return Record(
        id=row["id"],
        filename=row["filename"],
        location=row["location"],
        path=row["path"],
        size=row["size"],
        fingerprint=row["fingerprint"],
        modified_at=datetime.fromisoformat(row["modified_at"]),
        live=bool(row["live"]),
    )


def _record_params(record: Record) -> tuple:
    return (
        record.id,
        record.filename,
        record.location,
        clean_path(record.path),
        record.size,
        record.fingerprint,
        record.modified_at.isoformat(),
        int(record.live),
    )


class SqliteMetadataRepository(MetadataRepository):
    """Records in a ``records`` table of a standalone SQLite file."""

    def __init__(self, db_path: Path | str):
        super().__init__()
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    id TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    location TEXT NOT NULL,
                    path TEXT NOT NULL,
                    size INTEGER NOT NULL DEFAULT 0,
                    fingerprint TEXT,
                    modified_at TEXT NOT NULL,  -- ISO timestamp
                    live INTEGER NOT NULL DEFAULT 1
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_records_filename ON records(filename)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_records_location_path ON records(location, path)")
            await db.commit()
        self.logger.info("Metadata repository initialized", db_path=str(self.db_path))

    async def _fetch(self, query: str, params: tuple = ()) -> list[Record]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def find_by_filename(self, name: str) -> list[Record]:
        return await self._fetch(f"SELECT {_COLUMNS} FROM records WHERE filename = ? ORDER BY id", (name,))

    async def find_by_id(self, record_id: str) -> Record | None:
        records = await self._fetch(f"SELECT {_COLUMNS} FROM records WHERE id = ?", (record_id,))
        return records[0] if records else None

    async def find_by_path(self, location: str, path: str) -> list[Record]:
        return await self._fetch(
            f"SELECT {_COLUMNS} FROM records WHERE location = ? AND path = ? ORDER BY id",
            (location, clean_path(path)),
        )

    async def update_location_and_path(self, record_id: str, location: str, path: str) -> Record:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE records SET location = ?, path = ? WHERE id = ?",
                (location, clean_path(path), record_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise KeyError(record_id)
        record = await self.find_by_id(record_id)
        if record is None:
            raise KeyError(record_id)
        return record

    async def mark_removed(self, record_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM records WHERE id = ?", (record_id,))
            await db.commit()

    async def iter_records(self, batch_size: int = 100) -> AsyncIterator[list[Record]]:
        last_id = ""
        while True:
            page = await self._fetch(
                f"SELECT {_COLUMNS} FROM records WHERE id > ? ORDER BY id LIMIT ?",
                (last_id, batch_size),
            )
            if not page:
                return
            yield page
            last_id = page[-1].id

    async def restore_record(self, record: Record) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"INSERT OR REPLACE INTO records ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                _record_params(record),
            )
            await db.commit()

    async def restore_snapshot(self, records: Iterable[Record]) -> int:
        params = [_record_params(r) for r in records]
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await db.execute("DELETE FROM records")
                await db.executemany(
                    f"INSERT INTO records ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)", params
                )
            except Exception:
                await db.rollback()
                raise
            await db.commit()
        return len(params)

    async def count(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM records")
            row = await cursor.fetchone()
        return int(row[0])
