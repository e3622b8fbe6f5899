"""Pre-run metadata snapshots for snapshot rollback."""

import structlog
from pydantic import BaseModel, Field

from ..core.exceptions import RollbackError
from ..core.state_store import StateStore
from ..models.records import Record, utcnow
from ..repository.base import MetadataRepository

logger = structlog.get_logger()


class SnapshotInfo(BaseModel):
    """Snapshot information with schema guarantees."""

    run_id: str = Field(description="Run the snapshot belongs to")
    record_count: int = Field(description="Records captured")
    created_at: str = Field(description="ISO 8601 creation timestamp")
    reason: str = Field(default="Pre-migration snapshot", description="Reason, for the audit trail")


class BackupService:
    """Captures every record before a run so snapshot rollback can restore them."""

    def __init__(self, store: StateStore, batch_size: int = 500):
        self.store = store
        self.batch_size = batch_size
        self.logger = logger.bind(component="backup")

    async def snapshot(self, run_id: str, repository: MetadataRepository) -> SnapshotInfo:
        """Take the snapshot once; later calls for the same run return the existing one."""
        existing = await self.get_info(run_id)
        if existing is not None:
            self.logger.info("Snapshot already present", run_id=run_id, records=existing.record_count)
            return existing

        created_at = utcnow().isoformat()
        count = 0
        async with self.store.transaction() as db:
            async for page in repository.iter_records(self.batch_size):
                await db.executemany(
                    "INSERT INTO snapshot_records (run_id, record_id, data) VALUES (?, ?, ?)",
                    [(run_id, r.id, r.model_dump_json()) for r in page],
                )
                count += len(page)
            await db.execute(
                "INSERT INTO snapshots (run_id, record_count, created_at) VALUES (?, ?, ?)",
                (run_id, count, created_at),
            )

        self.logger.info("Metadata snapshot taken", run_id=run_id, records=count)
        return SnapshotInfo(run_id=run_id, record_count=count, created_at=created_at)

    async def get_info(self, run_id: str) -> SnapshotInfo | None:
        async with self.store.connect() as db:
            cursor = await db.execute(
                "SELECT run_id, record_count, created_at FROM snapshots WHERE run_id = ?", (run_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return SnapshotInfo(run_id=row["run_id"], record_count=row["record_count"], created_at=row["created_at"])

    async def load(self, run_id: str) -> list[Record]:
        """Records captured for ``run_id``.

        Raises:
            RollbackError: No snapshot exists for the run
        """
        info = await self.get_info(run_id)
        if info is None:
            raise RollbackError(f"No pre-run snapshot exists for run '{run_id}'")
        async with self.store.connect() as db:
            cursor = await db.execute(
                "SELECT data FROM snapshot_records WHERE run_id = ? ORDER BY record_id", (run_id,)
            )
            rows = await cursor.fetchall()
        records = [Record.model_validate_json(row["data"]) for row in rows]
        if len(records) != info.record_count:
            raise RollbackError(
                f"Snapshot for run '{run_id}' is incomplete ({len(records)} of {info.record_count} records)"
            )
        return records
