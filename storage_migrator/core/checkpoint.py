"""Checkpoint persistence for resumable runs."""

import asyncio
import time
from typing import Any

import structlog

from ..models.records import utcnow
from ..models.state import Checkpoint
from .exceptions import CheckpointError, LockNotHeldError
from .lock import MigrationLock
from .state_store import StateStore

logger = structlog.get_logger()


class CheckpointManager:
    """Saves and loads run checkpoints.

    Each save inserts a new row and flips ``is_current`` in a single
    transaction, so a crash never leaves a half-written checkpoint. Older
    rows are kept for ``retention_hours`` and then pruned.
    """

    def __init__(
        self,
        store: StateStore,
        lock: MigrationLock | None = None,
        retention_hours: int = 72,
    ):
        self.store = store
        self.lock = lock
        self.retention_hours = retention_hours
        self._save_lock = asyncio.Lock()
        self.logger = logger.bind(component="checkpoint")

    async def save(self, checkpoint: Checkpoint) -> Checkpoint:
        """Persist ``checkpoint`` as the current one and renew the run lock."""
        checkpoint = checkpoint.model_copy(update={"updated_at": utcnow()}, deep=True)
        async with self._save_lock:
            try:
                async with self.store.transaction() as db:
                    await db.execute(
                        "UPDATE checkpoints SET is_current = 0 WHERE run_id = ? AND is_current = 1",
                        (checkpoint.run_id,),
                    )
                    await db.execute(
                        "INSERT INTO checkpoints (run_id, phase, batch, data, is_current, created_at) "
                        "VALUES (?, ?, ?, ?, 1, ?)",
                        (
                            checkpoint.run_id,
                            checkpoint.phase.value,
                            checkpoint.batch,
                            checkpoint.model_dump_json(),
                            time.time(),
                        ),
                    )
                    if self.lock is not None and self.lock.is_held:
                        await self.lock.refresh(db=db)
            except LockNotHeldError:
                raise
            except Exception as e:
                raise CheckpointError(
                    f"Failed to save checkpoint for run {checkpoint.run_id}: {e}"
                ) from e

        self.logger.debug(
            "Checkpoint saved",
            run_id=checkpoint.run_id,
            phase=checkpoint.phase.value,
            batch=checkpoint.batch,
            processed=len(checkpoint.processed_ids),
        )
        return checkpoint

    async def load_latest(self, run_id: str) -> Checkpoint | None:
        async with self.store.connect() as db:
            cursor = await db.execute(
                "SELECT data FROM checkpoints WHERE run_id = ? ORDER BY is_current DESC, id DESC LIMIT 1",
                (run_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        try:
            return Checkpoint.model_validate_json(row["data"])
        except ValueError as e:
            raise CheckpointError(f"Stored checkpoint for run {run_id} is unreadable: {e}") from e

    async def list_checkpoints(self, run_id: str | None = None) -> list[dict[str, Any]]:
        """Checkpoint summaries, newest first."""
        query = "SELECT id, run_id, phase, batch, data, is_current, created_at FROM checkpoints"
        params: tuple[str, ...] = ()
        if run_id is not None:
            query += " WHERE run_id = ?"
            params = (run_id,)
        query += " ORDER BY id DESC"

        async with self.store.connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        summaries = []
        for row in rows:
            checkpoint = Checkpoint.model_validate_json(row["data"])
            summaries.append(
                {
                    "id": row["id"],
                    "run_id": row["run_id"],
                    "phase": row["phase"],
                    "batch": row["batch"],
                    "processed": len(checkpoint.processed_ids),
                    "completed_phases": [p.value for p in checkpoint.completed_phases],
                    "is_current": bool(row["is_current"]),
                    "created_at": row["created_at"],
                }
            )
        return summaries

    async def prune(self, retention_hours: int | None = None) -> int:
        """Delete non-current checkpoints older than the retention window."""
        hours = self.retention_hours if retention_hours is None else retention_hours
        cutoff = time.time() - hours * 3600
        async with self.store.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM checkpoints WHERE is_current = 0 AND created_at < ?", (cutoff,)
            )
            removed = cursor.rowcount
        if removed:
            self.logger.info("Pruned old checkpoints", removed=removed, retention_hours=hours)
        return removed
