"""Append-only, batch-flushed change log."""

import asyncio
from collections.abc import Iterable

import structlog

from ..models.enums import ChangeOperation, Phase
from ..models.state import ChangeLogEntry, TransferIntent
from .exceptions import CheckpointError
from .logging_config import get_audit_logger
from .state_store import StateStore

logger = structlog.get_logger()


class ChangeLogManager:
    """Buffers change-log entries for one run and flushes them in batches.

    Sequence numbers are monotonic per run and continue across resumed
    invocations (``initialize`` reads the highest persisted sequence).

    Object transfers are announced through ``announce_transfer`` before they
    start, so a crash between a transfer and the flush of its entry leaves a
    pending intent behind instead of an unlogged move.
    """

    def __init__(self, store: StateStore, run_id: str, flush_every: int = 5):
        self.store = store
        self.run_id = run_id
        self.flush_every = max(1, flush_every)
        self._buffer: list[ChangeLogEntry] = []
        self._next_sequence: int | None = None
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="changelog", run_id=run_id)
        self.audit = get_audit_logger().bind(run_id=run_id)

    async def initialize(self) -> None:
        async with self.store.connect() as db:
            cursor = await db.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM changelog WHERE run_id = ?", (self.run_id,)
            )
            row = await cursor.fetchone()
        self._next_sequence = int(row[0]) + 1
        self.logger.debug("Change log ready", next_sequence=self._next_sequence)

    @property
    def pending(self) -> int:
        """Entries logged but not yet flushed."""
        return len(self._buffer)

    async def log(self, entry: ChangeLogEntry) -> ChangeLogEntry:
        """Assign the next sequence number and buffer the entry.

        Flushes automatically once ``flush_every`` entries are pending.
        """
        async with self._lock:
            if self._next_sequence is None:
                await self.initialize()
            entry = entry.model_copy(update={"run_id": self.run_id, "sequence": self._next_sequence})
            self._next_sequence += 1
            self._buffer.append(entry)
            self.audit.info(
                "Change logged",
                sequence=entry.sequence,
                phase=entry.phase.value,
                operation=entry.operation.value,
                record_id=entry.record_id,
                before=entry.before,
                after=entry.after,
            )
            if len(self._buffer) >= self.flush_every:
                await self._flush_locked()
        return entry

    async def flush(self) -> int:
        """Persist buffered entries; returns how many were written.

        Transfer intents named by the flushed entries are cleared in the same
        transaction.
        """
        async with self._lock:
            return await self._flush_locked()

    async def _flush_locked(self) -> int:
        if not self._buffer:
            return 0
        rows = [
            (
                entry.run_id,
                entry.sequence,
                entry.phase.value,
                entry.operation.value,
                entry.record_id,
                entry.model_dump_json(),
                entry.timestamp.isoformat(),
            )
            for entry in self._buffer
        ]
        settled = [(self.run_id, e.details["intent_id"]) for e in self._buffer if e.details.get("intent_id")]
        try:
            async with self.store.transaction() as db:
                await db.executemany(
                    "INSERT INTO changelog (run_id, sequence, phase, operation, record_id, data, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
                if settled:
                    await db.executemany(
                        "DELETE FROM transfer_intents WHERE run_id = ? AND intent_id = ?", settled
                    )
        except Exception as e:
            raise CheckpointError(f"Failed to flush change log for run {self.run_id}: {e}") from e
        count = len(self._buffer)
        self._buffer.clear()
        self.logger.debug("Change log flushed", entries=count, intents_settled=len(settled))
        return count

    async def announce_transfer(self, intent: TransferIntent) -> TransferIntent:
        """Persist ``intent`` right away, before its transfer starts.

        Raises:
            CheckpointError: The intent could not be written; the transfer must not start
        """
        intent = intent.model_copy(update={"run_id": self.run_id})
        try:
            async with self.store.transaction() as db:
                await db.execute(
                    "INSERT INTO transfer_intents (run_id, intent_id, phase, data, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        intent.run_id,
                        intent.intent_id,
                        intent.phase.value,
                        intent.model_dump_json(),
                        intent.created_at.isoformat(),
                    ),
                )
        except Exception as e:
            raise CheckpointError(f"Failed to record transfer intent for run {self.run_id}: {e}") from e
        self.audit.info(
            "Transfer announced",
            intent_id=intent.intent_id,
            phase=intent.phase.value,
            operation=intent.operation.value,
            record_id=intent.record_id,
            source=str(intent.source),
            target=str(intent.target),
        )
        return intent

    async def discard_transfer(self, intent_id: str) -> None:
        """Forget an intent whose transfer left nothing to log."""
        async with self.store.transaction() as db:
            await db.execute(
                "DELETE FROM transfer_intents WHERE run_id = ? AND intent_id = ?", (self.run_id, intent_id)
            )
        self.audit.info("Transfer intent discarded", intent_id=intent_id)

    async def pending_transfers(self) -> list[TransferIntent]:
        """Announced transfers of this run with no flushed entry, oldest first."""
        async with self.store.connect() as db:
            cursor = await db.execute(
                "SELECT data FROM transfer_intents WHERE run_id = ? ORDER BY created_at, intent_id",
                (self.run_id,),
            )
            rows = await cursor.fetchall()
        return [TransferIntent.model_validate_json(row["data"]) for row in rows]

    async def load_all(
        self,
        run_id: str | None = None,
        phases: Iterable[Phase] | None = None,
        operations: Iterable[ChangeOperation] | None = None,
    ) -> list[ChangeLogEntry]:
        """Persisted entries in sequence order (buffered entries are not included)."""
        run_id = run_id or self.run_id
        query = "SELECT data FROM changelog WHERE run_id = ?"
        params: list[str] = [run_id]
        if phases is not None:
            phase_values = [p.value for p in phases]
            if not phase_values:
                return []
            query += f" AND phase IN ({','.join('?' * len(phase_values))})"
            params.extend(phase_values)
        if operations is not None:
            op_values = [o.value for o in operations]
            if not op_values:
                return []
            query += f" AND operation IN ({','.join('?' * len(op_values))})"
            params.extend(op_values)
        query += " ORDER BY sequence"

        async with self.store.connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [ChangeLogEntry.model_validate_json(row["data"]) for row in rows]

    async def count(self, run_id: str | None = None) -> int:
        async with self.store.connect() as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM changelog WHERE run_id = ?", (run_id or self.run_id,)
            )
            row = await cursor.fetchone()
        return int(row[0])
