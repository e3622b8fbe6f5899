"""Reconciliation of object transfers announced but never logged."""

import structlog

from ..models.enums import ChangeOperation
from ..models.records import ObjectKey
from ..models.state import ChangeLogEntry, TransferIntent
from .phases import PhaseContext

logger = structlog.get_logger()

# Entry written for the record pointer once the object is in place
POINTER_OPERATIONS = {
    ChangeOperation.OBJECT_MOVED: ChangeOperation.RECORD_PATH_UPDATED,
    ChangeOperation.RECORD_QUARANTINED: ChangeOperation.RECORD_QUARANTINED,
}


def _pointer(key: ObjectKey) -> dict[str, str]:
    return {"location": key.location, "path": key.path}


class TransferRecovery:
    """Settles transfer intents that survived the invocation announcing them.

    Storage decides each outcome. When the target holds the whole object the
    transfer is finished: the source is removed unless it was kept, a record
    still naming the source is repointed, and the missing entries are logged.
    Otherwise the transfer never completed: a partial copy is removed while
    the source is intact, and the intent is dropped without an entry.
    """

    def __init__(self, context: PhaseContext):
        self.context = context
        self.logger = logger.bind(component="transfer_recovery")

    async def recover(self) -> list[ChangeLogEntry]:
        """Settle every pending intent of the run; returns the entries written."""
        ctx = self.context
        intents = await ctx.changelog.pending_transfers()
        if not intents:
            return []

        entries: list[ChangeLogEntry] = []
        completed = 0
        for intent in intents:
            if await self.transfer_completed(intent):
                entries.extend(await self.complete(intent))
                completed += 1
            else:
                await self.undo(intent)
        await ctx.changelog.flush()
        self.logger.warning(
            "Reconciled interrupted transfers",
            intents=len(intents),
            completed=completed,
            undone=len(intents) - completed,
        )
        return entries

    async def _stat(self, key: ObjectKey):
        storage = self.context.storage
        return await self.context.retry(lambda: storage.stat(key.location, key.path), signature="recovery.inspect")

    async def _exists(self, key: ObjectKey) -> bool:
        storage = self.context.storage
        return await self.context.retry(
            lambda: storage.exists(key.location, key.path), signature="recovery.inspect"
        )

    async def transfer_completed(self, intent: TransferIntent) -> bool:
        """Whether the target holds the whole object."""
        placed = await self._stat(intent.target)
        if placed is None:
            return False
        if intent.size is None or placed.size == intent.size:
            return True
        if await self._exists(intent.source):
            return False
        self.logger.error(
            "Transfer target is short and its source is gone; keeping the target",
            intent_id=intent.intent_id,
            target=str(intent.target),
            expected_size=intent.size,
            found_size=placed.size,
        )
        return True

    async def undo(self, intent: TransferIntent) -> None:
        ctx = self.context
        if not await self._exists(intent.source):
            self.logger.error(
                "Announced transfer left no object behind",
                intent_id=intent.intent_id,
                source=str(intent.source),
                target=str(intent.target),
            )
        elif await self._exists(intent.target):
            target = intent.target
            await ctx.retry(
                lambda: ctx.storage.delete(target.location, target.path), signature="recovery.discard_partial"
            )
            self.logger.warning("Removed partial transfer copy", intent_id=intent.intent_id, target=str(target))
        await ctx.changelog.discard_transfer(intent.intent_id)

    async def abandon(self, intent: TransferIntent) -> None:
        """Clean up after a transfer that raised.

        A transfer that nonetheless reached its target stays pending and is
        completed by the next invocation.
        """
        if await self.transfer_completed(intent):
            self.logger.warning(
                "Failed transfer reached its target; left for reconciliation",
                intent_id=intent.intent_id,
                target=str(intent.target),
            )
            return
        await self.undo(intent)

    async def _move_logged(self, intent: TransferIntent) -> bool:
        entries = await self.context.changelog.load_all(
            phases=[intent.phase], operations=[ChangeOperation.OBJECT_MOVED]
        )
        return any(e.details.get("transfer") == intent.intent_id for e in entries)

    async def complete(self, intent: TransferIntent) -> list[ChangeLogEntry]:
        ctx = self.context
        source, target = intent.source, intent.target
        if not intent.keep_source and await self._exists(source):
            await ctx.retry(
                lambda: ctx.storage.delete(source.location, source.path), signature="recovery.finish_transfer"
            )

        pointer_operation = POINTER_OPERATIONS.get(intent.operation)
        record = None
        if pointer_operation and intent.record_id:
            record_id = intent.record_id
            record = await ctx.retry(lambda: ctx.repository.find_by_id(record_id), signature="recovery.inspect")
        follows = record is not None and record.pointer() in (_pointer(source), _pointer(target))
        if record is not None and not follows:
            self.logger.warning(
                "Record no longer points at the transferred object",
                intent_id=intent.intent_id,
                record_id=record.id,
            )

        # The last entry written for a transfer carries intent_id and settles it
        settles = {"intent_id": intent.intent_id, "recovered": True}
        entries: list[ChangeLogEntry] = []
        if intent.operation == ChangeOperation.OBJECT_MOVED and not await self._move_logged(intent):
            details = {"transfer": intent.intent_id, "kept_source": intent.keep_source, "recovered": True}
            if not follows:
                details.update(settles)
            entries.append(
                await ctx.log(
                    ChangeLogEntry(
                        run_id=ctx.run_id,
                        phase=intent.phase,
                        operation=ChangeOperation.OBJECT_MOVED,
                        record_id=intent.record_id,
                        before=_pointer(source),
                        after=_pointer(target),
                        details=details,
                    )
                )
            )

        if follows:
            if record.pointer() == _pointer(source):
                await ctx.retry(
                    lambda: ctx.repository.update_location_and_path(record.id, target.location, target.path),
                    signature="recovery.update_record",
                )
            entries.append(
                await ctx.log(
                    ChangeLogEntry(
                        run_id=ctx.run_id,
                        phase=intent.phase,
                        operation=pointer_operation,
                        record_id=record.id,
                        before=intent.record_before or _pointer(source),
                        after=_pointer(target),
                        details=settles,
                    )
                )
            )
        elif intent.operation != ChangeOperation.OBJECT_MOVED:
            # Nothing follows the object any more; it was quarantined on its own
            entries.append(
                await ctx.log(
                    ChangeLogEntry(
                        run_id=ctx.run_id,
                        phase=intent.phase,
                        operation=ChangeOperation.OBJECT_QUARANTINED,
                        before=_pointer(source),
                        after=_pointer(target),
                        details=settles,
                    )
                )
            )

        if not any(e.details.get("intent_id") for e in entries):
            await ctx.changelog.discard_transfer(intent.intent_id)
        self.logger.info(
            "Interrupted transfer completed",
            intent_id=intent.intent_id,
            operation=intent.operation.value,
            record_id=intent.record_id,
            source=str(source),
            target=str(target),
            entries=len(entries),
        )
        return entries
