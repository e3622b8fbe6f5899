"""Moves objects of live records to their canonical location and path."""

import asyncio

import structlog

from ..models.enums import ChangeOperation, Phase, RecordClassification
from ..models.records import ObjectKey, Record
from ..models.results import PhaseOutcome
from ..models.state import ChangeLogEntry, Checkpoint, TransferIntent
from ..utils import join_path, split_extension
from .inventory import Inventory
from .phases import BatchProcessor, PhaseContext
from .recovery import TransferRecovery

logger = structlog.get_logger()


class ConsolidationService:
    """Relocates each live, linked record's object to ``target_prefix/<name>``.

    An occupied canonical path gets the record id appended to the stem, so no
    object is ever overwritten. A source still referenced by another record
    is copied rather than moved.
    """

    def __init__(self, context: PhaseContext):
        self.context = context
        self.config = context.config
        self._allocation_lock = asyncio.Lock()
        self._reserved: set[ObjectKey] = set()
        self.logger = logger.bind(component="consolidation")

    async def _occupied(self, key: ObjectKey, inventory: Inventory) -> bool:
        if key in inventory.objects or key in self._reserved:
            return True
        return await self.context.storage.exists(key.location, key.path)

    async def allocate_canonical_key(self, record: Record, inventory: Inventory) -> ObjectKey:
        """Free canonical key for ``record``; reserved until the phase ends."""
        target = self.config.target_location
        name = record.stored_name
        stem, ext = split_extension(name)
        suffix = f".{name.rsplit('.', 1)[1]}" if ext else ""

        async with self._allocation_lock:
            candidates = [join_path(self.config.target_prefix, name)]
            candidates.append(join_path(self.config.target_prefix, f"{stem}-{record.id}{suffix}"))
            attempt = 2
            while True:
                for path in candidates:
                    key = ObjectKey(location=target, path=path)
                    if not await self._occupied(key, inventory):
                        self._reserved.add(key)
                        return key
                candidates = [join_path(self.config.target_prefix, f"{stem}-{record.id}-{attempt}{suffix}")]
                attempt += 1

    async def consolidate_record(self, record_id: str, inventory: Inventory) -> list[ChangeLogEntry]:
        ctx = self.context
        record = inventory.records[record_id]
        source = record.key
        target = await self.allocate_canonical_key(record, inventory)
        # Any other record (live or not) on the same object keeps the source in place
        keep_source = bool(inventory.references.get(source, set()) - {record.id})

        source_meta = inventory.objects.get(source)
        intent = await ctx.changelog.announce_transfer(
            TransferIntent(
                run_id=ctx.run_id,
                phase=Phase.CONSOLIDATION,
                operation=ChangeOperation.OBJECT_MOVED,
                record_id=record.id,
                source=source,
                target=target,
                keep_source=keep_source,
                size=source_meta.size if source_meta else None,
                record_before=record.pointer(),
            )
        )
        try:
            strategy = await ctx.retry(
                lambda: ctx.resolver.transfer(source, target, keep_source=keep_source),
                signature="consolidation.transfer",
            )
        except Exception:
            await TransferRecovery(ctx).abandon(intent)
            raise
        if source_meta is not None and ctx.checkpoint is not None:
            ctx.checkpoint.increment("bytes_consolidated", source_meta.size)
        inventory.move_object(source, target, keep_source=keep_source)
        moved = await ctx.log(
            ChangeLogEntry(
                run_id=ctx.run_id,
                phase=Phase.CONSOLIDATION,
                operation=ChangeOperation.OBJECT_MOVED,
                record_id=record.id,
                before={"location": source.location, "path": source.path},
                after={"location": target.location, "path": target.path},
                details={"strategy": strategy, "kept_source": keep_source, "transfer": intent.intent_id},
            )
        )

        await ctx.retry(
            lambda: ctx.repository.update_location_and_path(record.id, target.location, target.path),
            signature="consolidation.update_record",
        )
        inventory.repoint_record(record.id, target.location, target.path)
        updated = await ctx.log(
            ChangeLogEntry(
                run_id=ctx.run_id,
                phase=Phase.CONSOLIDATION,
                operation=ChangeOperation.RECORD_PATH_UPDATED,
                record_id=record.id,
                before=record.pointer(),
                after={"location": target.location, "path": target.path},
                details={"intent_id": intent.intent_id},
            )
        )
        self.logger.info(
            "Record consolidated",
            record_id=record.id,
            source=str(source),
            target=str(target),
            strategy=strategy,
            kept_source=keep_source,
        )
        return [moved, updated]

    async def recover_incomplete_moves(self, inventory: Inventory) -> list[ChangeLogEntry]:
        """Finish records whose object moved in an earlier invocation but whose pointer did not."""
        ctx = self.context
        entries = await ctx.changelog.load_all(
            phases=[Phase.CONSOLIDATION],
            operations=[ChangeOperation.OBJECT_MOVED, ChangeOperation.RECORD_PATH_UPDATED],
        )
        updated_ids = {e.record_id for e in entries if e.operation == ChangeOperation.RECORD_PATH_UPDATED}
        recovered = []
        for entry in entries:
            if entry.operation != ChangeOperation.OBJECT_MOVED or entry.record_id in updated_ids:
                continue
            record = inventory.records.get(entry.record_id or "")
            if record is None or record.pointer() != entry.before:
                continue
            target = ObjectKey(**entry.after)
            if target not in inventory.objects:
                continue
            await ctx.retry(
                lambda record=record, target=target: ctx.repository.update_location_and_path(
                    record.id, target.location, target.path
                ),
                signature="consolidation.update_record",
            )
            inventory.repoint_record(record.id, target.location, target.path)
            recovered.append(
                await ctx.log(
                    ChangeLogEntry(
                        run_id=ctx.run_id,
                        phase=Phase.CONSOLIDATION,
                        operation=ChangeOperation.RECORD_PATH_UPDATED,
                        record_id=record.id,
                        before=record.pointer(),
                        after=entry.after,
                        details={"recovered_from_sequence": entry.sequence},
                    )
                )
            )
        if recovered:
            await ctx.changelog.flush()
            self.logger.warning("Completed interrupted consolidation moves", records=len(recovered))
        return recovered

    async def run(self, inventory: Inventory, checkpoint: Checkpoint) -> PhaseOutcome:
        recovered = await self.recover_incomplete_moves(inventory)
        pending = [
            rid
            for rid in inventory.records_with(RecordClassification.LINKED_WRONG_LOCATION)
            if inventory.records[rid].live
        ]
        processor = BatchProcessor(self.context, Phase.CONSOLIDATION)
        try:
            outcome = await processor.run(
                checkpoint,
                pending,
                lambda record_id: self.consolidate_record(record_id, inventory),
                counter="records_consolidated",
            )
        finally:
            self._reserved.clear()
        outcome.entries[:0] = recovered
        self.logger.info(
            "Consolidation finished",
            pending=len(pending),
            recovered=len(recovered),
            failures=len(outcome.failures),
        )
        return outcome
