"""Isolation of unreferenced objects and unused records (never deletes)."""

import structlog

from ..models.enums import ChangeOperation, Phase
from ..models.records import ObjectKey
from ..models.results import PhaseOutcome
from ..models.state import ChangeLogEntry, Checkpoint, TransferIntent
from ..utils import join_path, split_extension
from .inventory import Inventory
from .phases import BatchProcessor, PhaseContext
from .recovery import TransferRecovery

logger = structlog.get_logger()

OBJECT_ITEM = "object:"
RECORD_ITEM = "record:"


def object_item_id(key: ObjectKey) -> str:
    return f"{OBJECT_ITEM}{key.location}:{key.path}"


def parse_object_item(item_id: str) -> ObjectKey:
    location, path = item_id[len(OBJECT_ITEM) :].split(":", 1)
    return ObjectKey(location=location, path=path)


class QuarantineService:
    """Relocates orphaned objects and unused records under the quarantine prefix.

    Reference counts are re-checked right before each move, so objects a
    concurrent repair relinked and records that became live are skipped.
    """

    def __init__(self, context: PhaseContext):
        self.context = context
        self.config = context.config
        self.logger = logger.bind(component="quarantine")

    def quarantine_key(self, source: ObjectKey) -> ObjectKey:
        return ObjectKey(
            location=self.config.quarantine_location,
            path=join_path(self.config.quarantine_prefix, source.location, source.path),
        )

    async def _free_quarantine_key(self, source: ObjectKey) -> ObjectKey:
        key = self.quarantine_key(source)
        if not await self.context.storage.exists(key.location, key.path):
            return key
        stem, ext = split_extension(key.path)
        suffix = f".{key.path.rsplit('.', 1)[1]}" if ext else ""
        return ObjectKey(location=key.location, path=f"{stem}.{self.context.run_id}{suffix}")

    async def _transfer(self, intent: TransferIntent) -> TransferIntent:
        ctx = self.context
        intent = await ctx.changelog.announce_transfer(intent)
        try:
            await ctx.retry(
                lambda: ctx.resolver.transfer(intent.source, intent.target),
                signature="quarantine.transfer_object",
            )
        except Exception:
            await TransferRecovery(ctx).abandon(intent)
            raise
        if intent.size and ctx.checkpoint is not None:
            ctx.checkpoint.increment("bytes_quarantined", intent.size)
        return intent

    async def quarantine_object(self, key: ObjectKey, inventory: Inventory) -> list[ChangeLogEntry]:
        ctx = self.context
        referencing = await ctx.retry(
            lambda: ctx.repository.find_by_path(key.location, key.path),
            signature="quarantine.recheck",
        )
        if referencing:
            self.logger.info(
                "Skipping object that gained a reference",
                object=str(key),
                record_ids=[r.id for r in referencing],
            )
            return []

        target = await self._free_quarantine_key(key)
        meta = inventory.objects.get(key)
        intent = await self._transfer(
            TransferIntent(
                run_id=ctx.run_id,
                phase=Phase.QUARANTINE,
                operation=ChangeOperation.OBJECT_QUARANTINED,
                source=key,
                target=target,
                size=meta.size if meta else None,
            )
        )
        inventory.remove_object(key)
        entry = await ctx.log(
            ChangeLogEntry(
                run_id=ctx.run_id,
                phase=Phase.QUARANTINE,
                operation=ChangeOperation.OBJECT_QUARANTINED,
                before={"location": key.location, "path": key.path},
                after={"location": target.location, "path": target.path},
                details={"intent_id": intent.intent_id},
            )
        )
        self.logger.info("Object quarantined", source=str(key), target=str(target))
        return [entry]

    async def quarantine_record(self, record_id: str, inventory: Inventory) -> list[ChangeLogEntry]:
        ctx = self.context
        record = await ctx.retry(
            lambda: ctx.repository.find_by_id(record_id), signature="quarantine.recheck"
        )
        if record is None or record.live:
            self.logger.info("Skipping record that is no longer unused", record_id=record_id)
            return []
        sharing = await ctx.retry(
            lambda: ctx.repository.find_by_path(record.location, record.key.path),
            signature="quarantine.recheck",
        )
        if any(r.id != record.id for r in sharing):
            self.logger.info(
                "Skipping unused record whose object is shared",
                record_id=record.id,
                shared_with=[r.id for r in sharing if r.id != record.id],
            )
            return []

        source = record.key
        target = await self._free_quarantine_key(source)
        meta = inventory.objects.get(source)
        intent = await self._transfer(
            TransferIntent(
                run_id=ctx.run_id,
                phase=Phase.QUARANTINE,
                operation=ChangeOperation.RECORD_QUARANTINED,
                record_id=record.id,
                source=source,
                target=target,
                size=meta.size if meta else None,
                record_before=record.pointer(),
            )
        )
        inventory.remove_object(source)
        await ctx.retry(
            lambda: ctx.repository.update_location_and_path(record.id, target.location, target.path),
            signature="quarantine.update_record",
        )
        if record.id in inventory.records:
            inventory.repoint_record(record.id, target.location, target.path)
        entry = await ctx.log(
            ChangeLogEntry(
                run_id=ctx.run_id,
                phase=Phase.QUARANTINE,
                operation=ChangeOperation.RECORD_QUARANTINED,
                record_id=record.id,
                before=record.pointer(),
                after={"location": target.location, "path": target.path},
                details={"intent_id": intent.intent_id},
            )
        )
        self.logger.info("Unused record quarantined", record_id=record.id, source=str(source), target=str(target))
        return [entry]

    async def handle_item(self, item_id: str, inventory: Inventory) -> list[ChangeLogEntry]:
        if item_id.startswith(OBJECT_ITEM):
            return await self.quarantine_object(parse_object_item(item_id), inventory)
        return await self.quarantine_record(item_id[len(RECORD_ITEM) :], inventory)

    def collect_items(self, inventory: Inventory) -> list[str]:
        items = [object_item_id(key) for key in inventory.orphaned_objects()]
        for record_id in sorted(inventory.records):
            record = inventory.records[record_id]
            if not record.live and record.key in inventory.objects:
                items.append(f"{RECORD_ITEM}{record_id}")
        return items

    async def run(self, inventory: Inventory, checkpoint: Checkpoint) -> PhaseOutcome:
        items = self.collect_items(inventory)
        processor = BatchProcessor(self.context, Phase.QUARANTINE)
        outcome = await processor.run(
            checkpoint,
            items,
            lambda item_id: self.handle_item(item_id, inventory),
        )
        objects = sum(1 for e in outcome.entries if e.operation == ChangeOperation.OBJECT_QUARANTINED)
        records = sum(1 for e in outcome.entries if e.operation == ChangeOperation.RECORD_QUARANTINED)
        checkpoint.increment("objects_quarantined", objects)
        checkpoint.increment("records_quarantined", records)
        self.logger.info("Quarantine finished", candidates=len(items), objects=objects, records=records)
        return outcome
