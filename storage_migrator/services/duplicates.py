"""Resolution of multiple live records pointing at one physical object."""

import hashlib
from collections.abc import Iterable

import structlog

from ..core.exceptions import DataIntegrityError
from ..models.enums import ChangeOperation, DuplicateGroupStatus, Phase
from ..models.records import Record
from ..models.results import DuplicateGroup, PhaseOutcome
from ..models.state import ChangeLogEntry, Checkpoint
from ..utils import basename, join_path
from .inventory import Inventory
from .phases import BatchProcessor, PhaseContext

logger = structlog.get_logger()


def select_primary_record(records: Iterable[Record], canonical_location: str) -> Record:
    """Most recently modified wins, then the canonical location, then the lowest id."""
    ordered = sorted(
        records,
        key=lambda r: (-r.modified_at.timestamp(), r.location != canonical_location, r.id),
    )
    if not ordered:
        raise ValueError("Cannot select a primary record from an empty group")
    return ordered[0]


def group_hash(group_key: str) -> str:
    return hashlib.sha256(group_key.encode()).hexdigest()[:16]


class DuplicateResolutionService:
    """Stages, verifies, then removes non-primary duplicate records.

    Source bytes are never deleted. Group status is persisted so a resumed
    run skips resolved groups and re-verifies staged ones.
    """

    def __init__(self, context: PhaseContext):
        self.context = context
        self.config = context.config
        self.logger = logger.bind(component="duplicate_resolution")

    def find_groups(self, inventory: Inventory) -> list[DuplicateGroup]:
        groups = []
        for key in sorted(inventory.references, key=lambda k: (k.location, k.path)):
            if key not in inventory.objects:
                continue
            live = inventory.live_references(key)
            if len(live) > 1:
                groups.append(DuplicateGroup(location=key.location, path=key.path, record_ids=live))
        return groups

    def staging_path(self, group: DuplicateGroup) -> str:
        return join_path(
            self.config.quarantine_prefix,
            self.config.staging_prefix,
            self.context.run_id,
            group_hash(group.group_key),
            basename(group.path),
        )

    async def stage_and_verify(self, group: DuplicateGroup) -> DuplicateGroup:
        """Copy the shared object to staging and prove the copy is byte-identical.

        Raises:
            DataIntegrityError: Length, SHA-256 or byte comparison failed
        """
        ctx = self.context
        quarantine = self.config.quarantine_location
        staged_path = group.staged_path or self.staging_path(group)

        source = await ctx.retry(
            lambda: ctx.storage.read(group.location, group.path), signature="duplicates.read_source"
        )
        if group.status != DuplicateGroupStatus.STAGED or not await ctx.storage.exists(quarantine, staged_path):
            await ctx.retry(
                lambda: ctx.storage.write(quarantine, staged_path, source), signature="duplicates.stage"
            )
        staged = await ctx.retry(
            lambda: ctx.storage.read(quarantine, staged_path), signature="duplicates.read_staged"
        )

        source_hash = hashlib.sha256(source).hexdigest()
        if len(staged) != len(source):
            raise DataIntegrityError(
                f"Staged copy of {group.group_key} has {len(staged)} bytes, source has {len(source)}"
            )
        if hashlib.sha256(staged).hexdigest() != source_hash:
            raise DataIntegrityError(f"Staged copy of {group.group_key} failed SHA-256 verification")
        if staged != source:
            raise DataIntegrityError(f"Staged copy of {group.group_key} differs from source")

        return group.model_copy(
            update={
                "status": DuplicateGroupStatus.STAGED,
                "staged_path": staged_path,
                "content_hash": source_hash,
            }
        )

    async def resolve_group(
        self,
        group: DuplicateGroup,
        inventory: Inventory,
        persisted: dict[str, DuplicateGroup],
    ) -> list[ChangeLogEntry]:
        ctx = self.context
        previous = persisted.get(group.group_key)
        if previous is not None and previous.status == DuplicateGroupStatus.RESOLVED:
            return []
        if previous is not None and previous.status == DuplicateGroupStatus.STAGED:
            group = group.model_copy(
                update={"status": previous.status, "staged_path": previous.staged_path}
            )

        try:
            group = await self.stage_and_verify(group)
        except DataIntegrityError:
            failed = group.model_copy(update={"status": DuplicateGroupStatus.FAILED})
            await ctx.registry.save_duplicate_group(ctx.run_id, failed)
            self.logger.error("Staged copy failed verification", group=group.group_key)
            raise
        await ctx.registry.save_duplicate_group(ctx.run_id, group)

        records = [inventory.records[rid] for rid in group.record_ids if rid in inventory.records]
        primary = select_primary_record(records, self.config.target_location)
        entries = []
        for record in records:
            if record.id == primary.id:
                continue
            await ctx.retry(
                lambda record=record: ctx.repository.mark_removed(record.id),
                signature="duplicates.remove_record",
            )
            inventory.remove_record(record.id)
            entries.append(
                await ctx.log(
                    ChangeLogEntry(
                        run_id=ctx.run_id,
                        phase=Phase.DUPLICATE_RESOLUTION,
                        operation=ChangeOperation.DUPLICATE_RECORD_REMOVED,
                        record_id=record.id,
                        before=record.model_dump(mode="json"),
                        details={
                            "group": group.group_key,
                            "primary_record_id": primary.id,
                            "staged_path": group.staged_path,
                            "content_hash": group.content_hash,
                        },
                    )
                )
            )

        resolved = group.model_copy(
            update={"status": DuplicateGroupStatus.RESOLVED, "primary_record_id": primary.id}
        )
        await ctx.registry.save_duplicate_group(ctx.run_id, resolved)
        self.logger.info(
            "Duplicate group resolved",
            group=group.group_key,
            primary_record_id=primary.id,
            removed=len(entries),
        )
        return entries

    async def run(self, inventory: Inventory, checkpoint: Checkpoint) -> PhaseOutcome:
        groups = {g.group_key: g for g in self.find_groups(inventory)}
        persisted = await self.context.registry.load_duplicate_groups(self.context.run_id)
        processor = BatchProcessor(self.context, Phase.DUPLICATE_RESOLUTION)
        outcome = await processor.run(
            checkpoint,
            list(groups),
            lambda key: self.resolve_group(groups[key], inventory, persisted),
            counter="duplicate_groups_resolved",
        )
        removed = sum(1 for e in outcome.entries if e.operation == ChangeOperation.DUPLICATE_RECORD_REMOVED)
        checkpoint.increment("duplicate_records_removed", removed)
        self.logger.info("Duplicate resolution finished", groups=len(groups), records_removed=removed)
        return outcome
