"""Repair of records whose object path no longer resolves."""

import math
from collections.abc import Iterable

import structlog

from .. import constants
from ..models.enums import ChangeOperation, MatchStrategy, Phase, RecordClassification
from ..models.records import ObjectKey, ObjectMeta, Record
from ..models.results import PhaseOutcome, RepairMatch
from ..models.state import ChangeLogEntry, Checkpoint
from ..utils import (
    family_key,
    filename_similarity,
    is_in_originals_path,
    normalize_filename,
    same_extension_family,
)
from .inventory import Inventory
from .phases import BatchProcessor, PhaseContext

logger = structlog.get_logger()

STRATEGY_CONFIDENCE = {
    MatchStrategy.EXACT: constants.CONFIDENCE_EXACT,
    MatchStrategy.CASE_INSENSITIVE: constants.CONFIDENCE_CASE_INSENSITIVE,
    MatchStrategy.NORMALIZED: constants.CONFIDENCE_NORMALIZED,
    MatchStrategy.STEM: constants.CONFIDENCE_STEM,
}


def rank_repair_candidates(
    candidates: Iterable[ObjectMeta],
    target_location: str,
    originals_markers: Iterable[str],
) -> list[ObjectMeta]:
    """Order candidates best first.

    1. inside an originals subpath
    2. already in the target location
    3. most recently modified
    4. (location, path) for a stable result
    """
    markers = list(originals_markers)
    return sorted(
        candidates,
        key=lambda c: (
            not is_in_originals_path(c.path, markers),
            c.location != target_location,
            -c.modified_ts,
            c.location,
            c.path,
        ),
    )


class LinkRepairService:
    """Finds a replacement object for each broken record and relinks it."""

    def __init__(self, context: PhaseContext):
        self.context = context
        self.config = context.config
        self.logger = logger.bind(component="link_repair")

    def _lookup_names(self, record: Record) -> list[str]:
        names = [record.filename]
        if record.stored_name not in names:
            names.append(record.stored_name)
        return names

    def find_match(self, record: Record, inventory: Inventory) -> RepairMatch:
        """Search strategies in order of decreasing confidence; first hit wins."""
        names = self._lookup_names(record)
        indexes = (
            (MatchStrategy.EXACT, inventory.objects_by_name, lambda n: n),
            (MatchStrategy.CASE_INSENSITIVE, inventory.objects_by_lower, str.lower),
            (MatchStrategy.NORMALIZED, inventory.objects_by_normalized, normalize_filename),
        )
        for strategy, index, transform in indexes:
            keys = set().union(*(index.get(transform(n), set()) for n in names))
            if keys:
                return self._select(record, inventory, keys, strategy, STRATEGY_CONFIDENCE[strategy])

        families = inventory.extension_families
        keys = set().union(*(inventory.objects_by_family.get(family_key(n, families), set()) for n in names))
        if keys:
            return self._select(record, inventory, keys, MatchStrategy.STEM, STRATEGY_CONFIDENCE[MatchStrategy.STEM])

        return self._fuzzy_match(record, inventory)

    def _select(
        self,
        record: Record,
        inventory: Inventory,
        keys: Iterable[ObjectKey],
        strategy: MatchStrategy,
        confidence: float,
    ) -> RepairMatch:
        candidates = [inventory.objects[k] for k in keys if k in inventory.objects]
        ranked = rank_repair_candidates(candidates, self.config.target_location, self.config.originals_markers)
        return RepairMatch(
            record_id=record.id,
            found=bool(ranked),
            candidate=ranked[0] if ranked else None,
            strategy=strategy if ranked else MatchStrategy.NONE,
            confidence=confidence if ranked else 0.0,
        )

    def _fuzzy_match(self, record: Record, inventory: Inventory) -> RepairMatch:
        name = record.filename
        normalized_len = len(normalize_filename(name)) or 1
        families = inventory.extension_families
        threshold = self.config.fuzzy_threshold

        best_score = 0.0
        best: list[ObjectMeta] = []
        rejected: tuple[float, ObjectMeta] | None = None

        for meta in inventory.objects.values():
            candidate = meta.filename
            # Cheap length window before the full similarity ratio
            ratio = len(normalize_filename(candidate)) / normalized_len
            if abs(1 - ratio) > constants.FUZZY_LENGTH_TOLERANCE:
                continue
            if not same_extension_family(name, candidate, families):
                continue
            score = filename_similarity(name, candidate)
            if score < threshold:
                if rejected is None or score > rejected[0]:
                    rejected = (score, meta)
                continue
            if math.isclose(score, best_score):
                best.append(meta)
            elif score > best_score:
                best_score = score
                best = [meta]

        if best:
            ranked = rank_repair_candidates(best, self.config.target_location, self.config.originals_markers)
            return RepairMatch(
                record_id=record.id,
                found=True,
                candidate=ranked[0],
                strategy=MatchStrategy.FUZZY,
                confidence=round(best_score, 4),
            )
        return RepairMatch(
            record_id=record.id,
            found=False,
            rejected_candidate=str(rejected[1].key) if rejected else None,
            rejected_confidence=round(rejected[0], 4) if rejected else None,
        )

    async def repair_record(self, record_id: str, inventory: Inventory) -> list[ChangeLogEntry]:
        ctx = self.context
        record = inventory.records[record_id]
        match = self.find_match(record, inventory)

        if not match.found or match.candidate is None:
            self.logger.warning(
                "No repair candidate found",
                record_id=record.id,
                filename=record.filename,
                location=record.location,
                path=record.path,
                rejected_candidate=match.rejected_candidate,
                rejected_confidence=match.rejected_confidence,
            )
            entry = await ctx.log(
                ChangeLogEntry(
                    run_id=ctx.run_id,
                    phase=Phase.LINK_REPAIR,
                    operation=ChangeOperation.LINK_NOT_REPAIRED,
                    record_id=record.id,
                    details={
                        "filename": record.filename,
                        "location": record.location,
                        "path": record.path,
                        "rejected_candidate": match.rejected_candidate,
                        "rejected_confidence": match.rejected_confidence,
                    },
                )
            )
            return [entry]

        candidate = match.candidate
        if match.confidence < self.config.low_confidence_warning:
            self.logger.warning(
                "Low-confidence link repair",
                record_id=record.id,
                filename=record.filename,
                candidate=str(candidate.key),
                strategy=match.strategy.value,
                confidence=match.confidence,
            )

        await ctx.retry(
            lambda: ctx.repository.update_location_and_path(record.id, candidate.location, candidate.path),
            signature="link_repair.update_record",
        )
        inventory.repoint_record(record.id, candidate.location, candidate.path)
        entry = await ctx.log(
            ChangeLogEntry(
                run_id=ctx.run_id,
                phase=Phase.LINK_REPAIR,
                operation=ChangeOperation.RECORD_LINKED,
                record_id=record.id,
                before=record.pointer(),
                after={"location": candidate.location, "path": candidate.key.path},
                details={"strategy": match.strategy.value, "confidence": match.confidence},
            )
        )
        self.logger.info(
            "Record relinked",
            record_id=record.id,
            broken_path=record.path,
            candidate=str(candidate.key),
            strategy=match.strategy.value,
            confidence=match.confidence,
        )
        return [entry]

    async def run(self, inventory: Inventory, checkpoint: Checkpoint) -> PhaseOutcome:
        broken = inventory.records_with(RecordClassification.BROKEN)
        processor = BatchProcessor(self.context, Phase.LINK_REPAIR)
        outcome = await processor.run(
            checkpoint,
            broken,
            lambda record_id: self.repair_record(record_id, inventory),
        )
        repaired = sum(1 for e in outcome.entries if e.operation == ChangeOperation.RECORD_LINKED)
        unrepaired = sum(1 for e in outcome.entries if e.operation == ChangeOperation.LINK_NOT_REPAIRED)
        checkpoint.increment("records_repaired", repaired)
        checkpoint.increment("records_unrepaired", unrepaired)
        self.logger.info("Link repair finished", broken=len(broken), repaired=repaired, unrepaired=unrepaired)
        return outcome
