"""Final invariant check, staging cleanup and post-rollback sampling."""

import random
from collections import defaultdict

import structlog

from ..models.enums import ChangeOperation
from ..models.results import VerificationReport
from ..models.state import ChangeLogEntry
from ..repository.base import MetadataRepository
from ..storage.base import StorageLocationClient
from ..utils import clean_path, join_path, parent_dir
from .inventory import Inventory
from .phases import PhaseContext

logger = structlog.get_logger()

RECORD_POINTER_OPERATIONS = {
    ChangeOperation.RECORD_LINKED,
    ChangeOperation.RECORD_PATH_UPDATED,
    ChangeOperation.RECORD_QUARANTINED,
}
OBJECT_OPERATIONS = {
    ChangeOperation.OBJECT_MOVED,
    ChangeOperation.OBJECT_QUARANTINED,
    ChangeOperation.RECORD_QUARANTINED,
}


class VerificationService:
    """Checks that every live record resolves to exactly one object it alone references.

    The object must also sit at the canonical target location and prefix.
    """

    def __init__(self, context: PhaseContext):
        self.context = context
        self.config = context.config
        self.logger = logger.bind(component="verification")

    async def verify(self) -> VerificationReport:
        ctx = self.context
        report = VerificationReport()
        target_prefix = clean_path(self.config.target_prefix)
        by_key: dict[tuple[str, str], list[str]] = defaultdict(list)

        async for page in ctx.repository.iter_records(self.config.batch_size):
            for record in page:
                if not record.live:
                    continue
                report.checked += 1
                key = record.key
                by_key[(key.location, key.path)].append(record.id)
                exists = await ctx.retry(
                    lambda key=key: ctx.storage.exists(key.location, key.path),
                    signature="verification.exists",
                )
                if not exists:
                    report.missing_objects.append(record.id)
                elif key.location != self.config.target_location or parent_dir(key.path) != target_prefix:
                    report.non_canonical.append(record.id)

        report.shared_objects = {
            f"{location}:{path}": sorted(ids) for (location, path), ids in by_key.items() if len(ids) > 1
        }
        report.unresolved_records = sorted(report.missing_objects)

        if report.invariant_holds:
            self.logger.info("Invariant verified", checked=report.checked)
        else:
            self.logger.error(
                "Invariant violated",
                checked=report.checked,
                missing=len(report.missing_objects),
                shared=len(report.shared_objects),
                non_canonical=len(report.non_canonical),
            )
        return report

    async def cleanup_staging(self) -> int:
        """Delete this run's staged duplicate copies; returns how many were removed."""
        ctx = self.context
        prefix = join_path(self.config.quarantine_prefix, self.config.staging_prefix, ctx.run_id)
        try:
            staged = [meta async for meta in ctx.storage.list(self.config.quarantine_location, prefix)]
        except FileNotFoundError:
            return 0
        for meta in staged:
            await ctx.retry(
                lambda meta=meta: ctx.storage.delete(meta.location, meta.path),
                signature="verification.cleanup_staging",
            )
        if staged:
            self.logger.info("Staging area cleaned", removed=len(staged), prefix=prefix)
        return len(staged)

    async def run(self, inventory: Inventory) -> VerificationReport:
        report = await self.verify()
        if not self.config.keep_staging:
            report.staging_removed = await self.cleanup_staging()
        return report


async def verify_rollback_sample(
    entries: list[ChangeLogEntry],
    storage: StorageLocationClient,
    repository: MetadataRepository,
    sample_size: int,
) -> tuple[int, list[str]]:
    """Sample reversed entries and report those whose prior state is not back.

    Returns (samples checked, failure descriptions).
    """
    # A record touched several times must be back at its earliest reversed state
    earliest: dict[str, ChangeLogEntry] = {}
    candidates = []
    for entry in sorted(entries, key=lambda e: e.sequence):
        if entry.operation in RECORD_POINTER_OPERATIONS and entry.record_id:
            if entry.record_id in earliest:
                continue
            earliest[entry.record_id] = entry
        candidates.append(entry)

    sample = candidates if len(candidates) <= sample_size else random.sample(candidates, sample_size)
    failures = []
    for entry in sample:
        operation = entry.operation
        if operation in RECORD_POINTER_OPERATIONS and entry.record_id:
            record = await repository.find_by_id(entry.record_id)
            if record is None or record.pointer() != {
                "location": entry.before.get("location"),
                "path": clean_path(entry.before.get("path", "")),
            }:
                failures.append(f"#{entry.sequence} {operation.value}: record {entry.record_id} not restored")
                continue
        if operation == ChangeOperation.DUPLICATE_RECORD_REMOVED and entry.record_id:
            if await repository.find_by_id(entry.record_id) is None:
                failures.append(f"#{entry.sequence} {operation.value}: record {entry.record_id} missing")
                continue
        if operation in OBJECT_OPERATIONS:
            if not await storage.exists(entry.before["location"], entry.before["path"]):
                failures.append(
                    f"#{entry.sequence} {operation.value}: object "
                    f"{entry.before['location']}:{entry.before['path']} missing"
                )
    return len(sample), failures
