"""Reversal of a run by change-log replay or metadata-snapshot restore."""

from collections.abc import Iterable

import structlog

from ..core.changelog import ChangeLogManager
from ..core.error_recovery import ErrorRecoveryManager
from ..core.exceptions import RollbackError
from ..models.enums import (
    PIPELINE_ORDER,
    REVERSIBLE_OPERATIONS,
    ChangeOperation,
    Phase,
    RollbackMethod,
    RollbackMode,
)
from ..models.records import ObjectKey, Record
from ..models.results import RollbackResult
from ..models.state import ChangeLogEntry
from ..repository.base import MetadataRepository
from ..storage.base import StorageLocationClient
from ..storage.strategy import TransferStrategyResolver
from .backup import BackupService
from .verification import verify_rollback_sample

logger = structlog.get_logger()

OBJECT_LEVEL_OPERATIONS = {
    ChangeOperation.OBJECT_MOVED,
    ChangeOperation.OBJECT_QUARANTINED,
    ChangeOperation.RECORD_QUARANTINED,
}


def select_phases(phases: Iterable[Phase] | None, mode: RollbackMode) -> set[Phase]:
    """Pipeline phases covered by a rollback request.

    ``mode="from"`` covers the first given phase and every later one;
    ``mode="only"`` covers exactly the given phases. No phases means all.
    """
    pipeline = [p for p in PIPELINE_ORDER if p != Phase.COMPLETE]
    requested = list(phases or [])
    if not requested:
        return set(pipeline)
    if mode == "only":
        return set(requested)
    if mode != "from":
        raise RollbackError(f"Unknown rollback mode '{mode}'")
    start = min(pipeline.index(p) for p in requested)
    return set(pipeline[start:])


class RollbackEngine:
    """Applies inverse actions, each logged to the run's change log with phase ``rollback``."""

    def __init__(
        self,
        run_id: str,
        storage: StorageLocationClient,
        repository: MetadataRepository,
        changelog: ChangeLogManager,
        resolver: TransferStrategyResolver,
        backup: BackupService,
        error_recovery: ErrorRecoveryManager,
        sample_size: int = 100,
    ):
        self.run_id = run_id
        self.storage = storage
        self.repository = repository
        self.changelog = changelog
        self.resolver = resolver
        self.backup = backup
        self.error_recovery = error_recovery
        self.sample_size = sample_size
        self.logger = logger.bind(component="rollback", run_id=run_id)

    async def pending_entries(self, phases: set[Phase]) -> list[ChangeLogEntry]:
        """Reversible, not-yet-reversed entries of ``phases``, newest first."""
        entries = await self.changelog.load_all()
        reversed_sequences = {e.reverses for e in entries if e.phase == Phase.ROLLBACK and e.reverses}
        selected = [
            e
            for e in entries
            if e.phase != Phase.ROLLBACK
            and e.phase in phases
            and e.operation in REVERSIBLE_OPERATIONS
            and e.sequence not in reversed_sequences
        ]
        return sorted(selected, key=lambda e: e.sequence, reverse=True)

    async def rollback(
        self,
        phases: Iterable[Phase] | None = None,
        method: RollbackMethod = RollbackMethod.CHANGELOG,
        mode: RollbackMode = "from",
        dry_run: bool = False,
    ) -> RollbackResult:
        phases = list(phases or [])
        if method == RollbackMethod.SNAPSHOT and phases:
            raise RollbackError("Snapshot rollback restores the whole run; use the changelog method to scope by phase")

        covered = select_phases(phases, mode)
        targets = await self.pending_entries(covered)
        result = RollbackResult(run_id=self.run_id, method=method, dry_run=dry_run)
        for entry in targets:
            result.by_operation[entry.operation.value] = result.by_operation.get(entry.operation.value, 0) + 1
            result.by_phase[entry.phase.value] = result.by_phase.get(entry.phase.value, 0) + 1

        self.logger.info(
            "Rollback planned",
            method=method.value,
            mode=mode,
            phases=sorted(p.value for p in covered),
            entries=len(targets),
            dry_run=dry_run,
        )
        if dry_run:
            if method == RollbackMethod.SNAPSHOT:
                info = await self.backup.get_info(self.run_id)
                if info is None:
                    raise RollbackError(f"No pre-run snapshot exists for run '{self.run_id}'")
                result.restored_records = info.record_count
            return result

        if method == RollbackMethod.SNAPSHOT:
            records = await self.backup.load(self.run_id)
            result.restored_records = await self.repository.restore_snapshot(records)
            self.logger.info("Metadata snapshot restored", records=result.restored_records)
            for entry in targets:
                if entry.operation in OBJECT_LEVEL_OPERATIONS:
                    await self._apply(entry, result, objects_only=True)
                else:
                    await self._log_inverse(entry, method, objects_only=False)
                    result.reversed += 1
        else:
            for entry in targets:
                await self._apply(entry, result, objects_only=False)

        await self.changelog.flush()

        result.verified_samples, result.verification_failures = await verify_rollback_sample(
            targets, self.storage, self.repository, self.sample_size
        )
        if result.verification_failures:
            self.logger.warning(
                "Rollback verification found entries not restored",
                failures=len(result.verification_failures),
                samples=result.verified_samples,
            )
        self.logger.info(
            "Rollback finished",
            reversed=result.reversed,
            skipped=result.skipped,
            errors=result.errors,
            restored_records=result.restored_records,
        )
        return result

    async def _apply(self, entry: ChangeLogEntry, result: RollbackResult, objects_only: bool) -> None:
        try:
            changed = await self.error_recovery.execute_with_retry(
                lambda: self._invert(entry, objects_only),
                signature=f"rollback.{entry.operation.value}",
            )
        except Exception as e:
            result.errors += 1
            result.failures.append(f"#{entry.sequence} {entry.operation.value}: {type(e).__name__}: {e}")
            self.logger.error(
                "Inverse action failed",
                sequence=entry.sequence,
                operation=entry.operation.value,
                record_id=entry.record_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        if changed:
            result.reversed += 1
        else:
            result.skipped += 1
        method = RollbackMethod.SNAPSHOT if objects_only else RollbackMethod.CHANGELOG
        await self._log_inverse(entry, method, objects_only)

    async def _log_inverse(self, entry: ChangeLogEntry, method: RollbackMethod, objects_only: bool) -> None:
        await self.changelog.log(
            ChangeLogEntry(
                run_id=self.run_id,
                phase=Phase.ROLLBACK,
                operation=entry.operation,
                record_id=entry.record_id,
                before=entry.after,
                after=entry.before,
                reverses=entry.sequence,
                details={"method": method.value, "objects_only": objects_only},
            )
        )

    async def _invert(self, entry: ChangeLogEntry, objects_only: bool) -> bool:
        """Apply the inverse of ``entry``; False when the prior state was already back."""
        operation = entry.operation
        if operation in (ChangeOperation.RECORD_LINKED, ChangeOperation.RECORD_PATH_UPDATED):
            await self.repository.update_location_and_path(
                entry.record_id, entry.before["location"], entry.before["path"]
            )
            return True
        if operation == ChangeOperation.DUPLICATE_RECORD_REMOVED:
            await self.repository.restore_record(Record.model_validate(entry.before))
            return True
        if operation in (ChangeOperation.OBJECT_MOVED, ChangeOperation.OBJECT_QUARANTINED):
            return await self._restore_object(entry)
        if operation == ChangeOperation.RECORD_QUARANTINED:
            changed = await self._restore_object(entry)
            if not objects_only:
                await self.repository.update_location_and_path(
                    entry.record_id, entry.before["location"], entry.before["path"]
                )
                changed = True
            return changed
        raise RollbackError(f"No inverse action for operation '{operation.value}'")

    async def _restore_object(self, entry: ChangeLogEntry) -> bool:
        original = ObjectKey(**entry.before)
        current = ObjectKey(**entry.after)
        current_exists = await self.storage.exists(current.location, current.path)

        if entry.details.get("kept_source"):
            # Only a copy was made; the original never moved
            if current_exists:
                await self.storage.delete(current.location, current.path)
                return True
            return False

        original_exists = await self.storage.exists(original.location, original.path)
        if original_exists and not current_exists:
            return False
        if not current_exists:
            raise FileNotFoundError(f"Object to restore does not exist: {current}")
        if original_exists:
            raise FileExistsError(f"Original path is occupied, not overwriting: {original}")
        await self.resolver.transfer(current, original)
        return True
