"""Phase state machine for migration runs.

The orchestrator owns the lifecycle of a run: it takes the scope lock,
creates the run record and pre-run snapshot, builds the per-run managers,
settles transfers an interrupted invocation announced but never logged,
walks ``PHASE_TRANSITIONS`` until ``COMPLETE`` and, whatever happens,
leaves a flushed change log and a resumable checkpoint behind.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog

from ..core.changelog import ChangeLogManager
from ..core.checkpoint import CheckpointManager
from ..core.config_loader import MigrationConfig, config_from_dict
from ..core.error_recovery import ErrorRecoveryManager
from ..core.exceptions import (
    CheckpointError,
    CircuitBreakerError,
    ErrorThresholdExceeded,
    LockNotHeldError,
    MigrationInterrupted,
)
from ..core.lock import MigrationLock
from ..core.logging_config import bind_run_context, clear_run_context
from ..core.runs import RunRegistry, new_run_id
from ..core.shutdown import CancellationToken
from ..core.state_store import StateStore
from ..models.enums import (
    PHASE_TRANSITIONS,
    PIPELINE_ORDER,
    ChangeOperation,
    Phase,
    RollbackMethod,
    RollbackMode,
    RunStatus,
)
from ..models.results import (
    MigrationOutcome,
    PhaseOutcome,
    RollbackResult,
    RunStatusReport,
    UnresolvedRecord,
)
from ..models.state import Checkpoint
from ..repository.base import MetadataRepository
from ..storage.base import StorageLocationClient
from ..storage.strategy import TransferStrategyResolver
from .backup import BackupService
from .consolidation import ConsolidationService
from .duplicates import DuplicateResolutionService
from .inventory import Inventory, InventoryBuilder
from .link_repair import LinkRepairService
from .phases import PhaseContext
from .quarantine import QuarantineService
from .recovery import TransferRecovery
from .reporter import MigrationReporter, unresolved_from_entries
from .rollback import RollbackEngine
from .verification import VerificationService

logger = structlog.get_logger()

PhaseHandler = Callable[[Inventory, Checkpoint], Awaitable[PhaseOutcome]]

FINISHED_STATUSES = {RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ISSUES, RunStatus.ROLLED_BACK}


class MigrationOrchestrator:
    """Starts, resumes, inspects and rolls back migration runs.

    Every manager (lock, checkpoint, change log, error recovery) is built per
    run from the shared state store and handed to the phase services through
    a ``PhaseContext``.
    """

    def __init__(
        self,
        store: StateStore,
        storage: StorageLocationClient,
        repository: MetadataRepository,
        cancel_token: CancellationToken | None = None,
        reports_dir: Path | str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.storage = storage
        self.repository = repository
        self.cancel_token = cancel_token or CancellationToken()
        self.reports_dir = Path(reports_dir) if reports_dir else store.db_path.parent / "reports"
        self._sleep = sleep
        self.registry = RunRegistry(store)
        self.logger = logger.bind(component="orchestrator")

    def _error_recovery(self, config: MigrationConfig) -> ErrorRecoveryManager:
        return ErrorRecoveryManager(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            max_repeated_errors=config.max_repeated_errors,
            error_threshold=config.error_threshold,
            sleep=self._sleep,
        )

    async def start(self, config: MigrationConfig) -> MigrationOutcome:
        """Begin a new run.

        Raises:
            ConfigurationError: The configuration is invalid; nothing was started
            LockContentionError: Another run holds the scope lock
        """
        config.validate_run_config()
        run_id = new_run_id()
        lock = MigrationLock(self.store, config.lock_ttl_seconds)
        await lock.acquire(config.scope, run_id, timeout=config.lock_acquire_timeout)
        checkpoints = CheckpointManager(self.store, lock, config.checkpoint_retention_hours)
        try:
            await self.registry.create(config.scope, config.to_storable(), run_id=run_id)
            if config.snapshot_before_run:
                await BackupService(self.store, config.batch_size).snapshot(run_id, self.repository)
            checkpoint = await checkpoints.save(Checkpoint(run_id=run_id, phase=Phase.INVENTORY))
        except Exception:
            await lock.release()
            raise

        self.logger.info(
            "Migration run started",
            run_id=run_id,
            scope=config.scope,
            sources=config.source_locations,
            target=config.target_location,
        )
        return await self._execute(run_id, config, lock, checkpoints, checkpoint)

    async def resume(self, run_id: str) -> MigrationOutcome:
        """Continue ``run_id`` from its latest checkpoint with its stored configuration.

        Raises:
            RunNotFoundError: No such run
            LockContentionError: Another run holds the scope lock
        """
        run = await self.registry.get(run_id)
        if run.status in FINISHED_STATUSES:
            checkpoint = await CheckpointManager(self.store).load_latest(run_id)
            self.logger.info("Run already finished, nothing to resume", run_id=run_id, status=run.status.value)
            return MigrationOutcome(
                run_id=run_id,
                status=run.status,
                phase=checkpoint.phase if checkpoint else Phase.COMPLETE,
                counters=checkpoint.counters if checkpoint else {},
            )

        config = config_from_dict(run.config)
        config.validate_run_config()
        lock = MigrationLock(self.store, config.lock_ttl_seconds)
        await lock.acquire(run.scope, run_id, timeout=config.lock_acquire_timeout)
        checkpoints = CheckpointManager(self.store, lock, config.checkpoint_retention_hours)
        try:
            checkpoint = await checkpoints.load_latest(run_id)
            if checkpoint is None:
                checkpoint = await checkpoints.save(Checkpoint(run_id=run_id, phase=Phase.INVENTORY))
            await self.registry.set_status(run_id, RunStatus.RUNNING)
        except Exception:
            await lock.release()
            raise

        self.logger.info(
            "Migration run resumed",
            run_id=run_id,
            phase=checkpoint.phase.value,
            processed=len(checkpoint.processed_ids),
            previous_status=run.status.value,
        )
        return await self._execute(run_id, config, lock, checkpoints, checkpoint)

    async def _execute(
        self,
        run_id: str,
        config: MigrationConfig,
        lock: MigrationLock,
        checkpoints: CheckpointManager,
        checkpoint: Checkpoint,
    ) -> MigrationOutcome:
        started = time.monotonic()
        error_recovery = self._error_recovery(config)
        changelog = ChangeLogManager(self.store, run_id, config.changelog_flush_every)
        context = PhaseContext(
            run_id=run_id,
            config=config,
            storage=self.storage,
            repository=self.repository,
            changelog=changelog,
            checkpoints=checkpoints,
            error_recovery=error_recovery,
            resolver=TransferStrategyResolver(self.storage),
            registry=self.registry,
            cancel_token=self.cancel_token,
            checkpoint=checkpoint,
        )
        outcome = MigrationOutcome(run_id=run_id, status=RunStatus.RUNNING, phase=checkpoint.phase)
        bind_run_context(run_id)

        try:
            await changelog.initialize()
            await TransferRecovery(context).recover()
            # Rebuilt on every invocation; services keep it current as they mutate
            inventory = await InventoryBuilder(config, self.storage, self.repository, error_recovery).build()
            handlers = self._phase_handlers(context, outcome)

            while checkpoint.phase != Phase.COMPLETE:
                phase = checkpoint.phase
                bind_run_context(run_id, phase.value)
                self.cancel_token.raise_if_cancelled()
                self.logger.info("Phase started", phase=phase.value)
                phase_started = time.monotonic()

                result = await handlers[phase](inventory, checkpoint)
                outcome.failures.extend(result.failures)
                await changelog.flush()

                checkpoint = await checkpoints.save(result.checkpoint.advance_to(PHASE_TRANSITIONS[phase]))
                context.checkpoint = checkpoint
                self.logger.info(
                    "Phase completed",
                    phase=phase.value,
                    entries=len(result.entries),
                    failures=len(result.failures),
                    duration_seconds=round(time.monotonic() - phase_started, 3),
                )

            bind_run_context(run_id, Phase.COMPLETE.value)
            if outcome.verification is None:
                outcome.verification = await VerificationService(context).verify()
            outcome.unresolved = await self._collect_unresolved(changelog, outcome.verification.missing_objects)
            has_issues = (
                not outcome.verification.invariant_holds
                or bool(outcome.failures)
                or checkpoint.counters.get("failed_items", 0) > 0
            )
            outcome.status = RunStatus.COMPLETED_WITH_ISSUES if has_issues else RunStatus.COMPLETED
        except MigrationInterrupted as e:
            outcome.status = RunStatus.INTERRUPTED
            outcome.error, outcome.error_class = str(e), type(e).__name__
            self.logger.warning("Migration interrupted; resume to continue", run_id=run_id, reason=str(e))
        except (CircuitBreakerError, ErrorThresholdExceeded, LockNotHeldError, CheckpointError) as e:
            outcome.status = RunStatus.FAILED
            outcome.error, outcome.error_class = str(e), type(e).__name__
            self.logger.error("Migration halted", run_id=run_id, error=str(e), error_class=type(e).__name__)
        except Exception as e:
            outcome.status = RunStatus.FAILED
            outcome.error, outcome.error_class = str(e), type(e).__name__
            self.logger.exception("Unexpected migration failure", run_id=run_id, error=str(e))
        finally:
            await self._finish(context, lock, outcome)

        outcome.phase = context.checkpoint.phase if context.checkpoint else outcome.phase
        outcome.counters = dict(context.checkpoint.counters) if context.checkpoint else {}
        try:
            await MigrationReporter(self.reports_dir).write(
                outcome, error_recovery.get_error_statistics(), time.monotonic() - started
            )
        except OSError as e:
            self.logger.error("Could not write run report", run_id=run_id, error=str(e))
        clear_run_context()
        return outcome

    async def _finish(self, context: PhaseContext, lock: MigrationLock, outcome: MigrationOutcome) -> None:
        """Flush the log, persist progress, release the lock and record the status."""
        flushed = True
        try:
            await context.changelog.flush()
        except CheckpointError as e:
            flushed = False
            self.logger.error("Final change-log flush failed", error=str(e))

        # Items whose entries could not be flushed must be redone on resume
        if flushed and context.checkpoint is not None:
            context.checkpoint.processed_ids |= context.pending_ids
            context.pending_ids.clear()
            try:
                context.checkpoint = await context.checkpoints.save(context.checkpoint)
            except (CheckpointError, LockNotHeldError) as e:
                self.logger.error("Final checkpoint save failed", error=str(e))

        if outcome.status in (RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ISSUES):
            try:
                await context.checkpoints.prune()
            except CheckpointError as e:
                self.logger.warning("Checkpoint pruning failed", error=str(e))

        await lock.release()
        await self.registry.set_status(context.run_id, outcome.status, last_error=outcome.error)

    async def _collect_unresolved(
        self, changelog: ChangeLogManager, missing_ids: list[str]
    ) -> list[UnresolvedRecord]:
        entries = await changelog.load_all(operations=[ChangeOperation.LINK_NOT_REPAIRED])
        unresolved = unresolved_from_entries(entries)
        known = {u.record_id for u in unresolved}
        for record_id in missing_ids:
            if record_id in known:
                continue
            record = await self.repository.find_by_id(record_id)
            if record is None:
                continue
            unresolved.append(
                UnresolvedRecord(
                    record_id=record.id,
                    filename=record.filename,
                    location=record.location,
                    path=record.path,
                    reason="object missing at verification",
                )
            )
        return unresolved

    def _phase_handlers(self, context: PhaseContext, outcome: MigrationOutcome) -> dict[Phase, PhaseHandler]:
        async def inventory_phase(inventory: Inventory, checkpoint: Checkpoint) -> PhaseOutcome:
            checkpoint.counters.update({f"inventory_{k}": v for k, v in inventory.summary().items()})
            return PhaseOutcome(checkpoint=checkpoint)

        async def verification_phase(inventory: Inventory, checkpoint: Checkpoint) -> PhaseOutcome:
            report = await VerificationService(context).run(inventory)
            outcome.verification = report
            checkpoint.counters["verified_records"] = report.checked
            checkpoint.counters["staging_removed"] = report.staging_removed
            return PhaseOutcome(checkpoint=checkpoint)

        return {
            Phase.INVENTORY: inventory_phase,
            Phase.LINK_REPAIR: LinkRepairService(context).run,
            Phase.DUPLICATE_RESOLUTION: DuplicateResolutionService(context).run,
            Phase.CONSOLIDATION: ConsolidationService(context).run,
            Phase.QUARANTINE: QuarantineService(context).run,
            Phase.VERIFICATION: verification_phase,
        }

    async def status(self, run_id: str) -> RunStatusReport:
        run = await self.registry.get(run_id)
        checkpoint = await CheckpointManager(self.store).load_latest(run_id)
        entries = await ChangeLogManager(self.store, run_id).count()

        report = RunStatusReport(
            run_id=run_id,
            status=run.status,
            changelog_entries=entries,
            last_error=run.last_error,
        )
        if checkpoint is not None:
            pipeline = [p for p in PIPELINE_ORDER if p != Phase.COMPLETE]
            report.phase = checkpoint.phase
            report.completed_phases = list(checkpoint.completed_phases)
            report.counters = dict(checkpoint.counters)
            report.progress = {
                "phases_completed": len(checkpoint.completed_phases),
                "total_phases": len(pipeline),
                "processed_in_phase": len(checkpoint.processed_ids),
                "batch": checkpoint.batch,
                "updated_at": checkpoint.updated_at.isoformat(),
            }
        return report

    async def list_runs(self, scope: str | None = None):
        return await self.registry.list_runs(scope)

    async def list_checkpoints(self, run_id: str | None = None) -> list[dict[str, Any]]:
        return await CheckpointManager(self.store).list_checkpoints(run_id)

    async def force_unlock(self, scope: str) -> bool:
        """Remove a stale scope lock left behind by a crashed process."""
        return await MigrationLock(self.store, ttl_seconds=0).force_clear(scope)

    async def rollback(
        self,
        run_id: str,
        from_phase: Phase | None = None,
        method: RollbackMethod = RollbackMethod.CHANGELOG,
        mode: RollbackMode = "from",
        dry_run: bool = False,
        phases: list[Phase] | None = None,
    ) -> RollbackResult:
        """Reverse ``run_id``, entirely or from/only the given phases.

        Raises:
            RunNotFoundError: No such run
            LockContentionError: The run (or another run of its scope) is active
            RollbackError: The request cannot be honoured
        """
        run = await self.registry.get(run_id)
        config = config_from_dict(run.config)
        requested = list(phases or ([] if from_phase is None else [from_phase]))

        # Distinct lock owner so a live invocation of the same run blocks rollback
        lock = MigrationLock(self.store, config.lock_ttl_seconds)
        await lock.acquire(run.scope, f"rollback:{run_id}", timeout=config.lock_acquire_timeout)
        bind_run_context(run_id, Phase.ROLLBACK.value)
        try:
            changelog = ChangeLogManager(self.store, run_id, config.changelog_flush_every)
            await changelog.initialize()
            error_recovery = self._error_recovery(config)
            resolver = TransferStrategyResolver(self.storage)
            if not dry_run:
                # Unlogged moves of a crashed invocation must be logged before they can be reversed
                await TransferRecovery(
                    PhaseContext(
                        run_id=run_id,
                        config=config,
                        storage=self.storage,
                        repository=self.repository,
                        changelog=changelog,
                        checkpoints=CheckpointManager(self.store),
                        error_recovery=error_recovery,
                        resolver=resolver,
                        registry=self.registry,
                    )
                ).recover()
            engine = RollbackEngine(
                run_id,
                self.storage,
                self.repository,
                changelog,
                resolver,
                BackupService(self.store, config.batch_size),
                error_recovery,
                sample_size=config.verification_sample_size,
            )
            result = await engine.rollback(requested, method=method, mode=mode, dry_run=dry_run)
            if not dry_run and not requested and result.errors == 0 and not result.verification_failures:
                await self.registry.set_status(run_id, RunStatus.ROLLED_BACK)
                self.logger.info("Run rolled back", run_id=run_id, reversed=result.reversed)
        finally:
            await lock.release()
            clear_run_context()
        return result
