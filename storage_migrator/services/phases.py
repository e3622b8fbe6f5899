"""Phase plumbing: shared context and the batched item processor."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from ..core.changelog import ChangeLogManager
from ..core.checkpoint import CheckpointManager
from ..core.config_loader import MigrationConfig
from ..core.error_recovery import PASSTHROUGH_TYPES, ErrorRecoveryManager
from ..core.exceptions import CheckpointError, LockNotHeldError
from ..core.runs import RunRegistry
from ..core.shutdown import CancellationToken
from ..models.enums import Phase
from ..models.results import PhaseFailure, PhaseOutcome
from ..models.state import ChangeLogEntry, Checkpoint
from ..repository.base import MetadataRepository
from ..storage.base import StorageLocationClient
from ..storage.strategy import TransferStrategyResolver
from ..utils import chunked

logger = structlog.get_logger()

ItemHandler = Callable[[str], Awaitable[list[ChangeLogEntry]]]


@dataclass
class PhaseContext:
    """Per-run collaborators handed to every phase service."""

    run_id: str
    config: MigrationConfig
    storage: StorageLocationClient
    repository: MetadataRepository
    changelog: ChangeLogManager
    checkpoints: CheckpointManager
    error_recovery: ErrorRecoveryManager
    resolver: TransferStrategyResolver
    registry: RunRegistry
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    # Latest checkpoint known to be consistent with the flushed change log
    checkpoint: Checkpoint | None = None
    # Items finished since the last checkpoint whose entries may still be buffered
    pending_ids: set[str] = field(default_factory=set)

    async def retry(self, operation, signature: str):
        return await self.error_recovery.execute_with_retry(operation, signature=signature)

    async def log(self, entry: ChangeLogEntry) -> ChangeLogEntry:
        return await self.changelog.log(entry)


class BatchProcessor:
    """Runs a phase's items in bounded batches with a bounded worker pool.

    After every batch the change log is flushed, the batch's finished items
    enter the processed-ID set and the checkpoint is saved (every
    ``checkpoint_every_batches`` batches). Failed items are reported and
    counted; they stay out of the processed-ID set so a resume retries them.
    """

    def __init__(self, context: PhaseContext, phase: Phase):
        self.context = context
        self.phase = phase
        self.config = context.config
        self.logger = logger.bind(component="batch_processor", phase=phase.value)

    async def run(
        self,
        checkpoint: Checkpoint,
        item_ids: list[str],
        handler: ItemHandler,
        counter: str | None = None,
    ) -> PhaseOutcome:
        ctx = self.context
        ctx.checkpoint = checkpoint
        outcome = PhaseOutcome(checkpoint=checkpoint)

        remaining = [i for i in item_ids if i not in checkpoint.processed_ids]
        skipped = len(item_ids) - len(remaining)
        if skipped:
            self.logger.info("Skipping items already processed", skipped=skipped)
        self.logger.info("Phase items queued", total=len(item_ids), remaining=len(remaining))

        semaphore = asyncio.Semaphore(self.config.max_workers)

        async def process(item_id: str) -> None:
            async with semaphore:
                try:
                    entries = await handler(item_id)
                except PASSTHROUGH_TYPES:
                    raise
                except (LockNotHeldError, CheckpointError):
                    raise
                except Exception as e:
                    failure = PhaseFailure(
                        phase=self.phase,
                        item_id=item_id,
                        error_class=type(e).__name__,
                        message=str(e),
                    )
                    outcome.failures.append(failure)
                    checkpoint.increment("failed_items")
                    ctx.error_recovery.record_failure(failure)
                    return
                outcome.entries.extend(entries)
                ctx.pending_ids.add(item_id)
                if counter:
                    checkpoint.increment(counter)

        for batch in chunked(remaining, self.config.batch_size):
            results = await asyncio.gather(*(process(i) for i in batch), return_exceptions=True)
            fatal = next((r for r in results if isinstance(r, BaseException)), None)
            await self.commit_batch(checkpoint)
            if fatal is not None:
                raise fatal
            ctx.cancel_token.raise_if_cancelled()

        return outcome

    async def commit_batch(self, checkpoint: Checkpoint, force_save: bool = False) -> None:
        """Flush, fold pending items into the processed set, maybe checkpoint."""
        ctx = self.context
        await ctx.changelog.flush()
        checkpoint.processed_ids |= ctx.pending_ids
        ctx.pending_ids.clear()
        checkpoint.batch += 1
        if force_save or checkpoint.batch % self.config.checkpoint_every_batches == 0:
            try:
                saved = await ctx.checkpoints.save(checkpoint)
            except CheckpointError:
                self.logger.error("Checkpoint save failed", batch=checkpoint.batch)
                raise
            checkpoint.updated_at = saved.updated_at
        self.logger.debug(
            "Batch committed",
            batch=checkpoint.batch,
            processed=len(checkpoint.processed_ids),
        )
