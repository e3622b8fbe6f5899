"""Tests for the persisted run state: change log, checkpoints, locks, runs and snapshots."""

import time

import pytest

from storage_migrator.core.changelog import ChangeLogManager
from storage_migrator.core.checkpoint import CheckpointManager
from storage_migrator.core.exceptions import (
    LockContentionError,
    LockNotHeldError,
    RollbackError,
    RunNotFoundError,
)
from storage_migrator.core.lock import MigrationLock
from storage_migrator.core.runs import RunRegistry, new_run_id
from storage_migrator.models.enums import ChangeOperation, DuplicateGroupStatus, Phase, RunStatus
from storage_migrator.models.results import DuplicateGroup
from storage_migrator.models.records import ObjectKey
from storage_migrator.models.state import ChangeLogEntry, Checkpoint, TransferIntent
from storage_migrator.repository.memory import InMemoryMetadataRepository
from storage_migrator.services.backup import BackupService

from conftest import make_record


def linked_entry(record_id: str, phase: Phase = Phase.LINK_REPAIR) -> ChangeLogEntry:
    return ChangeLogEntry(
        run_id="ignored",
        phase=phase,
        operation=ChangeOperation.RECORD_LINKED,
        record_id=record_id,
        before={"location": "legacy", "path": f"old/{record_id}.jpg"},
        after={"location": "archive", "path": f"new/{record_id}.jpg"},
    )


class TestChangeLog:
    """Append-only, batch-flushed change log."""

    async def test_sequences_are_monotonic_and_run_scoped(self, store):
        changelog = ChangeLogManager(store, "run-a", flush_every=100)

        first = await changelog.log(linked_entry("r1"))
        second = await changelog.log(linked_entry("r2"))

        assert (first.sequence, second.sequence) == (1, 2)
        assert first.run_id == "run-a"

    async def test_buffered_until_flush(self, store):
        changelog = ChangeLogManager(store, "run-a", flush_every=100)
        await changelog.log(linked_entry("r1"))

        assert changelog.pending == 1
        assert await changelog.load_all() == []

        assert await changelog.flush() == 1
        assert changelog.pending == 0
        assert [e.record_id for e in await changelog.load_all()] == ["r1"]

    async def test_auto_flush(self, store):
        changelog = ChangeLogManager(store, "run-a", flush_every=2)
        await changelog.log(linked_entry("r1"))
        await changelog.log(linked_entry("r2"))

        assert changelog.pending == 0
        assert await changelog.count() == 2

    async def test_sequence_continues_across_managers(self, store):
        first = ChangeLogManager(store, "run-a")
        await first.log(linked_entry("r1"))
        await first.log(linked_entry("r2"))
        await first.flush()

        resumed = ChangeLogManager(store, "run-a")
        await resumed.initialize()
        entry = await resumed.log(linked_entry("r3"))

        assert entry.sequence == 3

    async def test_load_all_filters(self, store):
        changelog = ChangeLogManager(store, "run-a")
        await changelog.log(linked_entry("r1"))
        await changelog.log(linked_entry("r2", phase=Phase.CONSOLIDATION))
        await changelog.flush()

        consolidation = await changelog.load_all(phases=[Phase.CONSOLIDATION])
        assert [e.record_id for e in consolidation] == ["r2"]
        assert await changelog.load_all(operations=[]) == []
        assert await changelog.load_all(run_id="other-run") == []

    async def test_transfer_intent_settles_with_its_entry(self, store):
        changelog = ChangeLogManager(store, "run-a", flush_every=100)
        intent = await changelog.announce_transfer(
            TransferIntent(
                run_id="ignored",
                phase=Phase.QUARANTINE,
                operation=ChangeOperation.OBJECT_QUARANTINED,
                source=ObjectKey(location="legacy", path="a.jpg"),
                target=ObjectKey(location="quarantine", path="quarantine/legacy/a.jpg"),
            )
        )

        # Durable before any entry is flushed, and scoped to its run
        [pending] = await ChangeLogManager(store, "run-a").pending_transfers()
        assert pending.intent_id == intent.intent_id
        assert pending.run_id == "run-a"
        assert await ChangeLogManager(store, "run-b").pending_transfers() == []

        await changelog.log(linked_entry("r1"))
        await changelog.flush()
        assert len(await changelog.pending_transfers()) == 1

        entry = linked_entry("r2").model_copy(update={"details": {"intent_id": intent.intent_id}})
        await changelog.log(entry)
        await changelog.flush()
        assert await changelog.pending_transfers() == []

    async def test_discard_transfer(self, store):
        changelog = ChangeLogManager(store, "run-a")
        intent = await changelog.announce_transfer(
            TransferIntent(
                run_id="run-a",
                phase=Phase.CONSOLIDATION,
                operation=ChangeOperation.OBJECT_MOVED,
                record_id="r1",
                source=ObjectKey(location="legacy", path="a.jpg"),
                target=ObjectKey(location="primary", path="media/a.jpg"),
            )
        )

        await changelog.discard_transfer(intent.intent_id)

        assert await changelog.pending_transfers() == []
        assert await changelog.count() == 0


class TestCheckpoints:
    async def test_save_and_load_latest(self, store):
        manager = CheckpointManager(store)
        checkpoint = Checkpoint(run_id="run-a", phase=Phase.LINK_REPAIR, processed_ids={"r1", "r2"}, batch=3)

        await manager.save(checkpoint)
        checkpoint.processed_ids.add("r3")
        await manager.save(checkpoint)

        latest = await manager.load_latest("run-a")
        assert latest.phase == Phase.LINK_REPAIR
        assert latest.processed_ids == {"r1", "r2", "r3"}
        assert latest.batch == 3
        assert await manager.load_latest("unknown") is None

    async def test_only_one_current_checkpoint(self, store):
        manager = CheckpointManager(store)
        for batch in range(3):
            await manager.save(Checkpoint(run_id="run-a", phase=Phase.INVENTORY, batch=batch))

        summaries = await manager.list_checkpoints("run-a")

        assert len(summaries) == 3
        assert [s["is_current"] for s in summaries] == [True, False, False]
        assert summaries[0]["batch"] == 2

    async def test_prune_keeps_current(self, store):
        manager = CheckpointManager(store)
        for batch in range(3):
            await manager.save(Checkpoint(run_id="run-a", phase=Phase.INVENTORY, batch=batch))

        removed = await manager.prune(retention_hours=0)

        assert removed == 2
        remaining = await manager.list_checkpoints("run-a")
        assert [s["batch"] for s in remaining] == [2]

    def test_advance_to_resets_processed_ids(self):
        checkpoint = Checkpoint(run_id="run-a", phase=Phase.LINK_REPAIR, processed_ids={"r1"}, batch=4)
        checkpoint.increment("records_repaired")

        advanced = checkpoint.advance_to(Phase.DUPLICATE_RESOLUTION)

        assert advanced.phase == Phase.DUPLICATE_RESOLUTION
        assert advanced.completed_phases == [Phase.LINK_REPAIR]
        assert advanced.processed_ids == set()
        assert advanced.batch == 0
        assert advanced.counters == {"records_repaired": 1}
        assert checkpoint.processed_ids == {"r1"}

    async def test_save_renews_held_lock(self, store):
        lock = MigrationLock(store, ttl_seconds=60)
        await lock.acquire("scope", "run-a")
        before = (await lock.get("scope")).expires_at
        lock.ttl_seconds = 3600

        await CheckpointManager(store, lock).save(Checkpoint(run_id="run-a", phase=Phase.INVENTORY))

        assert (await lock.get("scope")).expires_at > before

    async def test_save_fails_when_lock_was_taken(self, store):
        lock = MigrationLock(store, ttl_seconds=60)
        await lock.acquire("scope", "run-a")
        await lock.force_clear("scope")

        with pytest.raises(LockNotHeldError):
            await CheckpointManager(store, lock).save(Checkpoint(run_id="run-a", phase=Phase.INVENTORY))
        assert await CheckpointManager(store).load_latest("run-a") is None


class TestMigrationLock:
    """One active run per scope."""

    async def test_contention_fails_fast(self, store):
        holder = MigrationLock(store, ttl_seconds=60)
        await holder.acquire("scope", "run-a")

        contender = MigrationLock(store, ttl_seconds=60)
        with pytest.raises(LockContentionError) as exc_info:
            await contender.acquire("scope", "run-b")

        assert exc_info.value.holder_run_id == "run-a"
        assert not contender.is_held

    async def test_contention_polls_until_timeout(self, store):
        await MigrationLock(store, ttl_seconds=60).acquire("scope", "run-a")
        contender = MigrationLock(store, ttl_seconds=60, poll_interval=0.01)

        started = time.monotonic()
        with pytest.raises(LockContentionError):
            await contender.acquire("scope", "run-b", timeout=0.05)
        assert time.monotonic() - started >= 0.05

    async def test_same_run_from_another_holder_is_refused(self, store):
        first = MigrationLock(store, ttl_seconds=60)
        await first.acquire("scope", "run-a")

        second = MigrationLock(store, ttl_seconds=60)
        with pytest.raises(LockContentionError) as exc_info:
            await second.acquire("scope", "run-a")

        assert exc_info.value.holder_run_id == "run-a"
        assert not second.is_held
        assert (await first.get("scope")).holder == first.holder
        await first.refresh()

    async def test_holder_reacquires_its_own_lock(self, store):
        lock = MigrationLock(store, ttl_seconds=60)
        await lock.acquire("scope", "run-a")

        again = await lock.acquire("scope", "run-a")

        assert again.holder == lock.holder

    async def test_same_run_resumes_after_release(self, store):
        first = MigrationLock(store, ttl_seconds=60)
        await first.acquire("scope", "run-a")
        await first.release()

        second = MigrationLock(store, ttl_seconds=60)
        lock = await second.acquire("scope", "run-a")

        assert lock.holder == second.holder

    async def test_same_run_resumes_after_expiry(self, store):
        crashed = MigrationLock(store, ttl_seconds=0)
        await crashed.acquire("scope", "run-a")

        resumed = MigrationLock(store, ttl_seconds=60)
        lock = await resumed.acquire("scope", "run-a")

        assert lock.holder == resumed.holder
        # The crashed invocation can no longer renew or drop the lock
        with pytest.raises(LockNotHeldError):
            await crashed.refresh()
        assert await crashed.release() is False
        assert (await resumed.get("scope")).holder == resumed.holder

    async def test_expired_lock_is_reclaimed(self, store):
        await MigrationLock(store, ttl_seconds=0).acquire("scope", "run-a")

        lock = await MigrationLock(store, ttl_seconds=60).acquire("scope", "run-b")

        assert lock.run_id == "run-b"

    async def test_release_and_refresh(self, store):
        lock = MigrationLock(store, ttl_seconds=60)
        with pytest.raises(LockNotHeldError):
            await lock.refresh()

        await lock.acquire("scope", "run-a")
        await lock.refresh()
        assert await lock.release() is True
        assert await lock.get("scope") is None
        assert await lock.release() is False

    async def test_scopes_are_independent(self, store):
        await MigrationLock(store, ttl_seconds=60).acquire("scope-1", "run-a")
        lock = await MigrationLock(store, ttl_seconds=60).acquire("scope-2", "run-b")
        assert lock.scope == "scope-2"


class TestRunRegistry:
    async def test_create_get_and_status(self, store):
        registry = RunRegistry(store)
        run = await registry.create("scope", {"batch_size": 5})

        await registry.set_status(run.run_id, RunStatus.INTERRUPTED, last_error="stopped")
        loaded = await registry.get(run.run_id)

        assert loaded.status == RunStatus.INTERRUPTED
        assert loaded.last_error == "stopped"
        assert loaded.config == {"batch_size": 5}
        assert [r.run_id for r in await registry.list_runs("scope")] == [run.run_id]
        assert await registry.list_runs("other") == []

    async def test_unknown_run(self, store):
        registry = RunRegistry(store)
        with pytest.raises(RunNotFoundError):
            await registry.get("missing")
        with pytest.raises(RunNotFoundError):
            await registry.set_status("missing", RunStatus.FAILED)

    async def test_duplicate_group_state(self, store):
        registry = RunRegistry(store)
        group = DuplicateGroup(location="archive", path="a.jpg", record_ids=["r1", "r2"])
        await registry.save_duplicate_group("run-a", group)
        await registry.save_duplicate_group(
            "run-a", group.model_copy(update={"status": DuplicateGroupStatus.STAGED, "staged_path": "s/a.jpg"})
        )

        groups = await registry.load_duplicate_groups("run-a")

        assert list(groups) == ["archive::a.jpg"]
        assert groups["archive::a.jpg"].status == DuplicateGroupStatus.STAGED

    def test_new_run_ids_are_unique(self):
        assert new_run_id() != new_run_id()


class TestBackup:
    async def test_snapshot_round_trip(self, store):
        repository = InMemoryMetadataRepository(
            [make_record("r1", "legacy", "a/1.jpg"), make_record("r2", "legacy", "a/2.jpg")]
        )
        backup = BackupService(store, batch_size=1)

        info = await backup.snapshot("run-a", repository)
        await repository.update_location_and_path("r1", "primary", "media/1.jpg")
        again = await backup.snapshot("run-a", repository)

        assert info.record_count == 2
        assert again.created_at == info.created_at
        records = await backup.load("run-a")
        assert [(r.id, r.location, r.path) for r in records] == [
            ("r1", "legacy", "a/1.jpg"),
            ("r2", "legacy", "a/2.jpg"),
        ]

    async def test_missing_snapshot(self, store):
        with pytest.raises(RollbackError, match="No pre-run snapshot"):
            await BackupService(store).load("run-a")
