"""End-to-end tests for the phase state machine."""

import csv
import json

import pytest

from storage_migrator.core.changelog import ChangeLogManager
from storage_migrator.core.config_loader import config_from_dict
from storage_migrator.core.exceptions import ConfigurationError, LockContentionError, TransientStorageError
from storage_migrator.core.lock import MigrationLock
from storage_migrator.models.enums import PIPELINE_ORDER, ChangeOperation, Phase, RunStatus
from storage_migrator.models.state import Checkpoint
from storage_migrator.repository.memory import InMemoryMetadataRepository
from storage_migrator.services.orchestrator import MigrationOrchestrator
from storage_migrator.services.phases import BatchProcessor
from storage_migrator.storage.memory import InMemoryStorageClient

from conftest import LOCATIONS, base_config_data, make_record, no_sleep, seed_scenario


async def live_pointers(repository):
    return {r.id: (r.location, r.path) for r in await repository.all_records() if r.live}


class TestFullRun:
    async def test_scenario_reaches_invariant(self, orchestrator, storage, repository, tmp_path):
        seed_scenario(storage, repository)

        outcome = await orchestrator.start(config_from_dict(base_config_data()))

        assert outcome.status == RunStatus.COMPLETED
        assert outcome.phase == Phase.COMPLETE
        assert outcome.verification.invariant_holds
        pointers = await live_pointers(repository)
        assert set(pointers) == {"r2", "r3"}
        paths = {path for location, path in pointers.values() if location == "primary"}
        assert len(paths) == 2
        assert all(path.startswith("media/") for path in paths)
        assert sorted(storage.paths("primary")) == sorted(paths)
        # Staged duplicate copy is gone, sources were moved not copied
        assert storage.paths("quarantine") == []
        assert storage.paths("legacy") == []
        assert storage.paths("archive") == []

        assert outcome.counters["records_repaired"] == 1
        assert outcome.counters["duplicate_records_removed"] == 1
        assert outcome.counters["records_consolidated"] == 2
        assert outcome.counters["inventory_broken_records"] == 1
        assert outcome.counters["bytes_consolidated"] == 4096

        report = json.loads((tmp_path / "reports" / outcome.run_id / "report.json").read_text())
        assert report["status"] == "completed"
        assert report["transferred"] == {"bytes_consolidated": "4.0 KB", "bytes_quarantined": "0 B"}

    async def test_every_change_is_logged_in_order(self, orchestrator, storage, repository, store):
        seed_scenario(storage, repository)

        outcome = await orchestrator.start(config_from_dict(base_config_data()))

        entries = await ChangeLogManager(store, outcome.run_id).load_all()
        assert [e.sequence for e in entries] == list(range(1, len(entries) + 1))
        phases = [e.phase for e in entries]
        assert phases == sorted(phases, key=PIPELINE_ORDER.index)
        assert [e.operation for e in entries[:2]] == [
            ChangeOperation.RECORD_LINKED,
            ChangeOperation.DUPLICATE_RECORD_REMOVED,
        ]

    async def test_unrepairable_record_completes_with_issues(self, orchestrator, storage, repository, tmp_path):
        storage.put("primary", "media/sunrise.jpg", b"1")
        repository.add(make_record("ok", "primary", "media/sunrise.jpg"))
        repository.add(make_record("lost", "legacy", "old/lost.jpg"))

        outcome = await orchestrator.start(config_from_dict(base_config_data()))

        assert outcome.status == RunStatus.COMPLETED_WITH_ISSUES
        assert not outcome.verification.invariant_holds
        [unresolved] = outcome.unresolved
        assert unresolved.record_id == "lost"
        assert unresolved.reason == "no candidate found"

        with open(tmp_path / "reports" / outcome.run_id / "unresolved.csv", newline="") as f:
            rows = list(csv.DictReader(f))
        assert [row["record_id"] for row in rows] == ["lost"]

    async def test_empty_repository(self, orchestrator):
        outcome = await orchestrator.start(config_from_dict(base_config_data()))

        assert outcome.status == RunStatus.COMPLETED
        assert outcome.verification.checked == 0

    async def test_invalid_config_starts_nothing(self, orchestrator, store):
        config = config_from_dict(base_config_data())
        config.target_location = "nowhere"

        with pytest.raises(ConfigurationError):
            await orchestrator.start(config)

        assert await orchestrator.list_runs() == []
        assert await MigrationLock(store, ttl_seconds=60).get("test-scope") is None


class TestLocking:
    async def test_second_run_in_scope_is_refused(self, orchestrator, store):
        await MigrationLock(store, ttl_seconds=3600).acquire("test-scope", "other-run")

        with pytest.raises(LockContentionError):
            await orchestrator.start(config_from_dict(base_config_data()))

    async def test_lock_released_after_run(self, orchestrator, store):
        await orchestrator.start(config_from_dict(base_config_data()))

        assert await MigrationLock(store, ttl_seconds=60).get("test-scope") is None

    async def test_force_unlock(self, orchestrator, store):
        await MigrationLock(store, ttl_seconds=3600).acquire("test-scope", "crashed-run")

        assert await orchestrator.force_unlock("test-scope") is True
        assert await orchestrator.force_unlock("test-scope") is False


class CancellingRepository(InMemoryMetadataRepository):
    """Requests cancellation on the first pointer update, mid-batch."""

    def __init__(self, token_holder):
        super().__init__()
        self.token_holder = token_holder
        self.cancelled = False

    async def update_location_and_path(self, record_id, location, path):
        if not self.cancelled:
            self.cancelled = True
            self.token_holder[0].cancel_token.request_cancel("test interrupt")
        return await super().update_location_and_path(record_id, location, path)


class TestResume:
    async def test_resume_after_interrupt_finishes_exactly_once(self, store, storage, tmp_path):
        holder = []
        repository = CancellingRepository(holder)
        for name in ("a", "b", "c"):
            storage.put("archive", f"new/{name}.jpg", name.encode())
            repository.add(make_record(name, "legacy", f"old/{name}.jpg"))
        first = MigrationOrchestrator(store, storage, repository, reports_dir=tmp_path / "reports", sleep=no_sleep)
        holder.append(first)

        interrupted = await first.start(config_from_dict(base_config_data(batch_size=1)))

        assert interrupted.status == RunStatus.INTERRUPTED
        assert interrupted.phase == Phase.LINK_REPAIR
        status = await first.status(interrupted.run_id)
        assert status.status == RunStatus.INTERRUPTED
        assert status.progress["processed_in_phase"] == 1
        assert await MigrationLock(store, ttl_seconds=60).get("test-scope") is None

        second = MigrationOrchestrator(store, storage, repository, reports_dir=tmp_path / "reports", sleep=no_sleep)
        resumed = await second.resume(interrupted.run_id)

        assert resumed.status == RunStatus.COMPLETED
        entries = await ChangeLogManager(store, interrupted.run_id).load_all(
            operations=[ChangeOperation.RECORD_LINKED]
        )
        assert sorted(e.record_id for e in entries) == ["a", "b", "c"]
        pointers = await live_pointers(repository)
        assert pointers == {n: ("primary", f"media/{n}.jpg") for n in ("a", "b", "c")}

    async def test_resume_of_finished_run_is_a_no_op(self, orchestrator, storage, repository):
        seed_scenario(storage, repository)
        outcome = await orchestrator.start(config_from_dict(base_config_data()))
        before = await live_pointers(repository)

        again = await orchestrator.resume(outcome.run_id)

        assert again.status == RunStatus.COMPLETED
        assert await live_pointers(repository) == before

    async def test_batch_processor_skips_processed_items(self, context):
        handled = []

        async def handler(item_id):
            handled.append(item_id)
            return []

        checkpoint = Checkpoint(run_id="test-run", phase=Phase.QUARANTINE, processed_ids={"x", "y"})
        await BatchProcessor(context, Phase.QUARANTINE).run(checkpoint, ["x", "y", "z"], handler)

        assert handled == ["z"]
        assert checkpoint.processed_ids == {"x", "y", "z"}


class UnavailableTarget(InMemoryStorageClient):
    async def write(self, location, path, data):
        if location == "primary":
            raise TransientStorageError("backend unavailable")
        await super().write(location, path, data)


class TestFailureModes:
    async def test_repeated_error_trips_circuit_breaker(self, store, repository, tmp_path):
        storage = UnavailableTarget(locations=LOCATIONS)
        for i in range(12):
            storage.put("legacy", f"old/{i}.jpg", b"x")
            repository.add(make_record(f"r{i:02d}", "legacy", f"old/{i}.jpg"))
        orchestrator = MigrationOrchestrator(store, storage, repository, reports_dir=tmp_path / "r", sleep=no_sleep)
        config = config_from_dict(
            base_config_data(max_retries=0, max_repeated_errors=10, error_threshold=100)
        )

        outcome = await orchestrator.start(config)

        assert outcome.status == RunStatus.FAILED
        assert outcome.error_class == "CircuitBreakerError"
        assert outcome.phase == Phase.CONSOLIDATION
        run = (await orchestrator.list_runs())[0]
        assert run.status == RunStatus.FAILED
        # Nothing was lost: every object is still at its source
        assert len(storage.paths("legacy")) == 12

    async def test_error_threshold_halts_run(self, store, repository, tmp_path):
        storage = UnavailableTarget(locations=LOCATIONS)
        for i in range(4):
            storage.put("legacy", f"old/{i}.jpg", b"x")
            repository.add(make_record(f"r{i}", "legacy", f"old/{i}.jpg"))
        orchestrator = MigrationOrchestrator(store, storage, repository, reports_dir=tmp_path / "r", sleep=no_sleep)

        outcome = await orchestrator.start(
            config_from_dict(base_config_data(max_retries=0, max_repeated_errors=100, error_threshold=3))
        )

        assert outcome.status == RunStatus.FAILED
        assert outcome.error_class == "ErrorThresholdExceeded"

    async def test_item_failures_complete_with_issues(self, store, repository, tmp_path):
        storage = UnavailableTarget(locations=LOCATIONS)
        storage.put("legacy", "old/a.jpg", b"x")
        repository.add(make_record("r1", "legacy", "old/a.jpg"))
        orchestrator = MigrationOrchestrator(store, storage, repository, reports_dir=tmp_path / "r", sleep=no_sleep)

        outcome = await orchestrator.start(config_from_dict(base_config_data(max_retries=0)))

        assert outcome.status == RunStatus.COMPLETED_WITH_ISSUES
        [failure] = outcome.failures
        assert failure.phase == Phase.CONSOLIDATION
        assert failure.item_id == "r1"
        assert failure.error_class == "TransientStorageError"


class TestStatus:
    async def test_status_and_checkpoints(self, orchestrator, storage, repository):
        seed_scenario(storage, repository)
        outcome = await orchestrator.start(config_from_dict(base_config_data()))

        status = await orchestrator.status(outcome.run_id)

        assert status.status == RunStatus.COMPLETED
        assert status.phase == Phase.COMPLETE
        assert status.progress["phases_completed"] == 6
        assert status.progress["total_phases"] == 6
        assert status.changelog_entries > 0
        checkpoints = await orchestrator.list_checkpoints(outcome.run_id)
        assert checkpoints[0]["is_current"]


class SimulatedCrash(BaseException):
    """Process death: escapes every ``except Exception`` on the way up."""


class CrashingRepository(InMemoryMetadataRepository):
    """Dies on pointer updates into the target while armed."""

    def __init__(self):
        super().__init__()
        self.armed = True

    async def update_location_and_path(self, record_id, location, path):
        if self.armed and location == "primary":
            raise SimulatedCrash(record_id)
        return await super().update_location_and_path(record_id, location, path)


class TestCrashRecovery:
    @pytest.fixture
    def crashing(self, monkeypatch):
        repository = CrashingRepository()
        flush = ChangeLogManager._flush_locked

        # Buffered entries die with the process
        async def dying_flush(changelog):
            if repository.armed and changelog.pending:
                raise SimulatedCrash("flush")
            return await flush(changelog)

        monkeypatch.setattr(ChangeLogManager, "_flush_locked", dying_flush)
        return repository

    async def test_mid_batch_crash_resumes_without_losing_moves(self, store, storage, crashing, tmp_path):
        for name in ("a", "b"):
            storage.put("legacy", f"old/{name}.jpg", name.encode())
            crashing.add(make_record(name, "legacy", f"old/{name}.jpg"))
        first = MigrationOrchestrator(store, storage, crashing, reports_dir=tmp_path / "reports", sleep=no_sleep)

        with pytest.raises(SimulatedCrash):
            await first.start(config_from_dict(base_config_data()))

        [run] = await first.list_runs()
        assert run.status == RunStatus.RUNNING
        # Both objects moved, neither move nor checkpoint reached the state database
        assert storage.paths("legacy") == []
        assert sorted(storage.paths("primary")) == ["media/a.jpg", "media/b.jpg"]
        changelog = ChangeLogManager(store, run.run_id)
        assert await changelog.load_all() == []
        assert len(await changelog.pending_transfers()) == 2
        assert (await first.status(run.run_id)).phase == Phase.CONSOLIDATION

        # The crashed invocation still holds the lock
        contender = MigrationOrchestrator(store, storage, crashing, reports_dir=tmp_path / "reports", sleep=no_sleep)
        with pytest.raises(LockContentionError):
            await contender.resume(run.run_id)

        crashing.armed = False
        assert await contender.force_unlock("test-scope") is True
        resumed = await contender.resume(run.run_id)

        assert resumed.status == RunStatus.COMPLETED
        assert await live_pointers(crashing) == {n: ("primary", f"media/{n}.jpg") for n in ("a", "b")}
        entries = await changelog.load_all()
        for name in ("a", "b"):
            assert sorted(e.operation.value for e in entries if e.record_id == name) == [
                ChangeOperation.OBJECT_MOVED.value,
                ChangeOperation.RECORD_PATH_UPDATED.value,
            ]
        assert await changelog.pending_transfers() == []
        assert storage.paths("quarantine") == []
        assert storage.paths("legacy") == []

        # The reconciled moves are reversible like any other
        result = await contender.rollback(run.run_id)

        assert result.errors == 0
        assert await live_pointers(crashing) == {n: ("legacy", f"old/{n}.jpg") for n in ("a", "b")}
        assert sorted(storage.paths("legacy")) == ["old/a.jpg", "old/b.jpg"]

    async def test_live_invocation_blocks_resume_of_the_same_run(self, orchestrator, store):
        run = await orchestrator.registry.create("test-scope", base_config_data(), run_id="run-live")
        await MigrationLock(store, ttl_seconds=3600).acquire("test-scope", run.run_id)

        with pytest.raises(LockContentionError) as exc_info:
            await orchestrator.resume(run.run_id)

        assert exc_info.value.holder_run_id == "run-live"
        assert (await orchestrator.registry.get(run.run_id)).status == RunStatus.RUNNING
