"""Tests for quarantine and final verification."""

from storage_migrator.models.enums import ChangeOperation, Phase
from storage_migrator.models.records import ObjectKey
from storage_migrator.models.state import Checkpoint, TransferIntent
from storage_migrator.services.inventory import InventoryBuilder
from storage_migrator.services.quarantine import QuarantineService, object_item_id, parse_object_item
from storage_migrator.services.recovery import TransferRecovery
from storage_migrator.services.verification import VerificationService

from conftest import make_record


async def build_inventory(context):
    return await InventoryBuilder(
        context.config, context.storage, context.repository, context.error_recovery
    ).build()


async def quarantine(context):
    inventory = await build_inventory(context)
    checkpoint = Checkpoint(run_id=context.run_id, phase=Phase.QUARANTINE)
    outcome = await QuarantineService(context).run(inventory, checkpoint)
    return inventory, outcome


def test_object_item_ids_round_trip_paths_with_colons():
    key = ObjectKey(location="legacy", path="odd:name/a.jpg")

    assert object_item_id(key) == "object:legacy:odd:name/a.jpg"
    assert parse_object_item(object_item_id(key)) == key


class TestQuarantine:
    async def test_orphan_is_moved_not_deleted(self, context, storage):
        storage.put("legacy", "stray/orphan.jpg", b"orphan")

        _, outcome = await quarantine(context)

        assert storage.paths("legacy") == []
        assert await storage.read("quarantine", "quarantine/legacy/stray/orphan.jpg") == b"orphan"
        [entry] = outcome.entries
        assert entry.operation == ChangeOperation.OBJECT_QUARANTINED
        assert entry.record_id is None
        assert entry.after == {"location": "quarantine", "path": "quarantine/legacy/stray/orphan.jpg"}
        assert outcome.checkpoint.counters["objects_quarantined"] == 1

    async def test_unused_record_is_quarantined_with_its_object(self, context, storage, repository):
        storage.put("archive", "old/unused.jpg", b"unused")
        repository.add(make_record("r1", "archive", "old/unused.jpg", live=False))

        _, outcome = await quarantine(context)

        record = await repository.find_by_id("r1")
        assert (record.location, record.path) == ("quarantine", "quarantine/archive/old/unused.jpg")
        assert await storage.exists("quarantine", "quarantine/archive/old/unused.jpg")
        [entry] = outcome.entries
        assert entry.operation == ChangeOperation.RECORD_QUARANTINED
        assert entry.before == {"location": "archive", "path": "old/unused.jpg"}

    async def test_live_and_shared_objects_stay(self, context, storage, repository):
        storage.put("primary", "media/live.jpg", b"1")
        storage.put("legacy", "shared.jpg", b"2")
        repository.add(make_record("r1", "primary", "media/live.jpg"))
        repository.add(make_record("r2", "legacy", "shared.jpg"))
        repository.add(make_record("r3", "legacy", "shared.jpg", live=False))

        _, outcome = await quarantine(context)

        assert outcome.entries == []
        assert storage.paths("quarantine") == []
        assert (await repository.find_by_id("r3")).location == "legacy"

    async def test_object_that_gained_a_reference_is_skipped(self, context, storage, repository):
        storage.put("legacy", "late.jpg", b"late")
        inventory = await build_inventory(context)
        # Linked after the inventory was taken
        repository.add(make_record("r9", "legacy", "late.jpg"))

        entries = await QuarantineService(context).quarantine_object(
            ObjectKey(location="legacy", path="late.jpg"), inventory
        )

        assert entries == []
        assert storage.paths("legacy") == ["late.jpg"]

    async def test_collision_in_quarantine_adds_run_id(self, context, storage):
        storage.put("quarantine", "quarantine/legacy/a.jpg", b"earlier run")
        storage.put("legacy", "a.jpg", b"this run")

        await quarantine(context)

        assert await storage.read("quarantine", "quarantine/legacy/a.jpg") == b"earlier run"
        assert await storage.read("quarantine", "quarantine/legacy/a.test-run.jpg") == b"this run"

    async def test_interrupted_object_quarantine_is_logged_on_recovery(self, context, storage):
        storage.put("quarantine", "quarantine/legacy/stray/orphan.jpg", b"orphan")
        await context.changelog.announce_transfer(
            TransferIntent(
                run_id="test-run",
                phase=Phase.QUARANTINE,
                operation=ChangeOperation.OBJECT_QUARANTINED,
                source=ObjectKey(location="legacy", path="stray/orphan.jpg"),
                target=ObjectKey(location="quarantine", path="quarantine/legacy/stray/orphan.jpg"),
                size=6,
            )
        )

        [entry] = await TransferRecovery(context).recover()

        assert entry.operation == ChangeOperation.OBJECT_QUARANTINED
        assert entry.before == {"location": "legacy", "path": "stray/orphan.jpg"}
        assert entry.details["recovered"] is True
        assert await context.changelog.pending_transfers() == []

    async def test_interrupted_record_quarantine_repoints_record(self, context, storage, repository):
        # Object already moved; the pointer update never ran
        storage.put("quarantine", "quarantine/archive/old/unused.jpg", b"unused")
        repository.add(make_record("r1", "archive", "old/unused.jpg", live=False))
        await context.changelog.announce_transfer(
            TransferIntent(
                run_id="test-run",
                phase=Phase.QUARANTINE,
                operation=ChangeOperation.RECORD_QUARANTINED,
                record_id="r1",
                source=ObjectKey(location="archive", path="old/unused.jpg"),
                target=ObjectKey(location="quarantine", path="quarantine/archive/old/unused.jpg"),
                size=6,
                record_before={"location": "archive", "path": "old/unused.jpg"},
            )
        )

        [entry] = await TransferRecovery(context).recover()

        assert entry.operation == ChangeOperation.RECORD_QUARANTINED
        assert entry.record_id == "r1"
        record = await repository.find_by_id("r1")
        assert (record.location, record.path) == ("quarantine", "quarantine/archive/old/unused.jpg")
        assert [e.sequence for e in await context.changelog.load_all()] == [entry.sequence]


class TestVerification:
    async def test_invariant_holds(self, context, storage, repository):
        storage.put("primary", "media/a.jpg", b"1")
        storage.put("primary", "media/b.jpg", b"2")
        repository.add(make_record("r1", "primary", "media/a.jpg"))
        repository.add(make_record("r2", "primary", "media/b.jpg"))
        repository.add(make_record("r3", "legacy", "gone.jpg", live=False))

        report = await VerificationService(context).verify()

        assert report.checked == 2
        assert report.invariant_holds

    async def test_missing_and_shared_objects_break_the_invariant(self, context, storage, repository):
        storage.put("primary", "media/a.jpg", b"1")
        repository.add(make_record("r1", "primary", "media/a.jpg"))
        repository.add(make_record("r2", "primary", "media/a.jpg"))
        repository.add(make_record("r3", "legacy", "missing.jpg"))

        report = await VerificationService(context).verify()

        assert not report.invariant_holds
        assert report.missing_objects == ["r3"]
        assert report.shared_objects == {"primary:media/a.jpg": ["r1", "r2"]}
        assert report.unresolved_records == ["r3"]

    async def test_live_record_outside_target_prefix_breaks_the_invariant(self, context, storage, repository):
        storage.put("primary", "media/a.jpg", b"1")
        storage.put("legacy", "old/b.jpg", b"2")
        storage.put("primary", "uploads/c.jpg", b"3")
        repository.add(make_record("r1", "primary", "media/a.jpg"))
        repository.add(make_record("r2", "legacy", "old/b.jpg"))
        repository.add(make_record("r3", "primary", "uploads/c.jpg"))

        report = await VerificationService(context).verify()

        assert not report.invariant_holds
        assert report.non_canonical == ["r2", "r3"]
        assert report.missing_objects == []
        assert report.unresolved_records == []

    async def test_staging_cleanup_is_run_scoped(self, context, storage):
        storage.put("quarantine", "quarantine/_staging/test-run/abc/a.jpg", b"1")
        storage.put("quarantine", "quarantine/_staging/other-run/abc/a.jpg", b"2")

        report = await VerificationService(context).run(None)

        assert report.staging_removed == 1
        assert storage.paths("quarantine") == ["quarantine/_staging/other-run/abc/a.jpg"]

    async def test_keep_staging(self, context, storage):
        storage.put("quarantine", "quarantine/_staging/test-run/abc/a.jpg", b"1")
        context.config.keep_staging = True

        report = await VerificationService(context).run(None)

        assert report.staging_removed == 0
        assert storage.paths("quarantine") == ["quarantine/_staging/test-run/abc/a.jpg"]
