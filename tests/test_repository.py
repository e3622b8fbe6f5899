"""Tests for the reference metadata repositories."""

import pytest

from storage_migrator.repository import InMemoryMetadataRepository, SqliteMetadataRepository

from conftest import make_record


@pytest.fixture(params=["memory", "sqlite"])
async def repository(request, tmp_path):
    """Both implementations must behave identically."""
    records = [
        make_record("r1", "legacy", "a/photo.jpg", modified=1),
        make_record("r2", "legacy", "a/photo.jpg", modified=2),
        make_record("r3", "archive", "/b//scan.tif", live=False),
    ]
    if request.param == "memory":
        return InMemoryMetadataRepository(records)
    repo = SqliteMetadataRepository(tmp_path / "records.db")
    await repo.initialize()
    for record in records:
        await repo.restore_record(record)
    return repo


async def test_find_by_filename_and_id(repository):
    assert [r.id for r in await repository.find_by_filename("photo.jpg")] == ["r1", "r2"]
    assert (await repository.find_by_id("r3")).live is False
    assert await repository.find_by_id("missing") is None


async def test_find_by_path_includes_unused_records(repository):
    assert [r.id for r in await repository.find_by_path("legacy", "/a/photo.jpg")] == ["r1", "r2"]
    assert [r.id for r in await repository.find_by_path("archive", "b/scan.tif")] == ["r3"]


async def test_update_location_and_path(repository):
    updated = await repository.update_location_and_path("r1", "primary", "media/photo.jpg")

    assert (updated.location, updated.path) == ("primary", "media/photo.jpg")
    assert (await repository.find_by_id("r1")).location == "primary"
    with pytest.raises(KeyError):
        await repository.update_location_and_path("missing", "primary", "x.jpg")


async def test_mark_removed_and_restore(repository):
    record = await repository.find_by_id("r2")

    await repository.mark_removed("r2")
    assert await repository.find_by_id("r2") is None
    assert await repository.count() == 2

    await repository.restore_record(record)
    restored = await repository.find_by_id("r2")
    assert restored.modified_at == record.modified_at


async def test_iter_records_pages(repository):
    pages = [[r.id for r in page] async for page in repository.iter_records(batch_size=2)]
    assert pages == [["r1", "r2"], ["r3"]]


async def test_restore_snapshot_replaces_everything(repository):
    await repository.update_location_and_path("r1", "primary", "media/photo.jpg")

    count = await repository.restore_snapshot([make_record("r1", "legacy", "a/photo.jpg")])

    assert count == 1
    assert [r.id for r in await repository.all_records()] == ["r1"]
    assert (await repository.find_by_id("r1")).location == "legacy"
