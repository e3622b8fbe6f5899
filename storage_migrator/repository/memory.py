"""Dictionary-backed metadata repository."""

from collections.abc import AsyncIterator, Iterable

from ..models.records import Record
from ..utils import clean_path
from .base import MetadataRepository


class InMemoryMetadataRepository(MetadataRepository):
    def __init__(self, records: Iterable[Record] = ()):
        super().__init__()
        self._records: dict[str, Record] = {r.id: r.model_copy() for r in records}

    def add(self, record: Record) -> None:
        self._records[record.id] = record.model_copy()

    async def find_by_filename(self, name: str) -> list[Record]:
        return [r.model_copy() for _, r in sorted(self._records.items()) if r.filename == name]

    async def find_by_id(self, record_id: str) -> Record | None:
        record = self._records.get(record_id)
        return record.model_copy() if record else None

    async def find_by_path(self, location: str, path: str) -> list[Record]:
        path = clean_path(path)
        return [
            r.model_copy()
            for _, r in sorted(self._records.items())
            if r.location == location and clean_path(r.path) == path
        ]

    async def update_location_and_path(self, record_id: str, location: str, path: str) -> Record:
        record = self._records[record_id]
        updated = record.model_copy(update={"location": location, "path": path})
        self._records[record_id] = updated
        return updated.model_copy()

    async def mark_removed(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    async def iter_records(self, batch_size: int = 100) -> AsyncIterator[list[Record]]:
        ids = sorted(self._records)
        for start in range(0, len(ids), batch_size):
            page = [self._records[i].model_copy() for i in ids[start : start + batch_size] if i in self._records]
            if page:
                yield page

    async def restore_record(self, record: Record) -> None:
        self._records[record.id] = record.model_copy()

    async def restore_snapshot(self, records: Iterable[Record]) -> int:
        restored = {r.id: r.model_copy() for r in records}
        self._records = restored
        return len(restored)

    async def count(self) -> int:
        return len(self._records)
