"""Abstract base class for the reference metadata repository."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable

import structlog

from ..models.records import Record

logger = structlog.get_logger()


class MetadataRepository(ABC):
    """Host application's record store, as seen by the migrator."""

    def __init__(self) -> None:
        self.logger = logger.bind(component=self.__class__.__name__.lower())

    @abstractmethod
    async def find_by_filename(self, name: str) -> list[Record]:
        pass

    @abstractmethod
    async def find_by_id(self, record_id: str) -> Record | None:
        pass

    @abstractmethod
    async def find_by_path(self, location: str, path: str) -> list[Record]:
        """Every record (live or not) pointing at ``location:path``."""

    @abstractmethod
    async def update_location_and_path(self, record_id: str, location: str, path: str) -> Record:
        """Repoint a record.

        Raises:
            KeyError: No record with ``record_id``
        """

    @abstractmethod
    async def mark_removed(self, record_id: str) -> None:
        """Delete the metadata row (the object is never touched)."""

    @abstractmethod
    def iter_records(self, batch_size: int = 100) -> AsyncIterator[list[Record]]:
        """Pages of records in identifier order."""

    @abstractmethod
    async def restore_record(self, record: Record) -> None:
        """Insert or overwrite ``record`` exactly as given."""

    @abstractmethod
    async def restore_snapshot(self, records: Iterable[Record]) -> int:
        """Replace the whole record set with ``records`` atomically."""

    @abstractmethod
    async def count(self) -> int:
        pass

    async def all_records(self, batch_size: int = 500) -> list[Record]:
        records: list[Record] = []
        async for page in self.iter_records(batch_size):
            records.extend(page)
        return records
