"""In-process storage client, used for tests and dry rehearsals."""

from collections.abc import AsyncIterator, Iterable
from datetime import datetime

from ..models.records import ObjectMeta, utcnow
from ..utils import clean_path
from .base import StorageLocationClient


class InMemoryStorageClient(StorageLocationClient):
    """Objects held in dictionaries keyed by location and path.

    Native move can be disabled per location to exercise the
    copy-then-delete fallback.
    """

    def __init__(self, locations: Iterable[str] = (), without_move: Iterable[str] = ()):
        super().__init__()
        self._objects: dict[str, dict[str, tuple[bytes, datetime]]] = {}
        self._without_move = set(without_move)
        for name in locations:
            self.add_location(name)

    def add_location(self, name: str, supports_move: bool = True) -> None:
        self._objects.setdefault(name, {})
        if not supports_move:
            self._without_move.add(name)

    def put(self, location: str, path: str, data: bytes, modified_at: datetime | None = None) -> None:
        """Seed an object synchronously."""
        self._objects.setdefault(location, {})
        self._objects[location][clean_path(path)] = (data, modified_at or utcnow())

    def paths(self, location: str) -> list[str]:
        return sorted(self._bucket(location))

    def _bucket(self, location: str) -> dict[str, tuple[bytes, datetime]]:
        try:
            return self._objects[location]
        except KeyError:
            raise FileNotFoundError(f"Location '{location}' is not configured") from None

    def _meta(self, location: str, path: str, data: bytes, modified_at: datetime) -> ObjectMeta:
        return ObjectMeta(location=location, path=path, size=len(data), modified_at=modified_at)

    async def list(self, location: str, prefix: str = "") -> AsyncIterator[ObjectMeta]:
        bucket = self._bucket(location)
        prefix = clean_path(prefix)
        for path in sorted(bucket):
            if prefix and not (path == prefix or path.startswith(prefix + "/")):
                continue
            data, modified_at = bucket[path]
            yield self._meta(location, path, data, modified_at)

    async def read(self, location: str, path: str) -> bytes:
        try:
            return self._bucket(location)[clean_path(path)][0]
        except KeyError:
            raise FileNotFoundError(f"Object does not exist: {location}:{path}") from None

    async def write(self, location: str, path: str, data: bytes) -> None:
        self._bucket(location)[clean_path(path)] = (bytes(data), utcnow())

    async def exists(self, location: str, path: str) -> bool:
        return clean_path(path) in self._bucket(location)

    async def delete(self, location: str, path: str) -> None:
        self._bucket(location).pop(clean_path(path), None)

    async def stat(self, location: str, path: str) -> ObjectMeta | None:
        entry = self._bucket(location).get(clean_path(path))
        if entry is None:
            return None
        return self._meta(location, clean_path(path), *entry)

    def supports_move(self, location: str) -> bool:
        return location in self._objects and location not in self._without_move

    async def _native_move(self, location: str, path: str, new_path: str) -> None:
        bucket = self._bucket(location)
        try:
            entry = bucket.pop(clean_path(path))
        except KeyError:
            raise FileNotFoundError(f"Object does not exist: {location}:{path}") from None
        bucket[clean_path(new_path)] = entry
