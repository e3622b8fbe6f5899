"""Abstract base class for storage location clients."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import structlog

from ..models.records import ObjectMeta

logger = structlog.get_logger()


class StorageLocationClient(ABC):
    """Uniform object access against named storage locations.

    Paths are relative to the location root and use forward slashes.
    """

    def __init__(self) -> None:
        self.logger = logger.bind(component=self.__class__.__name__.lower())

    @abstractmethod
    def list(self, location: str, prefix: str = "") -> AsyncIterator[ObjectMeta]:
        """Iterate every object under ``prefix`` in ``location``.

        Raises:
            FileNotFoundError: The location is not configured or not reachable
        """

    @abstractmethod
    async def read(self, location: str, path: str) -> bytes:
        """Read object bytes.

        Raises:
            FileNotFoundError: No object at ``path``
        """

    @abstractmethod
    async def write(self, location: str, path: str, data: bytes) -> None:
        """Create or replace the object at ``path``."""

    @abstractmethod
    async def exists(self, location: str, path: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, location: str, path: str) -> None:
        """Remove the object at ``path`` (no error when already absent)."""

    @abstractmethod
    async def stat(self, location: str, path: str) -> ObjectMeta | None:
        """Metadata for one object, or None when it does not exist."""

    def supports_move(self, location: str) -> bool:
        """Whether ``location`` can rename objects natively."""
        return False

    async def move(self, location: str, path: str, new_path: str) -> None:
        """Relocate an object inside one location.

        Uses the native rename when supported and falls back to write then
        delete otherwise. Never overwrites an existing destination.

        Raises:
            FileExistsError: ``new_path`` is already occupied
            FileNotFoundError: No object at ``path``
        """
        if await self.exists(location, new_path):
            raise FileExistsError(f"Destination already exists: {location}:{new_path}")
        if self.supports_move(location):
            await self._native_move(location, path, new_path)
            return
        data = await self.read(location, path)
        await self.write(location, new_path, data)
        await self.delete(location, path)

    async def _native_move(self, location: str, path: str, new_path: str) -> None:
        raise NotImplementedError(f"{self.__class__.__name__} has no native move for {location}")
