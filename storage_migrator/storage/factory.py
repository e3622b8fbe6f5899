"""Build a storage client from location configuration."""

from collections.abc import AsyncIterator

from ..core.config_loader import LocationConfig
from ..core.exceptions import ConfigurationError
from ..models.records import ObjectMeta
from .base import StorageLocationClient
from .local import LocalStorageClient
from .memory import InMemoryStorageClient


class RoutingStorageClient(StorageLocationClient):
    """Dispatches each call to the client that owns the named location."""

    def __init__(self, routes: dict[str, StorageLocationClient]):
        super().__init__()
        self.routes = routes

    def _client(self, location: str) -> StorageLocationClient:
        try:
            return self.routes[location]
        except KeyError:
            raise FileNotFoundError(f"Location '{location}' is not configured") from None

    async def list(self, location: str, prefix: str = "") -> AsyncIterator[ObjectMeta]:
        async for meta in self._client(location).list(location, prefix):
            yield meta

    async def read(self, location: str, path: str) -> bytes:
        return await self._client(location).read(location, path)

    async def write(self, location: str, path: str, data: bytes) -> None:
        await self._client(location).write(location, path, data)

    async def exists(self, location: str, path: str) -> bool:
        return await self._client(location).exists(location, path)

    async def delete(self, location: str, path: str) -> None:
        await self._client(location).delete(location, path)

    async def stat(self, location: str, path: str) -> ObjectMeta | None:
        return await self._client(location).stat(location, path)

    def supports_move(self, location: str) -> bool:
        return self._client(location).supports_move(location)

    async def move(self, location: str, path: str, new_path: str) -> None:
        await self._client(location).move(location, path, new_path)


def create_storage_client(locations: dict[str, LocationConfig]) -> StorageLocationClient:
    """One client for all configured locations.

    Local locations share a LocalStorageClient; memory locations share an
    InMemoryStorageClient.
    """
    if not locations:
        raise ConfigurationError("No storage locations configured")

    local_roots = {}
    memory = InMemoryStorageClient()
    routes: dict[str, StorageLocationClient] = {}
    for name, location in locations.items():
        if location.backend == "local":
            if not location.root:
                raise ConfigurationError(f"local location '{name}' requires a root directory")
            local_roots[name] = location.root
        else:
            memory.add_location(name, supports_move=location.supports_move)
            routes[name] = memory

    if local_roots:
        local = LocalStorageClient(local_roots)
        for name in local_roots:
            routes[name] = local
    return RoutingStorageClient(routes)
