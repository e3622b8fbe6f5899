"""Move strategy negotiation between storage locations."""

from abc import ABC, abstractmethod

import structlog

from ..core.exceptions import DataIntegrityError
from ..models.records import ObjectKey
from .base import StorageLocationClient

logger = structlog.get_logger()


class TransferStrategy(ABC):
    """How one object gets from a source key to a target key."""

    name = "base"

    def __init__(self, client: StorageLocationClient):
        self.client = client
        self.logger = logger.bind(component=self.__class__.__name__.lower())

    @abstractmethod
    async def transfer(self, source: ObjectKey, target: ObjectKey, keep_source: bool = False) -> None:
        """Place the bytes of ``source`` at ``target``.

        Args:
            source: Existing object
            target: Destination, which must not exist yet
            keep_source: Copy only; the source stays in place
        """

    async def _copy(self, source: ObjectKey, target: ObjectKey) -> None:
        if await self.client.exists(target.location, target.path):
            raise FileExistsError(f"Destination already exists: {target}")
        data = await self.client.read(source.location, source.path)
        await self.client.write(target.location, target.path, data)
        written = await self.client.stat(target.location, target.path)
        if written is None or written.size != len(data):
            raise DataIntegrityError(
                f"Copy of {source} to {target} did not verify "
                f"(expected {len(data)} bytes, found {written.size if written else 'nothing'})"
            )


class RenameTransfer(TransferStrategy):
    """Same-location native rename."""

    name = "rename"

    async def transfer(self, source: ObjectKey, target: ObjectKey, keep_source: bool = False) -> None:
        if keep_source:
            await self._copy(source, target)
            return
        await self.client.move(source.location, source.path, target.path)


class CopyThenDeleteTransfer(TransferStrategy):
    """Copy, verify the written size, then remove the source."""

    name = "copy_then_delete"

    async def transfer(self, source: ObjectKey, target: ObjectKey, keep_source: bool = False) -> None:
        await self._copy(source, target)
        if not keep_source:
            await self.client.delete(source.location, source.path)


class TransferStrategyResolver:
    """Picks the strategy for each (source location, target location) pair once."""

    def __init__(self, client: StorageLocationClient):
        self.client = client
        self._strategies: dict[tuple[str, str], TransferStrategy] = {}
        self.logger = logger.bind(component="transfer_strategy")

    def resolve(self, source_location: str, target_location: str) -> TransferStrategy:
        pair = (source_location, target_location)
        strategy = self._strategies.get(pair)
        if strategy is None:
            if source_location == target_location and self.client.supports_move(source_location):
                strategy = RenameTransfer(self.client)
            else:
                strategy = CopyThenDeleteTransfer(self.client)
            self._strategies[pair] = strategy
            self.logger.info(
                "Transfer strategy selected",
                source_location=source_location,
                target_location=target_location,
                strategy=strategy.name,
            )
        return strategy

    async def transfer(self, source: ObjectKey, target: ObjectKey, keep_source: bool = False) -> str:
        """Transfer with the negotiated strategy; returns the strategy name."""
        strategy = self.resolve(source.location, target.location)
        await strategy.transfer(source, target, keep_source=keep_source)
        return strategy.name
