"""Storage location clients and transfer strategies."""

from .base import StorageLocationClient  # noqa: F401
from .factory import RoutingStorageClient, create_storage_client  # noqa: F401
from .local import LocalStorageClient  # noqa: F401
from .memory import InMemoryStorageClient  # noqa: F401
from .strategy import (  # noqa: F401
    CopyThenDeleteTransfer,
    RenameTransfer,
    TransferStrategy,
    TransferStrategyResolver,
)

__all__ = [
    "StorageLocationClient",
    "LocalStorageClient",
    "InMemoryStorageClient",
    "RoutingStorageClient",
    "create_storage_client",
    "TransferStrategy",
    "RenameTransfer",
    "CopyThenDeleteTransfer",
    "TransferStrategyResolver",
]
