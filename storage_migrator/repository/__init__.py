"""Metadata repository implementations."""

from .base import MetadataRepository  # noqa: F401
from .memory import InMemoryMetadataRepository  # noqa: F401
from .sqlite import SqliteMetadataRepository  # noqa: F401

__all__ = ["MetadataRepository", "InMemoryMetadataRepository", "SqliteMetadataRepository"]
