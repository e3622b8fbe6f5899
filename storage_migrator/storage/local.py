"""Storage client over local directories, one root directory per location."""

import asyncio
import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path

from ..models.records import ObjectMeta
from ..utils import clean_path
from .base import StorageLocationClient


class LocalStorageClient(StorageLocationClient):
    """Objects are files below each location's root directory."""

    def __init__(self, roots: dict[str, Path | str]):
        super().__init__()
        self.roots = {name: Path(root) for name, root in roots.items()}

    def _root(self, location: str) -> Path:
        try:
            return self.roots[location]
        except KeyError:
            raise FileNotFoundError(f"Location '{location}' is not configured") from None

    def _resolve(self, location: str, path: str) -> Path:
        relative = clean_path(path)
        if not relative:
            raise ValueError(f"Empty object path for location '{location}'")
        return self._root(location) / relative

    def _scan(self, location: str, root: Path, prefix: str) -> list[ObjectMeta]:
        start = root / prefix if prefix else root
        if not start.is_dir():
            return []
        found = []
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames.sort()
            for filename in sorted(filenames):
                if filename.endswith(".partial") and filename.startswith("."):
                    continue  # interrupted write
                full = Path(dirpath) / filename
                st = full.stat()
                found.append(
                    ObjectMeta(
                        location=location,
                        path=full.relative_to(root).as_posix(),
                        size=st.st_size,
                        modified_at=datetime.fromtimestamp(st.st_mtime, UTC),
                    )
                )
        return found

    async def list(self, location: str, prefix: str = "") -> AsyncIterator[ObjectMeta]:
        root = self._root(location)
        if not root.is_dir():
            raise FileNotFoundError(f"Root directory of location '{location}' does not exist: {root}")
        objects = await asyncio.to_thread(self._scan, location, root, clean_path(prefix))
        for meta in objects:
            yield meta

    async def read(self, location: str, path: str) -> bytes:
        return await asyncio.to_thread(self._resolve(location, path).read_bytes)

    async def write(self, location: str, path: str, data: bytes) -> None:
        target = self._resolve(location, path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.partial")
            tmp.write_bytes(data)
            os.replace(tmp, target)

        await asyncio.to_thread(_write)

    async def exists(self, location: str, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(location, path).is_file)

    async def delete(self, location: str, path: str) -> None:
        await asyncio.to_thread(self._resolve(location, path).unlink, missing_ok=True)

    async def stat(self, location: str, path: str) -> ObjectMeta | None:
        target = self._resolve(location, path)
        try:
            st = await asyncio.to_thread(target.stat)
        except FileNotFoundError:
            return None
        return ObjectMeta(
            location=location,
            path=clean_path(path),
            size=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime, UTC),
        )

    def supports_move(self, location: str) -> bool:
        return location in self.roots

    async def _native_move(self, location: str, path: str, new_path: str) -> None:
        source = self._resolve(location, path)
        target = self._resolve(location, new_path)

        def _rename() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            source.rename(target)

        await asyncio.to_thread(_rename)
