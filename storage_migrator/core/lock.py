"""Single-writer run lock, one active run per scope."""

import asyncio
import os
import socket
import time
import uuid
from datetime import UTC, datetime

import aiosqlite
import structlog

from ..models.state import RunLock
from .exceptions import LockContentionError, LockNotHeldError
from .state_store import StateStore

logger = structlog.get_logger()

LOCK_POLL_INTERVAL = 0.5


def make_holder_token() -> str:
    """``hostname:pid:uuid`` identifying this process instance."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _row_to_lock(row: aiosqlite.Row) -> RunLock:
    return RunLock(
        scope=row["scope"],
        run_id=row["run_id"],
        holder=row["holder"],
        acquired_at=datetime.fromtimestamp(row["acquired_at"], UTC),
        expires_at=datetime.fromtimestamp(row["expires_at"], UTC),
    )


class MigrationLock:
    """Mutual exclusion for migration runs sharing a scope.

    Acquisition fails against any live lock taken by another holder, even one
    for the same run id; a resumed run gets its lock back once the previous
    invocation released it or its lease expired. Checkpoint writes call
    ``refresh`` to push the expiry out.
    """

    def __init__(
        self,
        store: StateStore,
        ttl_seconds: int,
        holder: str | None = None,
        poll_interval: float = LOCK_POLL_INTERVAL,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.holder = holder or make_holder_token()
        self.poll_interval = poll_interval
        self.scope: str | None = None
        self.run_id: str | None = None
        self.logger = logger.bind(component="lock", holder=self.holder)

    @property
    def is_held(self) -> bool:
        return self.scope is not None

    async def acquire(self, scope: str, run_id: str, timeout: float = 0.0) -> RunLock:
        """Take the lock for ``scope``, polling up to ``timeout`` seconds.

        Raises:
            LockContentionError: Another run holds a live lock when the timeout expires
        """
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            current = await self._try_acquire(scope, run_id)
            if current is None:
                self.scope = scope
                self.run_id = run_id
                lock = await self.get(scope)
                self.logger.info(
                    "Migration lock acquired",
                    scope=scope,
                    run_id=run_id,
                    expires_at=lock.expires_at.isoformat() if lock else None,
                )
                return lock

            if time.monotonic() >= deadline:
                self.logger.warning(
                    "Migration lock contention",
                    scope=scope,
                    run_id=run_id,
                    holder_run_id=current.run_id,
                    holder=current.holder,
                )
                raise LockContentionError(scope, current.run_id, current.expires_at.isoformat())
            await asyncio.sleep(min(self.poll_interval, max(0.0, deadline - time.monotonic())))

    async def _try_acquire(self, scope: str, run_id: str) -> RunLock | None:
        """Returns None on success, else the blocking lock."""
        now = time.time()
        async with self.store.transaction() as db:
            cursor = await db.execute("SELECT * FROM locks WHERE scope = ?", (scope,))
            row = await cursor.fetchone()
            if row is not None:
                existing = _row_to_lock(row)
                if existing.holder != self.holder and not existing.is_expired:
                    return existing
                if existing.holder != self.holder:
                    self.logger.warning(
                        "Reclaiming expired migration lock",
                        scope=scope,
                        previous_run_id=existing.run_id,
                        previous_holder=existing.holder,
                    )
            await db.execute(
                "INSERT OR REPLACE INTO locks (scope, run_id, holder, acquired_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (scope, run_id, self.holder, now, now + self.ttl_seconds),
            )
        return None

    async def refresh(self, db: aiosqlite.Connection | None = None) -> None:
        """Extend the expiry of the held lock.

        ``db`` lets a caller renew inside its own open transaction.

        Raises:
            LockNotHeldError: The lock was cleared or taken over by another run
        """
        if not self.is_held:
            raise LockNotHeldError("Cannot refresh a lock that was never acquired")
        if db is not None:
            await self._renew(db)
            return
        async with self.store.transaction() as own_db:
            await self._renew(own_db)

    async def _renew(self, db: aiosqlite.Connection) -> None:
        cursor = await db.execute(
            "UPDATE locks SET expires_at = ? WHERE scope = ? AND run_id = ? AND holder = ?",
            (time.time() + self.ttl_seconds, self.scope, self.run_id, self.holder),
        )
        if cursor.rowcount == 0:
            raise LockNotHeldError(
                f"Migration lock for scope '{self.scope}' is no longer held by run '{self.run_id}' ({self.holder})"
            )

    async def release(self) -> bool:
        """Drop the held lock; returns False when nothing was held."""
        if not self.is_held:
            return False
        async with self.store.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM locks WHERE scope = ? AND run_id = ? AND holder = ?",
                (self.scope, self.run_id, self.holder),
            )
            released = cursor.rowcount > 0
        self.logger.info("Migration lock released", scope=self.scope, run_id=self.run_id)
        self.scope = None
        self.run_id = None
        return released

    async def get(self, scope: str) -> RunLock | None:
        async with self.store.connect() as db:
            cursor = await db.execute("SELECT * FROM locks WHERE scope = ?", (scope,))
            row = await cursor.fetchone()
        return _row_to_lock(row) if row else None

    async def force_clear(self, scope: str) -> bool:
        """Remove any lock on ``scope`` regardless of holder (operator override)."""
        async with self.store.transaction() as db:
            cursor = await db.execute("DELETE FROM locks WHERE scope = ?", (scope,))
            cleared = cursor.rowcount > 0
        self.logger.warning("Migration lock force-cleared", scope=scope, cleared=cleared)
        return cleared
