"""Run registry: status, scope and stored configuration per run."""

import json
import uuid
from datetime import datetime
from typing import Any

import aiosqlite
import structlog

from ..models.enums import RunStatus
from ..models.records import utcnow
from ..models.results import DuplicateGroup
from ..models.state import RunInfo
from .exceptions import RunNotFoundError
from .state_store import StateStore

logger = structlog.get_logger()


def new_run_id() -> str:
    """Sortable run identifier: UTC timestamp plus a short random suffix."""
    return f"{utcnow().strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:8]}"


def _row_to_run(row: aiosqlite.Row) -> RunInfo:
    return RunInfo(
        run_id=row["run_id"],
        scope=row["scope"],
        status=RunStatus(row["status"]),
        config=json.loads(row["config"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        last_error=row["last_error"],
    )


class RunRegistry:
    """Persists one row per run so any later process can resume or inspect it.

    Also holds the per-run duplicate-group staging state.
    """

    def __init__(self, store: StateStore):
        self.store = store
        self.logger = logger.bind(component="run_registry")

    async def create(self, scope: str, config: dict[str, Any], run_id: str | None = None) -> RunInfo:
        run = RunInfo(run_id=run_id or new_run_id(), scope=scope, config=config)
        async with self.store.transaction() as db:
            await db.execute(
                "INSERT INTO runs (run_id, scope, status, config, created_at, updated_at, last_error) "
                "VALUES (?, ?, ?, ?, ?, ?, NULL)",
                (
                    run.run_id,
                    run.scope,
                    run.status.value,
                    json.dumps(config),
                    run.created_at.isoformat(),
                    run.updated_at.isoformat(),
                ),
            )
        self.logger.info("Run registered", run_id=run.run_id, scope=scope)
        return run

    async def get(self, run_id: str) -> RunInfo:
        async with self.store.connect() as db:
            cursor = await db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,))
            row = await cursor.fetchone()
        if row is None:
            raise RunNotFoundError(f"Run '{run_id}' not found in {self.store.db_path}")
        return _row_to_run(row)

    async def list_runs(self, scope: str | None = None) -> list[RunInfo]:
        query = "SELECT * FROM runs"
        params: tuple[str, ...] = ()
        if scope is not None:
            query += " WHERE scope = ?"
            params = (scope,)
        query += " ORDER BY created_at DESC"
        async with self.store.connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [_row_to_run(row) for row in rows]

    async def set_status(self, run_id: str, status: RunStatus, last_error: str | None = None) -> None:
        async with self.store.transaction() as db:
            cursor = await db.execute(
                "UPDATE runs SET status = ?, updated_at = ?, last_error = ? WHERE run_id = ?",
                (status.value, utcnow().isoformat(), last_error, run_id),
            )
            if cursor.rowcount == 0:
                raise RunNotFoundError(f"Run '{run_id}' not found in {self.store.db_path}")
        self.logger.info("Run status updated", run_id=run_id, status=status.value, last_error=last_error)

    # Duplicate-group staging state

    async def save_duplicate_group(self, run_id: str, group: DuplicateGroup) -> None:
        async with self.store.transaction() as db:
            await db.execute(
                "INSERT OR REPLACE INTO duplicate_groups (run_id, group_key, status, data, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (run_id, group.group_key, group.status.value, group.model_dump_json(), utcnow().isoformat()),
            )

    async def load_duplicate_groups(self, run_id: str) -> dict[str, DuplicateGroup]:
        async with self.store.connect() as db:
            cursor = await db.execute(
                "SELECT group_key, data FROM duplicate_groups WHERE run_id = ?", (run_id,)
            )
            rows = await cursor.fetchall()
        return {row["group_key"]: DuplicateGroup.model_validate_json(row["data"]) for row in rows}
