"""Shared pytest fixtures for storage migrator tests."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from storage_migrator.core.changelog import ChangeLogManager
from storage_migrator.core.checkpoint import CheckpointManager
from storage_migrator.core.config_loader import MigrationConfig, config_from_dict
from storage_migrator.core.error_recovery import ErrorRecoveryManager
from storage_migrator.core.runs import RunRegistry
from storage_migrator.core.state_store import StateStore
from storage_migrator.models.records import Record
from storage_migrator.repository.memory import InMemoryMetadataRepository
from storage_migrator.services.orchestrator import MigrationOrchestrator
from storage_migrator.services.phases import PhaseContext
from storage_migrator.storage.memory import InMemoryStorageClient
from storage_migrator.storage.strategy import TransferStrategyResolver

LOCATIONS = ["legacy", "archive", "primary", "quarantine"]
BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)


async def no_sleep(_delay: float) -> None:
    return None


def at(minutes: int) -> datetime:
    """Deterministic timestamp ``minutes`` after BASE_TIME."""
    return BASE_TIME + timedelta(minutes=minutes)


def make_record(
    record_id: str,
    location: str,
    path: str,
    filename: str | None = None,
    modified: int = 0,
    **kwargs: Any,
) -> Record:
    return Record(
        id=record_id,
        filename=filename or path.rsplit("/", 1)[-1],
        location=location,
        path=path,
        modified_at=at(modified),
        **kwargs,
    )


def base_config_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "scope": "test-scope",
        "source_locations": ["legacy", "archive"],
        "target_location": "primary",
        "target_prefix": "media",
        "quarantine_location": "quarantine",
        "batch_size": 10,
        "max_workers": 2,
        "checkpoint_every_batches": 1,
        "changelog_flush_every": 5,
        "max_retries": 1,
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
        "locations": {name: {"backend": "memory"} for name in LOCATIONS},
        "metadata": {"backend": "memory"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def config() -> MigrationConfig:
    """Valid run configuration over the four in-memory locations."""
    return config_from_dict(base_config_data())


@pytest.fixture
def storage() -> InMemoryStorageClient:
    return InMemoryStorageClient(locations=LOCATIONS)


@pytest.fixture
def repository() -> InMemoryMetadataRepository:
    return InMemoryMetadataRepository()


@pytest.fixture
async def store(tmp_path: Path) -> StateStore:
    """Initialized state database in a temporary directory."""
    state_store = StateStore(tmp_path / "state")
    await state_store.initialize()
    return state_store


@pytest.fixture
def error_recovery() -> ErrorRecoveryManager:
    return ErrorRecoveryManager(max_retries=2, base_delay=0.0, max_delay=0.0, sleep=no_sleep)


@pytest.fixture
async def context(
    store: StateStore,
    storage: InMemoryStorageClient,
    repository: InMemoryMetadataRepository,
    config: MigrationConfig,
    error_recovery: ErrorRecoveryManager,
) -> AsyncGenerator[PhaseContext, None]:
    """Phase context for a registered run named ``test-run``."""
    registry = RunRegistry(store)
    await registry.create(config.scope, config.to_storable(), run_id="test-run")
    changelog = ChangeLogManager(store, "test-run", config.changelog_flush_every)
    await changelog.initialize()
    yield PhaseContext(
        run_id="test-run",
        config=config,
        storage=storage,
        repository=repository,
        changelog=changelog,
        checkpoints=CheckpointManager(store),
        error_recovery=error_recovery,
        resolver=TransferStrategyResolver(storage),
        registry=registry,
    )
    await changelog.flush()


@pytest.fixture
def orchestrator(
    store: StateStore,
    storage: InMemoryStorageClient,
    repository: InMemoryMetadataRepository,
    tmp_path: Path,
) -> MigrationOrchestrator:
    return MigrationOrchestrator(store, storage, repository, reports_dir=tmp_path / "reports", sleep=no_sleep)


def seed_scenario(storage: InMemoryStorageClient, repository: InMemoryMetadataRepository) -> None:
    """One broken record, one misplaced record and one record sharing an original.

    r1 repairs onto the archive original that r3 already uses, so duplicate
    resolution keeps the newer r3; r2 and r3 are then consolidated.
    """
    storage.put("legacy", "path-b/photo.jpg", b"b" * 2048, modified_at=at(1))
    storage.put("archive", "originals/path-c/photo.jpg", b"c" * 2048, modified_at=at(2))
    repository.add(make_record("r1", "legacy", "path-a/photo.jpg", modified=0))
    repository.add(make_record("r2", "legacy", "path-b/photo.jpg", modified=1, size=2048))
    repository.add(make_record("r3", "archive", "originals/path-c/photo.jpg", modified=2, size=2048))
