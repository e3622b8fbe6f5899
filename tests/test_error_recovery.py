"""Tests for retry, circuit breaking and the aggregate error threshold."""

from unittest.mock import AsyncMock

import pytest

from storage_migrator.core.error_recovery import ErrorRecoveryManager
from storage_migrator.core.exceptions import (
    CircuitBreakerError,
    DataIntegrityError,
    ErrorThresholdExceeded,
    MigrationInterrupted,
    TransientStorageError,
)
from storage_migrator.models.enums import Phase
from storage_migrator.models.results import PhaseFailure

from conftest import no_sleep


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def manager(sleeps) -> ErrorRecoveryManager:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return ErrorRecoveryManager(
        max_retries=3, base_delay=1.0, max_delay=3.0, max_repeated_errors=10, sleep=record_sleep
    )


class TestRetry:
    async def test_success_after_transient_failures(self, manager, sleeps):
        operation = AsyncMock(side_effect=[TransientStorageError("busy"), TransientStorageError("busy"), "ok"])

        result = await manager.execute_with_retry(operation, signature="storage.read")

        assert result == "ok"
        assert operation.await_count == 3
        assert sleeps == [1.0, 2.0]
        assert manager.retries == 2

    async def test_backoff_is_capped(self, manager, sleeps):
        operation = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(ConnectionError):
            await manager.execute_with_retry(operation, signature="storage.read")

        assert operation.await_count == 4
        assert sleeps == [1.0, 2.0, 3.0]

    @pytest.mark.parametrize(
        "error",
        [
            FileNotFoundError("gone"),
            PermissionError("nope"),
            DataIntegrityError("hash mismatch"),
            ValueError("bad input"),
            OSError("Object does not exist: legacy:a.jpg"),
        ],
    )
    async def test_non_retryable_errors_fail_immediately(self, manager, sleeps, error):
        operation = AsyncMock(side_effect=error)

        with pytest.raises(type(error)):
            await manager.execute_with_retry(operation, signature="storage.read")

        assert operation.await_count == 1
        assert sleeps == []

    async def test_max_retries_override(self, manager):
        operation = AsyncMock(side_effect=TransientStorageError("busy"))

        with pytest.raises(TransientStorageError):
            await manager.execute_with_retry(operation, signature="storage.read", max_retries=0)

        assert operation.await_count == 1

    async def test_passthrough_errors_are_not_counted(self, manager):
        operation = AsyncMock(side_effect=MigrationInterrupted("stop"))

        with pytest.raises(MigrationInterrupted):
            await manager.execute_with_retry(operation, signature="phase")

        assert manager.get_error_statistics()["total_errors"] == 0

    def test_backoff_delay(self, manager):
        assert [manager.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]


class TestCircuitBreaker:
    def test_eleventh_occurrence_trips_threshold_ten(self):
        manager = ErrorRecoveryManager(max_repeated_errors=10, sleep=no_sleep)

        for i in range(10):
            manager.record_error(OSError(f"disk error on item {i}"), "consolidation.transfer")

        with pytest.raises(CircuitBreakerError) as exc_info:
            manager.record_error(OSError("disk error on item 10"), "consolidation.transfer")

        assert exc_info.value.occurrences == 11
        assert exc_info.value.threshold == 10

    def test_distinct_signatures_count_separately(self):
        manager = ErrorRecoveryManager(max_repeated_errors=2, sleep=no_sleep)

        for _ in range(2):
            manager.record_error(OSError("read failed"), "storage.read")
            manager.record_error(OSError("write failed"), "storage.write")

        assert manager.get_error_statistics()["unique_signatures"] == 2

    async def test_retries_feed_the_breaker(self):
        manager = ErrorRecoveryManager(max_retries=20, base_delay=0, max_repeated_errors=3, sleep=no_sleep)
        operation = AsyncMock(side_effect=TransientStorageError("backend unavailable"))

        with pytest.raises(CircuitBreakerError):
            await manager.execute_with_retry(operation, signature="storage.list")

        assert operation.await_count == 4


class TestErrorThreshold:
    def test_threshold_reached(self):
        manager = ErrorRecoveryManager(error_threshold=3, sleep=no_sleep)
        failure = PhaseFailure(phase=Phase.CONSOLIDATION, item_id="r1", error_class="OSError", message="x")

        manager.record_failure(failure)
        manager.record_failure(failure)
        with pytest.raises(ErrorThresholdExceeded):
            manager.record_failure(failure)

    def test_statistics_and_reset(self):
        manager = ErrorRecoveryManager(sleep=no_sleep)
        manager.record_error(OSError("timeout after 30s"), "storage.read")
        manager.record_error(OSError("timeout after 31s"), "storage.read")

        stats = manager.get_error_statistics()
        assert stats["total_errors"] == 2
        assert stats["top_errors"][0]["count"] == 2
        assert stats["top_errors"][0]["error_type"] == "OSError"

        manager.reset()
        assert manager.get_error_statistics()["total_errors"] == 0
