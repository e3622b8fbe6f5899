"""Retry with exponential backoff plus repeated-error circuit breaking."""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from ..constants import NON_RETRYABLE_PATTERNS
from ..models.records import utcnow
from ..models.results import PhaseFailure
from ..utils import error_signature
from .exceptions import (
    CircuitBreakerError,
    DataIntegrityError,
    ErrorThresholdExceeded,
    MigrationInterrupted,
    TransientStorageError,
)

logger = structlog.get_logger()

T = TypeVar("T")

NON_RETRYABLE_TYPES: tuple[type[BaseException], ...] = (
    FileNotFoundError,
    FileExistsError,
    PermissionError,
    IsADirectoryError,
    NotADirectoryError,
    DataIntegrityError,
    ValueError,
    KeyError,
)

# Never counted or retried; they stop the current phase immediately
PASSTHROUGH_TYPES: tuple[type[BaseException], ...] = (
    CircuitBreakerError,
    ErrorThresholdExceeded,
    MigrationInterrupted,
)


class ErrorRecoveryManager:
    """Retries storage operations and halts runs that keep failing the same way.

    Every caught exception increments a counter keyed by its signature; once
    one signature recurs more than ``max_repeated_errors`` times a
    ``CircuitBreakerError`` is raised. Separately, items that are skipped
    after failing are counted through ``record_failure`` against
    ``error_threshold``.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_repeated_errors: int = 10,
        error_threshold: int = 50,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_repeated_errors = max_repeated_errors
        self.error_threshold = error_threshold
        self._sleep = sleep

        self.error_counts: dict[str, int] = defaultdict(int)
        self.error_details: dict[str, dict[str, Any]] = {}
        self.failures: list[PhaseFailure] = []
        self.retries = 0
        self.logger = logger.bind(component="error_recovery")

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        signature: str,
        max_retries: int | None = None,
    ) -> T:
        """Run ``operation``, retrying retryable failures with backoff.

        Args:
            operation: Zero-argument coroutine factory
            signature: Operation name, combined with the error to form the counter key
            max_retries: Override for the configured retry count

        Raises:
            CircuitBreakerError: The error signature recurred past the threshold
            Exception: The last error once retries are exhausted or it is not retryable
        """
        retries = self.max_retries if max_retries is None else max_retries
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except PASSTHROUGH_TYPES:
                raise
            except Exception as e:
                self.record_error(e, signature)
                if not self.is_retryable(e) or attempt > retries:
                    raise
                delay = self.backoff_delay(attempt)
                self.retries += 1
                self.logger.warning(
                    "Retrying failed operation",
                    operation=signature,
                    attempt=attempt,
                    max_retries=retries,
                    delay=delay,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self._sleep(delay)

    def backoff_delay(self, attempt: int) -> float:
        """``base_delay * 2^(attempt-1)``, capped at ``max_delay``."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, TransientStorageError):
            return True
        if isinstance(error, NON_RETRYABLE_TYPES):
            return False
        message = str(error).lower()
        return not any(pattern in message for pattern in NON_RETRYABLE_PATTERNS)

    def record_error(self, error: BaseException, operation: str = "") -> int:
        """Count one occurrence of the error's signature.

        Raises:
            CircuitBreakerError: When the count exceeds ``max_repeated_errors``
        """
        signature = error_signature(error, operation)
        self.error_counts[signature] += 1
        count = self.error_counts[signature]

        now = utcnow().isoformat()
        details = self.error_details.setdefault(
            signature,
            {"error_type": type(error).__name__, "operation": operation, "first_seen": now},
        )
        details["last_seen"] = now
        details["last_message"] = str(error)[:500]

        if count > self.max_repeated_errors:
            self.logger.error(
                "Circuit breaker tripped",
                signature=signature,
                occurrences=count,
                threshold=self.max_repeated_errors,
            )
            raise CircuitBreakerError(signature, count, self.max_repeated_errors, error)
        return count

    def record_failure(self, failure: PhaseFailure) -> None:
        """Count a skipped item.

        Raises:
            ErrorThresholdExceeded: Once the total reaches ``error_threshold``
        """
        self.failures.append(failure)
        self.logger.warning(
            "Item failed",
            phase=failure.phase.value,
            item_id=failure.item_id,
            error_class=failure.error_class,
            error=failure.message,
            total_failures=len(self.failures),
        )
        if len(self.failures) >= self.error_threshold:
            raise ErrorThresholdExceeded(len(self.failures), self.error_threshold)

    def get_error_statistics(self) -> dict[str, Any]:
        """Error statistics for the final report."""
        top_errors = sorted(self.error_counts.items(), key=lambda x: x[1], reverse=True)[:10]
        return {
            "total_errors": sum(self.error_counts.values()),
            "unique_signatures": len(self.error_counts),
            "retries": self.retries,
            "failed_items": len(self.failures),
            "top_errors": [
                {"signature": signature, "count": count, **self.error_details.get(signature, {})}
                for signature, count in top_errors
            ],
        }

    def reset(self) -> None:
        self.error_counts.clear()
        self.error_details.clear()
        self.failures.clear()
        self.retries = 0
