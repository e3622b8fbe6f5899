"""Core exceptions for storage migration runs."""


class StorageMigratorError(Exception):
    """Base exception for storage migration operations."""


class ConfigurationError(StorageMigratorError):
    """Configuration validation or loading failed."""


class LockContentionError(StorageMigratorError):
    """Another run holds a live lock for the same scope."""

    def __init__(self, scope: str, holder_run_id: str | None = None, expires_at: str | None = None):
        self.scope = scope
        self.holder_run_id = holder_run_id
        self.expires_at = expires_at
        detail = f" (held by run '{holder_run_id}' until {expires_at})" if holder_run_id else ""
        super().__init__(f"Migration lock for scope '{scope}' is not available{detail}")


class LockNotHeldError(StorageMigratorError):
    """Operation requires a lock that this process does not hold."""


class CheckpointError(StorageMigratorError):
    """Checkpoint could not be persisted or loaded."""


class DataIntegrityError(StorageMigratorError):
    """Staged content did not verify, or a record could not be resolved."""


class TransientStorageError(StorageMigratorError):
    """Storage operation failed in a way that is worth retrying."""


class CircuitBreakerError(StorageMigratorError):
    """One error signature recurred past the configured threshold."""

    def __init__(self, signature: str, occurrences: int, threshold: int, last_error: BaseException):
        self.signature = signature
        self.occurrences = occurrences
        self.threshold = threshold
        self.last_error = last_error
        super().__init__(
            f"Error signature '{signature}' occurred {occurrences} times "
            f"(threshold {threshold}): {last_error}"
        )


class ErrorThresholdExceeded(StorageMigratorError):
    """Cumulative item failures reached the configured error threshold."""

    def __init__(self, total_errors: int, threshold: int):
        self.total_errors = total_errors
        self.threshold = threshold
        super().__init__(
            f"Error threshold exceeded ({total_errors} failed items, threshold {threshold}). "
            "Review the errors and resume the run."
        )


class MigrationInterrupted(StorageMigratorError):
    """Run stopped on a cancellation request; state is resumable."""


class RollbackError(StorageMigratorError):
    """Rollback could not be started or completed."""


class RunNotFoundError(StorageMigratorError):
    """No run with the given identifier exists in the state store."""
