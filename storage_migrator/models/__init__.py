"""Data models for storage migration."""

from .enums import (  # noqa: F401
    PHASE_TRANSITIONS,
    PIPELINE_ORDER,
    REVERSIBLE_OPERATIONS,
    ChangeOperation,
    DuplicateGroupStatus,
    ExitCode,
    MatchStrategy,
    ObjectClassification,
    Phase,
    RecordClassification,
    RollbackMethod,
    RunStatus,
)
from .records import ObjectKey, ObjectMeta, Record  # noqa: F401
from .results import (  # noqa: F401
    DuplicateGroup,
    MigrationOutcome,
    PhaseFailure,
    PhaseOutcome,
    RepairMatch,
    RollbackResult,
    RunStatusReport,
    UnresolvedRecord,
    VerificationReport,
)
from .state import ChangeLogEntry, Checkpoint, RunInfo, RunLock, TransferIntent  # noqa: F401

__all__ = [
    # Enums
    "PHASE_TRANSITIONS",
    "PIPELINE_ORDER",
    "REVERSIBLE_OPERATIONS",
    "ChangeOperation",
    "DuplicateGroupStatus",
    "ExitCode",
    "MatchStrategy",
    "ObjectClassification",
    "Phase",
    "RecordClassification",
    "RollbackMethod",
    "RunStatus",
    # Records
    "ObjectKey",
    "ObjectMeta",
    "Record",
    # Persisted state
    "ChangeLogEntry",
    "Checkpoint",
    "RunInfo",
    "RunLock",
    "TransferIntent",
    # Results
    "DuplicateGroup",
    "MigrationOutcome",
    "PhaseFailure",
    "PhaseOutcome",
    "RepairMatch",
    "RollbackResult",
    "RunStatusReport",
    "UnresolvedRecord",
    "VerificationReport",
]
