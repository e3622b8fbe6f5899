"""Enum definitions for storage migration runs."""

from enum import Enum, IntEnum
from typing import Literal

# Type aliases
RollbackMode = Literal["from", "only"]


class Phase(str, Enum):
    """Pipeline phases, in execution order (see ``PHASE_TRANSITIONS``)."""

    INVENTORY = "inventory"
    LINK_REPAIR = "link_repair"
    DUPLICATE_RESOLUTION = "duplicate_resolution"
    CONSOLIDATION = "consolidation"
    QUARANTINE = "quarantine"
    VERIFICATION = "verification"
    COMPLETE = "complete"
    # Not part of the pipeline; tags change-log entries written by rollback
    ROLLBACK = "rollback"


PHASE_TRANSITIONS: dict[Phase, Phase] = {
    Phase.INVENTORY: Phase.LINK_REPAIR,
    Phase.LINK_REPAIR: Phase.DUPLICATE_RESOLUTION,
    Phase.DUPLICATE_RESOLUTION: Phase.CONSOLIDATION,
    Phase.CONSOLIDATION: Phase.QUARANTINE,
    Phase.QUARANTINE: Phase.VERIFICATION,
    Phase.VERIFICATION: Phase.COMPLETE,
}

PIPELINE_ORDER: list[Phase] = [
    Phase.INVENTORY,
    Phase.LINK_REPAIR,
    Phase.DUPLICATE_RESOLUTION,
    Phase.CONSOLIDATION,
    Phase.QUARANTINE,
    Phase.VERIFICATION,
    Phase.COMPLETE,
]


class ChangeOperation(str, Enum):
    """Operation tags recorded in the change log."""

    OBJECT_MOVED = "object-moved"
    RECORD_PATH_UPDATED = "record-path-updated"
    RECORD_QUARANTINED = "record-quarantined"
    OBJECT_QUARANTINED = "object-quarantined"
    DUPLICATE_RECORD_REMOVED = "duplicate-record-removed"
    RECORD_LINKED = "record-linked"
    # Audit only; carries no reversible state
    LINK_NOT_REPAIRED = "link-not-repaired"


REVERSIBLE_OPERATIONS = frozenset(
    {
        ChangeOperation.OBJECT_MOVED,
        ChangeOperation.RECORD_PATH_UPDATED,
        ChangeOperation.RECORD_QUARANTINED,
        ChangeOperation.OBJECT_QUARANTINED,
        ChangeOperation.DUPLICATE_RECORD_REMOVED,
        ChangeOperation.RECORD_LINKED,
    }
)


class RecordClassification(str, Enum):
    LINKED_CORRECT = "linked-correct"
    LINKED_WRONG_LOCATION = "linked-wrong-location"
    BROKEN = "broken"


class ObjectClassification(str, Enum):
    REFERENCED = "referenced"
    ORPHANED = "orphaned"


class MatchStrategy(str, Enum):
    """How a broken record was matched to a candidate object."""

    EXACT = "exact"
    CASE_INSENSITIVE = "case_insensitive"
    NORMALIZED = "normalized"
    STEM = "stem"
    FUZZY = "fuzzy"
    NONE = "none"


class RollbackMethod(str, Enum):
    CHANGELOG = "changelog"
    SNAPSHOT = "snapshot"


class RunStatus(str, Enum):
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    COMPLETED = "completed"
    COMPLETED_WITH_ISSUES = "completed_with_issues"
    ROLLED_BACK = "rolled_back"


class DuplicateGroupStatus(str, Enum):
    PENDING = "pending"
    STAGED = "staged"
    RESOLVED = "resolved"
    FAILED = "failed"


class ExitCode(IntEnum):
    """Process exit codes for the command line."""

    SUCCESS = 0
    USAGE_ERROR = 1
    CONFIGURATION_ERROR = 2
    LOCK_CONTENTION = 3
    REPEATED_ERROR = 4
    PARTIAL_COMPLETION = 5
