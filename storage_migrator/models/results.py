"""Result models returned by services and the orchestrator."""

from typing import Any

from pydantic import BaseModel, Field

from .enums import DuplicateGroupStatus, MatchStrategy, Phase, RollbackMethod, RunStatus
from .records import ObjectMeta
from .state import ChangeLogEntry, Checkpoint


class PhaseFailure(BaseModel):
    """A user-visible item failure: always names phase, item and error class."""

    phase: Phase
    item_id: str
    error_class: str
    message: str

    def describe(self) -> str:
        return f"[{self.phase.value}] {self.item_id}: {self.error_class}: {self.message}"


class RepairMatch(BaseModel):
    """Outcome of the candidate search for one broken record."""

    record_id: str
    found: bool
    candidate: ObjectMeta | None = None
    strategy: MatchStrategy = MatchStrategy.NONE
    confidence: float = 0.0
    rejected_candidate: str | None = None
    rejected_confidence: float | None = None


class UnresolvedRecord(BaseModel):
    """Broken record left unrepaired after exhaustive search."""

    record_id: str
    filename: str
    location: str
    path: str
    reason: str


class DuplicateGroup(BaseModel):
    """Live records sharing one physical object."""

    location: str
    path: str
    record_ids: list[str]
    status: DuplicateGroupStatus = DuplicateGroupStatus.PENDING
    staged_path: str | None = None
    content_hash: str | None = None
    primary_record_id: str | None = None

    @property
    def group_key(self) -> str:
        return f"{self.location}::{self.path}"


class PhaseOutcome(BaseModel):
    """What a phase handler hands back to the state machine."""

    checkpoint: Checkpoint
    entries: list[ChangeLogEntry] = Field(default_factory=list)
    failures: list[PhaseFailure] = Field(default_factory=list)


class VerificationReport(BaseModel):
    checked: int = 0
    missing_objects: list[str] = Field(default_factory=list)
    shared_objects: dict[str, list[str]] = Field(default_factory=dict)
    non_canonical: list[str] = Field(default_factory=list, description="Live records left outside the target prefix")
    unresolved_records: list[str] = Field(default_factory=list)
    staging_removed: int = 0

    @property
    def invariant_holds(self) -> bool:
        return not self.missing_objects and not self.shared_objects and not self.non_canonical


class RollbackResult(BaseModel):
    run_id: str
    method: RollbackMethod
    dry_run: bool = False
    reversed: int = 0
    errors: int = 0
    skipped: int = 0
    restored_records: int = 0
    by_operation: dict[str, int] = Field(default_factory=dict)
    by_phase: dict[str, int] = Field(default_factory=dict)
    failures: list[str] = Field(default_factory=list)
    verification_failures: list[str] = Field(default_factory=list)
    verified_samples: int = 0


class MigrationOutcome(BaseModel):
    """Result of ``start``/``resume``."""

    run_id: str
    status: RunStatus
    phase: Phase
    counters: dict[str, int] = Field(default_factory=dict)
    failures: list[PhaseFailure] = Field(default_factory=list)
    unresolved: list[UnresolvedRecord] = Field(default_factory=list)
    verification: VerificationReport | None = None
    error: str | None = None
    error_class: str | None = None


class RunStatusReport(BaseModel):
    run_id: str
    status: RunStatus
    phase: Phase | None = None
    completed_phases: list[Phase] = Field(default_factory=list)
    progress: dict[str, Any] = Field(default_factory=dict)
    counters: dict[str, int] = Field(default_factory=dict)
    changelog_entries: int = 0
    last_error: str | None = None


__all__ = [
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
