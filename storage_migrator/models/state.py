"""Persisted run state: change-log entries, checkpoints, locks and run records."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import ChangeOperation, Phase, RunStatus
from .records import ObjectKey, utcnow


class ChangeLogEntry(BaseModel):
    """One append-only mutation record.

    ``before`` must hold enough state to reverse the mutation; for
    ``duplicate-record-removed`` it is the full prior record.
    """

    run_id: str
    sequence: int = Field(default=0, description="Assigned by ChangeLogManager on log()")
    phase: Phase
    operation: ChangeOperation
    record_id: str | None = None
    before: dict[str, Any] = Field(default_factory=dict)
    after: dict[str, Any] = Field(default_factory=dict)
    details: dict[str, Any] = Field(default_factory=dict)
    reverses: int | None = Field(default=None, description="Sequence undone by this rollback entry")
    timestamp: datetime = Field(default_factory=utcnow)


class TransferIntent(BaseModel):
    """Object transfer announced durably before any bytes move.

    The row is deleted in the same transaction that persists the change-log
    entry carrying its ``intent_id`` in ``details``. A row that outlives its
    invocation marks a transfer whose outcome was never logged.
    """

    run_id: str
    intent_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    phase: Phase
    operation: ChangeOperation
    record_id: str | None = None
    source: ObjectKey
    target: ObjectKey
    keep_source: bool = False
    size: int | None = Field(default=None, description="Source size when announced, if known")
    record_before: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Checkpoint(BaseModel):
    """Resumable progress of a run."""

    run_id: str
    phase: Phase
    completed_phases: list[Phase] = Field(default_factory=list)
    processed_ids: set[str] = Field(
        default_factory=set, description="Item identifiers finished in the current phase"
    )
    batch: int = 0
    counters: dict[str, int] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def increment(self, counter: str, amount: int = 1) -> None:
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def advance_to(self, phase: Phase) -> "Checkpoint":
        """Checkpoint for the start of ``phase``; processed IDs reset per phase."""
        completed = list(self.completed_phases)
        if self.phase not in completed and self.phase != phase:
            completed.append(self.phase)
        return self.model_copy(
            update={
                "phase": phase,
                "completed_phases": completed,
                "processed_ids": set(),
                "batch": 0,
                "updated_at": utcnow(),
            },
            deep=True,
        )


class RunLock(BaseModel):
    """Row of the lock table."""

    scope: str
    run_id: str
    holder: str
    acquired_at: datetime
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= utcnow()


class RunInfo(BaseModel):
    """Registry row for a run, independent of any single invocation."""

    run_id: str
    scope: str
    status: RunStatus = RunStatus.RUNNING
    config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_error: str | None = None
