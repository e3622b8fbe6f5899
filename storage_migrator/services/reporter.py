"""Final run report and unresolved-record export."""

import asyncio
import csv
import io
import json
from pathlib import Path
from typing import Any

import structlog

from ..models.enums import ChangeOperation
from ..models.results import MigrationOutcome, UnresolvedRecord
from ..models.state import ChangeLogEntry
from ..utils import format_duration, format_size

logger = structlog.get_logger()

UNRESOLVED_FIELDS = ["record_id", "filename", "location", "path", "reason"]
BYTE_COUNTERS = ("bytes_consolidated", "bytes_quarantined")


def unresolved_from_entries(entries: list[ChangeLogEntry]) -> list[UnresolvedRecord]:
    """Unrepaired records from ``link-not-repaired`` audit entries (latest per record)."""
    latest: dict[str, ChangeLogEntry] = {}
    for entry in entries:
        if entry.operation == ChangeOperation.LINK_NOT_REPAIRED and entry.record_id:
            latest[entry.record_id] = entry
    unresolved = []
    for record_id, entry in sorted(latest.items()):
        details = entry.details
        reason = "no candidate found"
        if details.get("rejected_candidate"):
            reason = (
                f"best candidate {details['rejected_candidate']} "
                f"below threshold ({details.get('rejected_confidence')})"
            )
        unresolved.append(
            UnresolvedRecord(
                record_id=record_id,
                filename=details.get("filename", ""),
                location=details.get("location", ""),
                path=details.get("path", ""),
                reason=reason,
            )
        )
    return unresolved


class MigrationReporter:
    """Writes the per-run report directory and logs a summary."""

    def __init__(self, reports_dir: Path | str):
        self.reports_dir = Path(reports_dir)
        self.logger = logger.bind(component="reporter")

    def run_dir(self, run_id: str) -> Path:
        return self.reports_dir / run_id

    def transferred(self, outcome: MigrationOutcome) -> dict[str, str]:
        """Human-readable sizes of the bytes each transferring phase moved."""
        return {name: format_size(outcome.counters.get(name, 0)) for name in BYTE_COUNTERS}

    def build_report(
        self,
        outcome: MigrationOutcome,
        error_statistics: dict[str, Any],
        elapsed_seconds: float,
    ) -> dict[str, Any]:
        report = outcome.model_dump(mode="json")
        report["failures"] = [f.describe() for f in outcome.failures]
        report["error_statistics"] = error_statistics
        report["elapsed"] = format_duration(elapsed_seconds)
        report["transferred"] = self.transferred(outcome)
        return report

    async def write(
        self,
        outcome: MigrationOutcome,
        error_statistics: dict[str, Any],
        elapsed_seconds: float = 0.0,
    ) -> Path:
        """Write report.json plus unresolved.json/.csv; returns the run report directory."""
        target = self.run_dir(outcome.run_id)
        report = self.build_report(outcome, error_statistics, elapsed_seconds)
        unresolved = [u.model_dump() for u in outcome.unresolved]

        csv_buffer = io.StringIO()
        writer = csv.DictWriter(csv_buffer, fieldnames=UNRESOLVED_FIELDS)
        writer.writeheader()
        writer.writerows(unresolved)

        def _write_files() -> None:
            target.mkdir(parents=True, exist_ok=True)
            (target / "report.json").write_text(json.dumps(report, indent=2), encoding="utf-8")
            (target / "unresolved.json").write_text(json.dumps(unresolved, indent=2), encoding="utf-8")
            (target / "unresolved.csv").write_text(csv_buffer.getvalue(), encoding="utf-8")

        await asyncio.to_thread(_write_files)
        self.log_summary(outcome, elapsed_seconds, target)
        return target

    def log_summary(self, outcome: MigrationOutcome, elapsed_seconds: float, report_dir: Path) -> None:
        summary = {
            "run_id": outcome.run_id,
            "status": outcome.status.value,
            "phase": outcome.phase.value,
            "elapsed": format_duration(elapsed_seconds),
            "failures": len(outcome.failures),
            "unresolved": len(outcome.unresolved),
            "report_dir": str(report_dir),
            **outcome.counters,
            **self.transferred(outcome),
        }
        if outcome.error:
            self.logger.error(
                "Migration stopped",
                error=outcome.error,
                error_class=outcome.error_class,
                **summary,
            )
        else:
            self.logger.info("Migration finished", **summary)
        for failure in outcome.failures[:20]:
            self.logger.warning("Item failure", failure=failure.describe())
