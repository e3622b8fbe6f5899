"""Migration phase services, rollback and the orchestrator."""

from .backup import BackupService  # noqa: F401
from .consolidation import ConsolidationService  # noqa: F401
from .duplicates import DuplicateResolutionService, select_primary_record  # noqa: F401
from .inventory import Inventory, InventoryBuilder  # noqa: F401
from .link_repair import LinkRepairService, rank_repair_candidates  # noqa: F401
from .orchestrator import MigrationOrchestrator  # noqa: F401
from .phases import BatchProcessor, PhaseContext  # noqa: F401
from .quarantine import QuarantineService  # noqa: F401
from .reporter import MigrationReporter  # noqa: F401
from .rollback import RollbackEngine  # noqa: F401
from .verification import VerificationService  # noqa: F401

__all__ = [
    "BackupService",
    "BatchProcessor",
    "ConsolidationService",
    "DuplicateResolutionService",
    "Inventory",
    "InventoryBuilder",
    "LinkRepairService",
    "MigrationOrchestrator",
    "MigrationReporter",
    "PhaseContext",
    "QuarantineService",
    "RollbackEngine",
    "VerificationService",
    "rank_repair_candidates",
    "select_primary_record",
]
