"""Command line entry point: ``storage-migrator start|resume|status|rollback|checkpoints|unlock``."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .core.config_loader import MetadataStoreConfig, config_from_dict, load_config_async
from .core.exceptions import (
    CircuitBreakerError,
    ConfigurationError,
    LockContentionError,
    RollbackError,
    RunNotFoundError,
    StorageMigratorError,
)
from .core.logging_config import get_migration_logger, setup_logging
from .core.runs import RunRegistry
from .core.settings import RuntimeSettings, get_runtime_settings
from .core.shutdown import CancellationToken, install_signal_handlers, remove_signal_handlers
from .core.state_store import StateStore
from .models.enums import ExitCode, Phase, RollbackMethod, RunStatus
from .models.results import MigrationOutcome, RollbackResult
from .repository import InMemoryMetadataRepository, MetadataRepository, SqliteMetadataRepository
from .services.orchestrator import MigrationOrchestrator
from .storage import create_storage_client

PHASE_CHOICES = [p.value for p in Phase if p not in (Phase.COMPLETE, Phase.ROLLBACK)]
SUCCESS_STATUSES = {RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_ISSUES, RunStatus.ROLLED_BACK}


class MigratorArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with ``ExitCode.USAGE_ERROR``; argparse's own 2 is the config code here."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(int(ExitCode.USAGE_ERROR), f"{self.prog}: error: {message}\n")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()

    parser = MigratorArgumentParser(
        prog="storage-migrator",
        description="Resumable migration of file-backed metadata records between storage locations",
    )
    parser.add_argument("--state-dir", default=None, help="State directory (default: MIGRATOR_STATE_DIR)")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: LOG_LEVEL or INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Begin a new migration run")
    start.add_argument("--config", default=None, help="Configuration file (default: MIGRATOR_CONFIG or migration.yml)")

    resume = commands.add_parser("resume", help="Continue an interrupted or failed run")
    resume.add_argument("run_id")

    status = commands.add_parser("status", help="Show one run, or list runs")
    status.add_argument("run_id", nargs="?")
    status.add_argument("--scope", default=None, help="Only list runs of this scope")

    rollback = commands.add_parser("rollback", help="Reverse a run")
    rollback.add_argument("run_id")
    scoping = rollback.add_mutually_exclusive_group()
    scoping.add_argument("--from-phase", choices=PHASE_CHOICES, help="Reverse this phase and every later one")
    scoping.add_argument(
        "--phase", action="append", choices=PHASE_CHOICES, dest="phases", help="Reverse only this phase (repeatable)"
    )
    rollback.add_argument(
        "--method", choices=[m.value for m in RollbackMethod], default=RollbackMethod.CHANGELOG.value
    )
    rollback.add_argument("--dry-run", action="store_true", help="Report what would be reversed")

    checkpoints = commands.add_parser("checkpoints", help="List saved checkpoints")
    checkpoints.add_argument("run_id", nargs="?")

    unlock = commands.add_parser("unlock", help="Force-clear a stale scope lock")
    unlock.add_argument("scope")

    return parser.parse_args(argv)


async def create_repository(metadata: MetadataStoreConfig) -> MetadataRepository:
    if metadata.backend == "memory":
        return InMemoryMetadataRepository()
    if not metadata.path:
        raise ConfigurationError("metadata.path is required for the sqlite metadata backend")
    repository = SqliteMetadataRepository(metadata.path)
    await repository.initialize()
    return repository


def outcome_exit_code(outcome: MigrationOutcome) -> ExitCode:
    if outcome.status in SUCCESS_STATUSES:
        return ExitCode.SUCCESS
    if outcome.error_class == CircuitBreakerError.__name__:
        return ExitCode.REPEATED_ERROR
    return ExitCode.PARTIAL_COMPLETION


def rollback_exit_code(result: RollbackResult) -> ExitCode:
    if result.errors or result.verification_failures:
        return ExitCode.PARTIAL_COMPLETION
    return ExitCode.SUCCESS


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def run_command(args: argparse.Namespace, settings: RuntimeSettings) -> ExitCode:
    state_dir = Path(args.state_dir) if args.state_dir else settings.state_dir
    store = StateStore(state_dir)
    await store.initialize()
    registry = RunRegistry(store)

    if args.command in ("status", "checkpoints", "unlock"):
        # Read-only commands never touch storage or the metadata repository
        orchestrator = MigrationOrchestrator(store, storage=None, repository=None)  # type: ignore[arg-type]
        if args.command == "status" and args.run_id:
            _emit((await orchestrator.status(args.run_id)).model_dump(mode="json"))
        elif args.command == "status":
            runs = await orchestrator.list_runs(args.scope)
            _emit([run.model_dump(mode="json", exclude={"config"}) for run in runs])
        elif args.command == "checkpoints":
            _emit(await orchestrator.list_checkpoints(args.run_id))
        else:
            _emit({"scope": args.scope, "cleared": await orchestrator.force_unlock(args.scope)})
        return ExitCode.SUCCESS

    if args.command == "start":
        config = await load_config_async(args.config)
        config.validate_run_config()
    else:
        config = config_from_dict((await registry.get(args.run_id)).config)

    storage = create_storage_client(config.locations)
    repository = await create_repository(config.metadata)
    token = CancellationToken()
    installed = install_signal_handlers(token)
    try:
        orchestrator = MigrationOrchestrator(
            store, storage, repository, cancel_token=token, reports_dir=state_dir / "reports"
        )
        if args.command == "start":
            outcome = await orchestrator.start(config)
        elif args.command == "resume":
            outcome = await orchestrator.resume(args.run_id)
        else:
            phases = [Phase(p) for p in args.phases] if args.phases else None
            result = await orchestrator.rollback(
                args.run_id,
                from_phase=Phase(args.from_phase) if args.from_phase else None,
                method=RollbackMethod(args.method),
                mode="only" if phases else "from",
                dry_run=args.dry_run,
                phases=phases,
            )
            _emit(result.model_dump(mode="json"))
            return rollback_exit_code(result)
    finally:
        remove_signal_handlers(installed)

    _emit(outcome.model_dump(mode="json"))
    return outcome_exit_code(outcome)


async def _dispatch(args: argparse.Namespace, settings: RuntimeSettings) -> ExitCode:
    logger = get_migration_logger().bind(component="cli", command=args.command)
    try:
        return await run_command(args, settings)
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        return ExitCode.CONFIGURATION_ERROR
    except LockContentionError as e:
        logger.error("Lock contention", error=str(e), scope=e.scope, holder_run_id=e.holder_run_id)
        return ExitCode.LOCK_CONTENTION
    except CircuitBreakerError as e:
        logger.error("Repeated error", error=str(e), signature=e.signature)
        return ExitCode.REPEATED_ERROR
    except (RunNotFoundError, RollbackError) as e:
        logger.error("Command failed", error=str(e), error_class=type(e).__name__)
        return ExitCode.USAGE_ERROR
    except StorageMigratorError as e:
        logger.error("Command failed", error=str(e), error_class=type(e).__name__)
        return ExitCode.PARTIAL_COMPLETION


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    settings = get_runtime_settings()
    state_dir = Path(args.state_dir) if args.state_dir else settings.state_dir
    setup_logging(
        log_dir=settings.log_dir or state_dir / "logs",
        log_level=args.log_level or settings.log_level,
        max_file_size_mb=settings.log_file_size_mb,
    )
    sys.exit(int(asyncio.run(_dispatch(args, settings))))


if __name__ == "__main__":
    main()
