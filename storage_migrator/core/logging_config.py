"""Logging configuration for storage migration runs with dual output (console + files)."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

PACKAGE_LOGGER = "storage_migrator"
AUDIT_LOGGER = "storage_migrator.audit"


def setup_logging(
    log_dir: Path | str = Path("logs"),
    log_level: str | None = None,
    max_file_size_mb: int = 10,
) -> None:
    """Setup dual logging system: console + files with automatic truncation.

    Creates two log files:
    - migrator.log: All migration operations (every module logger of the package)
    - audit.log: Per-item mutations (the audit logger only)

    Args:
        log_dir: Directory for log files
        log_level: Log level (defaults to LOG_LEVEL env var or INFO)
        max_file_size_mb: Max file size before truncation (no backup files kept)
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    log_level_num = getattr(logging, log_level.upper(), logging.INFO)
    max_bytes = max_file_size_mb * 1024 * 1024

    # Clear any existing handlers to prevent duplicates
    logging.getLogger().handlers.clear()
    for name in (PACKAGE_LOGGER, AUDIT_LOGGER):
        logging.getLogger(name).handlers.clear()

    migrator_file_handler = RotatingFileHandler(
        log_dir / "migrator.log",
        maxBytes=max_bytes,
        backupCount=0,  # Don't keep old files, just truncate
        encoding="utf-8",
    )
    migrator_file_handler.setLevel(log_level_num)

    audit_file_handler = RotatingFileHandler(
        log_dir / "audit.log",
        maxBytes=max_bytes,
        backupCount=0,
        encoding="utf-8",
    )
    audit_file_handler.setLevel(log_level_num)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level_num)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level_num)
    root_logger.addHandler(console_handler)

    # Package logger: every module logger propagates here (migrator.log + console)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.addHandler(migrator_file_handler)
    package_logger.propagate = True

    # Audit logger: audit.log, then up through migrator.log and console
    audit_logger = logging.getLogger(AUDIT_LOGGER)
    audit_logger.addHandler(audit_file_handler)
    audit_logger.propagate = True

    from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter

    renderer = (
        structlog.dev.ConsoleRenderer()
        if sys.stderr.isatty()
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )
    console_handler.setFormatter(ProcessorFormatter(processor=renderer))
    migrator_file_handler.setFormatter(
        ProcessorFormatter(processor=structlog.processors.JSONRenderer())
    )
    audit_file_handler.setFormatter(
        ProcessorFormatter(processor=structlog.processors.JSONRenderer())
    )

    logger = get_migration_logger()
    logger.info(
        "Logging system initialized",
        log_dir=str(log_dir.absolute()),
        log_level=log_level,
        max_file_size_mb=max_file_size_mb,
        migrator_log=str(log_dir / "migrator.log"),
        audit_log=str(log_dir / "audit.log"),
    )


def get_migration_logger() -> Any:
    """Get logger for general migration operations (writes to migrator.log)."""
    return structlog.get_logger(PACKAGE_LOGGER)


def get_audit_logger() -> Any:
    """Get logger for per-item mutations (writes to audit.log and migrator.log)."""
    return structlog.get_logger(AUDIT_LOGGER)


def bind_run_context(run_id: str, phase: str | None = None) -> None:
    """Bind run identifiers into every subsequent log event of this context."""
    if phase is None:
        structlog.contextvars.bind_contextvars(run_id=run_id)
    else:
        structlog.contextvars.bind_contextvars(run_id=run_id, phase=phase)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("run_id", "phase")
