from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "OVERLAY_SEPARATOR_LOG_DIR",
        Path.home() / ".local" / "state" / "overlay-separator" / "logs",
    )
)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    quiet: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup logging sinks for a separator run.

    Logging Tiers:
    - CRITICAL/ERROR: Failed runs and the failure category
    - SUCCESS/INFO: Pipeline steps (attach, plan, resize, format, compress)
    - DEBUG: Every external command, and the output of failed ones
    - TRACE: Output of successful commands

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        quiet: Only show warnings and errors on the console
        log_dir: Custom log directory (defaults to ~/.local/state/overlay-separator/logs)
        file_logging: Write log files in addition to the console
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"
    if quiet and not (debug or trace):
        console_level = "WARNING"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a run
        tags: Tags for filtering (e.g., ["loop", "storage"])
        source: Source component (e.g., "loop", "codec")
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking a pipeline step with automatic timing.

    Logs step start, completion, and failure with duration tracking. Errors
    are logged and re-raised unchanged.

    Example:
        with operation_context("repartition", image="/tmp/work.img") as log:
            log.debug("Attaching loop device")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            # The caller logs the single fatal message for this failure.
            log.debug(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_run(job_id: str | None = None) -> Logger:
        """Logger for a whole separation run."""
        if job_id is None:
            job_id = f"separate-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="separate", tags=["separate"])

    @staticmethod
    def for_loop() -> Logger:
        """Logger for loop device attach/detach."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_partition() -> Logger:
        """Logger for partition table reads and changes."""
        return logger.bind(source="partition", tags=["partition", "storage"])

    @staticmethod
    def for_filesystem() -> Logger:
        """Logger for squashfs probing, tail zeroing and overlay formatting."""
        return logger.bind(source="fs", tags=["filesystem", "storage"])

    @staticmethod
    def for_codec() -> Logger:
        """Logger for compression and decompression."""
        return logger.bind(source="codec", tags=["codec"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for command execution, startup and configuration."""
        return logger.bind(source="system", tags=["system"])
