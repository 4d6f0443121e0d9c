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
        "EBS_PUBLISHER_LOG_DIR",
        Path.home() / ".local" / "state" / "ebs-publisher" / "logs",
    )
)

# TRACE already exists in loguru at level 5 (below DEBUG which is 10)


def _should_log_poll(record, trace_enabled: bool) -> bool:
    """Filter individual status poll results - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    # Always log warnings and errors raised while polling
    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "poll" in tags and record["message"].startswith("Polled"):
        return trace_enabled

    return True


def _should_log_command(record, trace_enabled: bool) -> bool:
    """Filter command stdout/stderr echoes - only show in TRACE mode."""
    message = record["message"]

    if message.startswith(("stdout:", "stderr:")):
        return trace_enabled

    return True


def _combined_filter(record, trace_enabled: bool = False) -> bool:
    """Combined filter for all console suppression rules."""
    return _should_log_poll(record, trace_enabled) and _should_log_command(
        record, trace_enabled
    )


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Aborted publish runs, cloud API failures
    - SUCCESS/INFO: Workflow steps (volume created, snapshot completed, ...)
    - DEBUG: Detailed diagnostics, command execution, state transitions
    - TRACE: Ultra-verbose (device probes); also shows every status poll
      and command output on the console, which debug.log always keeps

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/ebs-publisher/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - User-facing, filtered
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=lambda record: _combined_filter(record, trace_enabled=trace),
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <8}</cyan> | "
            "<blue>{extra[job_id]: <16}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <8} | "
            "{extra[job_id]: <16} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <8} | "
                "{extra[job_id]: <16} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log - Ultra-verbose (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <8} | "
                "{extra[job_id]: <16} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
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
        job_id: Job identifier for tracking a publish run
        tags: Tags for filtering (e.g., ["cloud", "poll"])
        source: Source component (e.g., "publish", "cloud", "guest")

    Returns:
        Logger with bound context
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
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Example:
        with operation_context("publish", appliance="myapp") as log:
            log.debug("Creating volume")
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
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_publish(job_id: str | None = None, **details) -> Logger:
        """Logger for a publish run."""
        if job_id is None:
            job_id = f"publish-{uuid.uuid4().hex[:8]}"
        return get_logger(job_id=job_id, tags=["publish", "ebs"], source="publish").bind(
            **details
        )

    @staticmethod
    def for_cloud() -> Logger:
        """Logger for EC2 API calls and the instance metadata service."""
        return get_logger(source="cloud", tags=["cloud", "ec2"])

    @staticmethod
    def for_poll() -> Logger:
        """Logger for status polling loops."""
        return get_logger(source="poll", tags=["cloud", "poll"])

    @staticmethod
    def for_device() -> Logger:
        """Logger for local block device allocation."""
        return get_logger(source="device", tags=["device", "storage"])

    @staticmethod
    def for_guest() -> Logger:
        """Logger for guest filesystem operations."""
        return get_logger(source="guest", tags=["guest", "storage"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config)."""
        return get_logger(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for status polling, where a snapshot can take many minutes and a
    line per poll would flood the console.
    """

    def __init__(self, log: Logger, interval_seconds: float = 30.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key)

        if last_time is None or now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now
