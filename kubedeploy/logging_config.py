"""
Centralized logging configuration for kube-deploy.

Console output is what the operator watches during a rollout; the rotating
files keep a full record of every run, with rollout lifecycle events in a
stream of their own.
"""
# mypy: ignore-errors

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ROLLOUT_LOGGER = "kubedeploy.rollout"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON for better parsing."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add extra fields if present
        if hasattr(record, "release"):
            log_obj["release"] = record.release
        if hasattr(record, "app"):
            log_obj["app"] = record.app
        if hasattr(record, "namespace"):
            log_obj["namespace"] = record.namespace

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False, console: bool = False):
        """Initialize formatter with optional color support."""
        self.use_colors = use_colors
        if console:
            # The operator reads these mid-rollout; keep them short
            super().__init__(fmt="%(message)s")
        else:
            super().__init__(
                fmt="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )

    def format(self, record: logging.LogRecord) -> str:
        """Format with optional colors for console output."""
        message = super().format(record)
        if self.use_colors and record.levelno >= logging.WARNING:
            color = self.COLORS.get(record.levelname, "")
            return f"{color}{message}{self.RESET}"
        return message


def setup_logging(
    log_dir: Optional[str] = None,
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> None:
    """
    Configure logging for a kube-deploy run.

    Args:
        log_dir: Directory for log files (console only when None)
        console_level: Console logging level
        file_level: File logging level
        use_json: Use JSON formatting for files
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(
        HumanReadableFormatter(use_colors=sys.stdout.isatty(), console=True)
    )
    root_logger.addHandler(console_handler)

    # Quiet the kubernetes client and docker SDK unless something breaks
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)

    if not log_dir:
        return

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    main_handler = logging.handlers.RotatingFileHandler(
        log_path / "kube-deploy.log", maxBytes=max_bytes, backupCount=backup_count
    )
    main_handler.setLevel(getattr(logging, file_level))
    main_handler.setFormatter(file_formatter)
    root_logger.addHandler(main_handler)

    # Error-only log for monitoring
    error_handler = logging.handlers.RotatingFileHandler(
        log_path / "error.log", maxBytes=max_bytes, backupCount=backup_count
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_formatter)
    root_logger.addHandler(error_handler)

    # Rollout lifecycle log; also propagates so the operator sees it
    rollout_handler = logging.handlers.RotatingFileHandler(
        log_path / "rollouts.log", maxBytes=max_bytes, backupCount=backup_count
    )
    rollout_handler.setFormatter(file_formatter)
    logging.getLogger(ROLLOUT_LOGGER).addHandler(rollout_handler)

    root_logger.debug(
        f"Logging initialized - Console: {console_level}, File: {file_level}, "
        f"Directory: {log_dir}, JSON: {use_json}"
    )


class LogContext:
    """Context manager for adding contextual information to logs."""

    def __init__(self, **kwargs: Any):
        """
        Initialize log context.

        Args:
            **kwargs: Context fields to add to all records
        """
        self.context = kwargs
        self.old_factory = None

    def __enter__(self):
        """Enter context and inject fields."""
        old_factory = logging.getLogRecordFactory()
        self.old_factory = old_factory

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            for key, value in self.context.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(record_factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context and restore factory."""
        if self.old_factory:
            logging.setLogRecordFactory(self.old_factory)


def log_rollout_event(
    event: str, release: str, details: Optional[Dict[str, Any]] = None, level: str = "INFO"
) -> None:
    """
    Log a rollout lifecycle event.

    Args:
        event: Event type (canary_point, bailout, promoted, etc.)
        release: Release name
        details: Additional event details
        level: Log level (INFO, WARNING, ERROR)
    """
    logger = logging.getLogger(ROLLOUT_LOGGER)

    message = f"Rollout event: {event} ({release})"
    if details:
        message += f" - {json.dumps(details, default=str)}"

    log_method = getattr(logger, level.lower())
    log_method(message, extra={"release": release})
