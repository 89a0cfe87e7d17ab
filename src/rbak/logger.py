"""Logging infrastructure for rbak.

Modules log through ``logging.getLogger(__name__)``. configure_logging()
routes those records through structlog formatters to two sinks: a JSON-lines
file per run and colored lines on the shared rich console.
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.text import Text
from structlog.typing import EventDict, WrappedLogger

from rbak.models import LogLevel

__all__ = [
    "ConsoleHandler",
    "configure_logging",
    "generate_log_filename",
    "get_latest_log_file",
    "get_logs_directory",
    "reset_logging",
]

LOGS_DIRECTORY = Path("/var/log/rbak")


class ConsoleHandler(logging.Handler):
    """Logging handler printing through a rich Console.

    Printing through the console keeps log lines above an active progress bar.
    """

    def __init__(self, console: Console, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._console = console

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._console.print(Text.from_ansi(self.format(record)), soft_wrap=True)
        except Exception:
            self.handleError(record)


def _add_hostname(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add hostname to log context if not already present."""
    if "hostname" not in event_dict:
        event_dict["hostname"] = socket.gethostname()
    return event_dict


def configure_logging(
    log_file_level: LogLevel,
    log_cli_level: LogLevel,
    log_file_path: Path,
    console: Console,
    **context: Any,
) -> None:
    """Configure dual output: file (JSON) and terminal (ConsoleRenderer).

    Args:
        log_file_level: Minimum level for file logging
        log_cli_level: Minimum level for terminal display
        log_file_path: Path to log file
        console: Console the terminal output is printed through
        **context: Values added to every record (e.g. run_id)
    """
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_hostname,
        structlog.processors.StackInfoRenderer(),
    ]
    structlog.contextvars.clear_contextvars()
    if context:
        structlog.contextvars.bind_contextvars(**context)

    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(log_file_level)
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(default=str),
            ],
            foreign_pre_chain=shared_processors,
        )
    )

    console_handler = ConsoleHandler(console, level=log_cli_level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=True),
            foreign_pre_chain=shared_processors,
        )
    )

    package_logger = logging.getLogger("rbak")
    reset_logging()
    package_logger.setLevel(min(log_file_level, log_cli_level))
    package_logger.addHandler(file_handler)
    package_logger.addHandler(console_handler)
    package_logger.propagate = False


def reset_logging() -> None:
    """Close and detach the handlers installed by configure_logging()."""
    package_logger = logging.getLogger("rbak")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.propagate = True


def generate_log_filename(run_id: str) -> str:
    """Generate log filename for a backup run.

    Format: backup-<timestamp>-<run_id>.log
    """
    timestamp = datetime.now().strftime("%Y%m%dT%H%M%S")
    return f"backup-{timestamp}-{run_id}.log"


def get_logs_directory() -> Path:
    """Get the logs directory path."""
    return LOGS_DIRECTORY


def get_latest_log_file() -> Path | None:
    """Get the most recent log file, or None if no logs exist."""
    logs_dir = get_logs_directory()
    if not logs_dir.exists():
        return None

    log_files = sorted(logs_dir.glob("backup-*.log"), reverse=True)
    return log_files[0] if log_files else None
