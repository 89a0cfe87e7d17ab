"""Core types, exit codes and the error taxonomy for rbak."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum

__all__ = [
    "BackupAbortedError",
    "BackupPhase",
    "BackupRun",
    "CommandResult",
    "ConfigError",
    "ExitCode",
    "GraphicalSessionError",
    "InsufficientPrivilegeError",
    "InvalidSuffixError",
    "LogLevel",
    "PreflightError",
    "ProgressUpdate",
    "RunLockedError",
    "RunStatus",
    "ServiceReport",
    "SyncError",
    "TargetMissingError",
    "UnconfiguredError",
]


class LogLevel(IntEnum):
    """Logging levels, compatible with stdlib logging.

    FULL sits between DEBUG and INFO and carries per-file rsync output.
    """

    DEBUG = logging.DEBUG
    FULL = logging.DEBUG + 5
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


logging.addLevelName(LogLevel.FULL, "FULL")


class ExitCode(IntEnum):
    """Process exit codes of the rbak command."""

    OK = 0
    UNCONFIGURED = 1
    ERROR = 1  # Unexpected failure, reported like a configuration problem
    INSUFFICIENT_PRIVILEGE = 2
    TARGET_MISSING = 3
    GRAPHICAL_SESSION = 4
    SYNC_FAILED = 5
    ALREADY_RUNNING = 6
    ABORTED = 7
    INTERRUPTED = 130


class BackupPhase(StrEnum):
    """States of the backup state machine."""

    INIT = "init"
    VALIDATED = "validated"
    OBSERVER_ARMED = "observer_armed"
    SERVICES_PAUSED = "services_paused"
    PROCESSES_PAUSED = "processes_paused"
    SYNCING = "syncing"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    ABORTED = "aborted"


class RunStatus(StrEnum):
    """Outcome of a single rbak invocation."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    ABORTED = "aborted"
    REJECTED = "rejected"  # Precondition gate refused the run
    USAGE = "usage"  # No suffix given, informational output only


@dataclass(frozen=True)
class CommandResult:
    """Result of executing a command via LocalExecutor."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ProgressUpdate:
    """Overall rsync progress, parsed from one --info=progress2 line."""

    percent: int | None = None  # 0-100 if known
    transferred: int | None = None  # Bytes transferred so far
    rate: str | None = None  # e.g. "12.34MB/s"
    eta: str | None = None  # e.g. "0:01:23"

    def __post_init__(self) -> None:
        if self.percent is not None and not 0 <= self.percent <= 100:
            raise ValueError(f"percent must be 0-100, got {self.percent}")


@dataclass(frozen=True)
class ConfigError:
    """Error from configuration loading or schema validation."""

    path: str  # JSON path to invalid value, or the file path
    message: str


@dataclass(frozen=True)
class ServiceReport:
    """Outcome of a batched systemctl call plus per-service state."""

    action: str  # "stop" or "start"
    success: bool
    states: dict[str, str] = field(default_factory=dict)  # name -> is-active output
    error_message: str | None = None


@dataclass
class BackupRun:
    """State and results of one rbak invocation."""

    run_id: str
    started_at: str  # ISO 8601 timestamp
    hostname: str
    status: RunStatus
    target_path: str | None = None
    phases: list[BackupPhase] = field(default_factory=lambda: [BackupPhase.INIT])
    frozen: dict[str, int] = field(default_factory=dict)
    resumed: dict[str, int] = field(default_factory=dict)
    service_reports: list[ServiceReport] = field(default_factory=list)
    ended_at: str | None = None
    error_message: str | None = None
    exit_code: ExitCode = ExitCode.OK
    log_file: str | None = None

    @property
    def phase(self) -> BackupPhase:
        return self.phases[-1]

    def enter(self, phase: BackupPhase) -> None:
        """Record a state machine transition."""
        self.phases.append(phase)


class PreflightError(Exception):
    """Raised by the precondition gate; nothing has been touched yet."""

    exit_code: ExitCode = ExitCode.UNCONFIGURED


class UnconfiguredError(PreflightError):
    """configuration_affirmed is not set."""

    exit_code = ExitCode.UNCONFIGURED


class InvalidSuffixError(PreflightError):
    """The suffix argument cannot name a backup directory."""

    exit_code = ExitCode.UNCONFIGURED


class InsufficientPrivilegeError(PreflightError):
    """rbak is not running as root."""

    exit_code = ExitCode.INSUFFICIENT_PRIVILEGE


class TargetMissingError(PreflightError):
    """The resolved backup directory does not exist."""

    exit_code = ExitCode.TARGET_MISSING

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Backup directory not found: {path}")


class GraphicalSessionError(PreflightError):
    """rbak was started from inside a graphical desktop session."""

    exit_code = ExitCode.GRAPHICAL_SESSION


class RunLockedError(Exception):
    """Another rbak run holds the run lock."""

    def __init__(self, holder: str | None) -> None:
        self.holder = holder
        super().__init__(f"Another backup is already in progress (held by: {holder or 'unknown'})")


class BackupAbortedError(Exception):
    """The operator declined to continue at the confirmation prompt."""


class SyncError(Exception):
    """Raised when the copy engine fails."""

    def __init__(self, exit_code: int, message: str) -> None:
        self.exit_code = exit_code
        super().__init__(message)
