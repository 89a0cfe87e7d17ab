"""Backup orchestrator: gate, pause, copy, and unconditional resume."""

from __future__ import annotations

import asyncio
import logging
import os
import secrets
import socket
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console

from rbak.config import Configuration
from rbak.events import EventBus
from rbak.executor import Executor, LocalExecutor, format_command
from rbak.freeze import ProcessFreezer
from rbak.gate import show_usage, validate
from rbak.lock import RunLock
from rbak.logger import configure_logging, generate_log_filename, get_logs_directory, reset_logging
from rbak.models import (
    BackupAbortedError,
    BackupPhase,
    BackupRun,
    ExitCode,
    PreflightError,
    RunLockedError,
    RunStatus,
    SyncError,
)
from rbak.observer import ChangeObserver, ObserverHandle
from rbak.services import ServiceController
from rbak.sync import SyncEngine
from rbak.targets import BackupTarget
from rbak.ui import TerminalUI, wait_for_confirmation

__all__ = ["Orchestrator", "RunState"]

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """What has been paused and must be undone.

    Flags are set before the corresponding action starts, so an interruption
    in the middle of an action still triggers its undo.
    """

    processes_halted: bool = False
    services_stop_attempted: bool = False
    observer: ObserverHandle | None = None
    sync_succeeded: bool = False
    cleanup_started: bool = False
    cleaned_up: bool = False

    @property
    def fully_resumed(self) -> bool:
        return not self.processes_halted and not self.services_stop_attempted and self.observer is None


class Orchestrator:
    """Runs one backup invocation through the state machine.

    init → validated → observer_armed → services_paused → processes_paused
    → syncing → cleaning_up → done, with aborted reachable from any state
    through cancellation or operator refusal. Every path after validation
    goes through _cleanup(), which runs exactly once.
    """

    def __init__(
        self,
        config: Configuration,
        suffix: str | None,
        *,
        console: Console | None = None,
        executor: Executor | None = None,
        event_bus: EventBus | None = None,
        freezer: ProcessFreezer | None = None,
        services: ServiceController | None = None,
        observer: ChangeObserver | None = None,
        sync_engine: SyncEngine | None = None,
        lock: RunLock | None = None,
        confirm: Callable[[], Awaitable[bool]] | None = None,
        logs_dir: Path | None = None,
        environ: Mapping[str, str] | None = None,
        euid: int | None = None,
    ) -> None:
        """Initialize orchestrator; collaborators default to the real ones.

        Args:
            config: Loaded configuration
            suffix: Backup directory suffix, or None for usage output
        """
        self._config = config
        self._suffix = suffix
        self._console = console or Console()
        self._executor = executor or LocalExecutor()
        self._event_bus = event_bus or EventBus()
        self._freezer = freezer or ProcessFreezer()
        self._services = services or ServiceController(self._executor)
        self._observer = observer or ChangeObserver(
            self._executor,
            self._event_bus,
            enabled=config.use_change_observer,
            exclude=config.observe_exclude_patterns,
            max_user_watches=config.max_user_watches,
        )
        self._sync_engine = sync_engine or SyncEngine(
            self._executor,
            self._event_bus,
            config.sync,
            config.exclude_patterns,
        )
        self._lock = lock or RunLock()
        self._confirm = confirm or (lambda: wait_for_confirmation(self._console))
        self._logs_dir = logs_dir or get_logs_directory()
        self._environ = environ
        self._euid = euid

        self._run_id = secrets.token_hex(4)
        self._state = RunState()
        self._session = BackupRun(
            run_id=self._run_id,
            started_at=datetime.now(UTC).isoformat(),
            hostname=socket.gethostname(),
            status=RunStatus.RUNNING,
        )
        self._target: BackupTarget | None = None
        self._ui: TerminalUI | None = None
        self._ui_task: asyncio.Task[None] | None = None

    @property
    def session(self) -> BackupRun:
        return self._session

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def cleanup_in_progress(self) -> bool:
        return self._state.cleanup_started and not self._state.cleaned_up

    async def run(self) -> BackupRun:
        """Execute the complete backup workflow.

        Returns:
            BackupRun with results and status

        Raises:
            PreflightError: The gate refused the run; nothing was touched
            RunLockedError: Another run is in progress; nothing was touched
            BackupAbortedError: The operator declined at the prompt
            SyncError: The copy failed (everything was resumed)
            asyncio.CancelledError: Interrupted (everything was resumed)
        """
        session = self._session

        try:
            target = validate(self._config, self._suffix, environ=self._environ, euid=self._euid)
        except PreflightError as e:
            session.status = RunStatus.REJECTED
            session.exit_code = e.exit_code
            session.error_message = str(e)
            session.enter(BackupPhase.DONE)
            raise

        if target is None:
            show_usage(self._config, self._console)
            session.status = RunStatus.USAGE
            session.enter(BackupPhase.DONE)
            return session

        self._target = target
        session.target_path = str(target.path)
        session.enter(BackupPhase.VALIDATED)

        self._acquire_lock()

        try:
            self._start_reporting()
            self._log_plan(target)

            await self._arm_observer(target)
            await self._pause_services()
            self._pause_processes()
            await self._sync(target)

            session.status = RunStatus.COMPLETED
            session.exit_code = ExitCode.OK
            logger.info("Backup of / to %s completed", target.path)
            return session

        except asyncio.CancelledError:
            session.status = RunStatus.INTERRUPTED
            session.exit_code = ExitCode.INTERRUPTED
            session.error_message = "Backup interrupted"
            logger.warning("Backup interrupted, resuming processes and services")
            raise

        except BackupAbortedError as e:
            session.status = RunStatus.ABORTED
            session.exit_code = ExitCode.ABORTED
            session.error_message = str(e)
            logger.warning("%s", e)
            raise

        except SyncError as e:
            session.status = RunStatus.FAILED
            session.exit_code = ExitCode.SYNC_FAILED
            session.error_message = str(e)
            logger.critical("Copy failed: %s", e)
            raise

        except Exception as e:
            session.status = RunStatus.FAILED
            session.exit_code = ExitCode.ERROR
            session.error_message = str(e)
            logger.critical("Backup failed: %s", e)
            raise

        finally:
            await self._cleanup()

    def _acquire_lock(self) -> None:
        holder_info = f"{self._session.hostname}:{os.getpid()}:{self._run_id}"
        if not self._lock.acquire(holder_info):
            self._session.status = RunStatus.REJECTED
            self._session.exit_code = ExitCode.ALREADY_RUNNING
            self._session.enter(BackupPhase.DONE)
            raise RunLockedError(self._lock.get_holder_info())

    def _start_reporting(self) -> None:
        """Set up log file, console logging and the event consumer."""
        log_file = self._logs_dir / generate_log_filename(self._run_id)
        configure_logging(
            self._config.log_file_level,
            self._config.log_cli_level,
            log_file,
            self._console,
            run_id=self._run_id,
        )
        self._session.log_file = str(log_file)

        self._ui = TerminalUI(self._console)
        self._ui_task = asyncio.create_task(self._ui.consume_events(self._event_bus.subscribe()))

    def _log_plan(self, target: BackupTarget) -> None:
        """Show the commands that are about to be issued."""
        logger.info("About to back up / to %s", target.path)
        logger.info("Copy command: %s", format_command(self._sync_engine.build_command(target.path)))
        if self._observer.enabled:
            logger.info("Observer command: %s", format_command(self._observer.build_command([str(target.path)])))
        if self._config.halt_services:
            logger.info("Services to stop: %s", " ".join(self._config.halt_services))
        if self._config.halt_users:
            logger.info("Users to halt: %s", " ".join(self._config.halt_users))

    async def _arm_observer(self, target: BackupTarget) -> None:
        self._state.observer = await self._observer.spawn(extra_exclude=[str(target.path)])
        self._session.enter(BackupPhase.OBSERVER_ARMED)

        if self._config.use_change_observer or self._config.confirm_before_pause:
            if not await self._confirm():
                raise BackupAbortedError("Backup aborted by operator before pausing")

    async def _pause_services(self) -> None:
        self._state.services_stop_attempted = True
        if self._config.halt_services:
            logger.info("Stopping services: %s", " ".join(self._config.halt_services))
        report = await self._services.stop(self._config.halt_services)
        self._session.service_reports.append(report)
        self._session.enter(BackupPhase.SERVICES_PAUSED)

    def _pause_processes(self) -> None:
        self._state.processes_halted = True
        logger.info("Halting user processes")
        self._session.frozen = self._freezer.freeze(self._config.halt_users)
        self._session.enter(BackupPhase.PROCESSES_PAUSED)

    async def _sync(self, target: BackupTarget) -> None:
        self._session.enter(BackupPhase.SYNCING)
        logger.info("Backing up / to %s", target.path)
        if self._ui is not None:
            self._ui.start()
        await self._sync_engine.run(target.path)
        self._state.sync_succeeded = True

    async def _cleanup(self) -> None:
        """Undo every pause that was started. Runs once; never raises."""
        if self._state.cleanup_started:
            return
        self._state.cleanup_started = True
        self._session.enter(BackupPhase.CLEANING_UP)

        if self._ui is not None:
            self._ui.stop()

        await self._attempt("stop change observer", self._stop_observer)
        await self._attempt("terminate child processes", self._executor.terminate_all_processes)
        await self._attempt("resume user processes", self._resume_processes)
        await self._attempt("start services", self._resume_services)
        await self._attempt("mark backup completion", self._mark_completed)

        session = self._session
        session.ended_at = datetime.now(UTC).isoformat()
        if session.status in (RunStatus.INTERRUPTED, RunStatus.ABORTED):
            session.enter(BackupPhase.ABORTED)
        else:
            session.enter(BackupPhase.DONE)
        logger.info("Done (%s)", session.status.value)

        self._event_bus.close()
        if self._ui_task is not None:
            await asyncio.gather(self._ui_task, return_exceptions=True)
        self._lock.release()
        reset_logging()
        self._state.cleaned_up = True

    async def _attempt(self, description: str, step: Callable[[], Awaitable[None]]) -> None:
        try:
            await step()
        except Exception:
            logger.exception("Cleanup step failed: %s", description)

    async def _stop_observer(self) -> None:
        handle, self._state.observer = self._state.observer, None
        await self._observer.stop(handle)

    async def _resume_processes(self) -> None:
        if not self._state.processes_halted:
            return
        logger.info("Resuming user processes")
        self._session.resumed = self._freezer.resume(self._config.halt_users)
        self._state.processes_halted = False

    async def _resume_services(self) -> None:
        if not self._state.services_stop_attempted:
            return
        if self._config.halt_services:
            logger.info("Starting services: %s", " ".join(self._config.halt_services))
        report = await self._services.start(self._config.halt_services)
        self._session.service_reports.append(report)
        self._state.services_stop_attempted = False

    async def _mark_completed(self) -> None:
        if self._state.sync_succeeded and self._target is not None:
            self._target.mark_completed()
