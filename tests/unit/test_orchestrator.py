"""Unit tests for the backup orchestrator.

Collaborators are mocks that record the order of calls, so each test can
check what was paused and that all of it was resumed.
"""

from __future__ import annotations

import asyncio
import io
import os
from dataclasses import replace
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from rich.console import Console

from rbak.config import Configuration
from rbak.lock import RunLock
from rbak.models import (
    BackupAbortedError,
    BackupPhase,
    ExitCode,
    RunLockedError,
    RunStatus,
    ServiceReport,
    SyncError,
    UnconfiguredError,
)
from rbak.orchestrator import Orchestrator


class Harness:
    """Mock collaborators for one Orchestrator, recording calls in order."""

    def __init__(self, config: Configuration, tmp_path: Path, mock_executor: MagicMock) -> None:
        self.config = config
        self.calls: list[str] = []
        self.lock_path = tmp_path / "run" / "rbak.lock"
        self.logs_dir = tmp_path / "logs"
        self.executor = mock_executor
        self.console = Console(file=io.StringIO(), width=200)

        self.freezer = MagicMock()
        self.freezer.freeze.side_effect = self._record("freeze", {"alice": 3, "bob": 1})
        self.freezer.resume.side_effect = self._record("resume", {"alice": 3, "bob": 1})

        self.services = MagicMock()
        self.services.stop = AsyncMock(side_effect=self._record("stop", ServiceReport("stop", True)))
        self.services.start = AsyncMock(side_effect=self._record("start", ServiceReport("start", True)))

        self.observer_handle = MagicMock(name="observer_handle")
        self.observer = MagicMock()
        self.observer.enabled = config.use_change_observer
        self.observer.build_command.return_value = ["inotifywait", "/"]
        self.observer.spawn = AsyncMock(
            side_effect=self._record("spawn", self.observer_handle if config.use_change_observer else None)
        )
        self.observer.stop = AsyncMock(side_effect=self._record("observer_stop", None))

        self.sync_engine = MagicMock()
        self.sync_engine.build_command.return_value = ["rsync", "/", "/target"]
        self.sync_engine.run = AsyncMock(side_effect=self._record("sync", 0))

        self.confirm = AsyncMock(side_effect=self._record("confirm", True))

    def _record(self, name: str, result: Any):
        def side_effect(*args: Any, **kwargs: Any) -> Any:
            self.calls.append(name)
            return result

        return side_effect

    def build(self, suffix: str | None = "1", **overrides: Any) -> Orchestrator:
        kwargs: dict[str, Any] = {
            "console": self.console,
            "executor": self.executor,
            "freezer": self.freezer,
            "services": self.services,
            "observer": self.observer,
            "sync_engine": self.sync_engine,
            "lock": RunLock(self.lock_path),
            "confirm": self.confirm,
            "logs_dir": self.logs_dir,
            "environ": {},
            "euid": 0,
        }
        kwargs.update(overrides)
        return Orchestrator(self.config, suffix, **kwargs)


@pytest.fixture
def harness(affirmed_config: Configuration, tmp_path: Path, mock_executor: MagicMock) -> Harness:
    return Harness(affirmed_config, tmp_path, mock_executor)


def make_harness(config: Configuration, tmp_path: Path, mock_executor: MagicMock) -> Harness:
    return Harness(config, tmp_path, mock_executor)


async def block_forever(*args: Any, **kwargs: Any) -> None:
    await asyncio.Event().wait()


async def run_until(orchestrator: Orchestrator, phase: BackupPhase) -> asyncio.Task[Any]:
    """Start a run and return once it reached phase."""
    task = asyncio.create_task(orchestrator.run())
    for _ in range(200):
        if orchestrator.session.phase == phase or task.done():
            break
        await asyncio.sleep(0)
    assert orchestrator.session.phase == phase
    return task


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_pauses_copies_and_resumes_in_order(self, harness: Harness, target_dir: Path) -> None:
        os.utime(target_dir, (0, 0))
        orchestrator = harness.build()

        session = await orchestrator.run()

        assert harness.calls == ["spawn", "stop", "freeze", "sync", "observer_stop", "resume", "start"]
        assert session.status == RunStatus.COMPLETED
        assert session.exit_code == ExitCode.OK
        assert session.phases == [
            BackupPhase.INIT,
            BackupPhase.VALIDATED,
            BackupPhase.OBSERVER_ARMED,
            BackupPhase.SERVICES_PAUSED,
            BackupPhase.PROCESSES_PAUSED,
            BackupPhase.SYNCING,
            BackupPhase.CLEANING_UP,
            BackupPhase.DONE,
        ]
        assert session.frozen == {"alice": 3, "bob": 1}
        assert session.resumed == {"alice": 3, "bob": 1}
        assert target_dir.stat().st_mtime > 0
        assert orchestrator.state.fully_resumed
        assert orchestrator.state.cleaned_up

    @pytest.mark.asyncio
    async def test_same_sets_are_paused_and_resumed(self, harness: Harness, target_dir: Path) -> None:
        await harness.build().run()

        harness.freezer.freeze.assert_called_once_with(("alice", "bob"))
        harness.freezer.resume.assert_called_once_with(("alice", "bob"))
        harness.services.stop.assert_awaited_once_with(("postgresql.service", "docker.service"))
        harness.services.start.assert_awaited_once_with(("postgresql.service", "docker.service"))
        harness.sync_engine.run.assert_awaited_once_with(target_dir)

    @pytest.mark.asyncio
    async def test_writes_json_log_file(self, harness: Harness, target_dir: Path) -> None:
        session = await harness.build().run()

        assert session.log_file is not None
        log_file = Path(session.log_file)
        assert log_file.parent == harness.logs_dir
        assert log_file.name.startswith("backup-")
        assert session.run_id in log_file.name
        assert "completed" in log_file.read_text()

    @pytest.mark.asyncio
    async def test_lock_released_and_second_run_works(self, harness: Harness, target_dir: Path) -> None:
        first = await harness.build().run()
        second = await harness.build().run()

        assert first.status == second.status == RunStatus.COMPLETED
        assert harness.calls.count("sync") == 2

    @pytest.mark.asyncio
    async def test_no_confirmation_without_observer(self, harness: Harness, target_dir: Path) -> None:
        await harness.build().run()
        harness.confirm.assert_not_awaited()


class TestObserverAndConfirmation:
    @pytest.mark.asyncio
    async def test_observer_gates_pause_on_confirmation(
        self, affirmed_config: Configuration, tmp_path: Path, mock_executor: MagicMock, target_dir: Path
    ) -> None:
        harness = make_harness(replace(affirmed_config, use_change_observer=True), tmp_path, mock_executor)

        await harness.build().run()

        assert harness.calls[:3] == ["spawn", "confirm", "stop"]
        harness.observer.spawn.assert_awaited_once_with(extra_exclude=[str(target_dir)])
        harness.observer.stop.assert_awaited_once_with(harness.observer_handle)

    @pytest.mark.asyncio
    async def test_confirm_before_pause_without_observer(
        self, affirmed_config: Configuration, tmp_path: Path, mock_executor: MagicMock, target_dir: Path
    ) -> None:
        harness = make_harness(replace(affirmed_config, confirm_before_pause=True), tmp_path, mock_executor)

        await harness.build().run()

        harness.confirm.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_operator_decline_pauses_nothing(
        self, affirmed_config: Configuration, tmp_path: Path, mock_executor: MagicMock, target_dir: Path
    ) -> None:
        os.utime(target_dir, (0, 0))
        harness = make_harness(replace(affirmed_config, use_change_observer=True), tmp_path, mock_executor)
        harness.confirm.side_effect = None
        harness.confirm.return_value = False
        orchestrator = harness.build()

        with pytest.raises(BackupAbortedError):
            await orchestrator.run()

        assert harness.calls == ["spawn", "observer_stop"]
        harness.services.start.assert_not_awaited()
        harness.freezer.resume.assert_not_called()
        assert orchestrator.session.exit_code == ExitCode.ABORTED
        assert orchestrator.session.phase == BackupPhase.ABORTED
        assert target_dir.stat().st_mtime == 0


class TestRejectedRuns:
    @pytest.mark.asyncio
    async def test_gate_failure_touches_nothing(
        self, affirmed_config: Configuration, tmp_path: Path, mock_executor: MagicMock, target_dir: Path
    ) -> None:
        harness = make_harness(replace(affirmed_config, configuration_affirmed=False), tmp_path, mock_executor)
        orchestrator = harness.build()

        with pytest.raises(UnconfiguredError):
            await orchestrator.run()

        assert harness.calls == []
        assert not harness.logs_dir.exists()
        assert not harness.lock_path.exists()
        assert orchestrator.session.status == RunStatus.REJECTED
        assert orchestrator.session.phases == [BackupPhase.INIT, BackupPhase.DONE]

    @pytest.mark.asyncio
    async def test_no_suffix_shows_usage(self, harness: Harness, target_dir: Path) -> None:
        orchestrator = harness.build(suffix=None)

        session = await orchestrator.run()

        assert session.status == RunStatus.USAGE
        assert session.exit_code == ExitCode.OK
        assert harness.calls == []
        assert str(target_dir) in harness.console.file.getvalue()  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_lock_held_by_other_run(self, harness: Harness, target_dir: Path) -> None:
        other = RunLock(harness.lock_path)
        assert other.acquire("otherhost:99:feedbeef")
        orchestrator = harness.build()

        try:
            with pytest.raises(RunLockedError) as exc_info:
                await orchestrator.run()
        finally:
            other.release()

        assert exc_info.value.holder == "otherhost:99:feedbeef"
        assert harness.calls == []
        assert not harness.logs_dir.exists()
        assert orchestrator.session.exit_code == ExitCode.ALREADY_RUNNING


class TestFailureAndInterrupt:
    @pytest.mark.asyncio
    async def test_sync_failure_still_resumes_everything(self, harness: Harness, target_dir: Path) -> None:
        os.utime(target_dir, (0, 0))
        harness.sync_engine.run.side_effect = SyncError(23, "rsync exited with status 23")
        orchestrator = harness.build()

        with pytest.raises(SyncError):
            await orchestrator.run()

        assert harness.calls == ["spawn", "stop", "freeze", "observer_stop", "resume", "start"]
        assert orchestrator.session.status == RunStatus.FAILED
        assert orchestrator.session.exit_code == ExitCode.SYNC_FAILED
        assert orchestrator.state.fully_resumed
        assert target_dir.stat().st_mtime == 0
        lock = RunLock(harness.lock_path)
        assert lock.acquire()
        lock.release()

    @pytest.mark.asyncio
    async def test_interrupt_during_sync_resumes_everything(self, harness: Harness, target_dir: Path) -> None:
        os.utime(target_dir, (0, 0))
        harness.sync_engine.run.side_effect = block_forever
        orchestrator = harness.build()

        task = await run_until(orchestrator, BackupPhase.SYNCING)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        harness.freezer.resume.assert_called_once_with(("alice", "bob"))
        harness.services.start.assert_awaited_once_with(("postgresql.service", "docker.service"))
        harness.executor.terminate_all_processes.assert_awaited_once()
        assert orchestrator.session.status == RunStatus.INTERRUPTED
        assert orchestrator.session.exit_code == ExitCode.INTERRUPTED
        assert orchestrator.session.phase == BackupPhase.ABORTED
        assert orchestrator.state.fully_resumed
        assert target_dir.stat().st_mtime == 0

    @pytest.mark.asyncio
    async def test_interrupt_while_stopping_services_starts_full_set(
        self, harness: Harness, target_dir: Path
    ) -> None:
        harness.services.stop.side_effect = block_forever
        orchestrator = harness.build()

        task = await run_until(orchestrator, BackupPhase.OBSERVER_ARMED)
        for _ in range(10):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        harness.services.start.assert_awaited_once_with(("postgresql.service", "docker.service"))
        harness.freezer.freeze.assert_not_called()
        harness.freezer.resume.assert_not_called()
        assert orchestrator.state.fully_resumed

    @pytest.mark.asyncio
    async def test_failing_cleanup_step_does_not_skip_the_rest(self, harness: Harness, target_dir: Path) -> None:
        harness.freezer.resume.side_effect = RuntimeError("psutil exploded")
        orchestrator = harness.build()

        await orchestrator.run()

        harness.services.start.assert_awaited_once()
        assert orchestrator.state.cleaned_up

    @pytest.mark.asyncio
    async def test_cleanup_in_progress_while_resuming(self, harness: Harness, target_dir: Path) -> None:
        orchestrator = harness.build()
        seen: list[bool] = []
        harness.services.start.side_effect = lambda names: (
            seen.append(orchestrator.cleanup_in_progress) or ServiceReport("start", True)
        )

        await orchestrator.run()

        assert seen == [True]
        assert not orchestrator.cleanup_in_progress

    @pytest.mark.asyncio
    async def test_cleanup_runs_once(self, harness: Harness, target_dir: Path) -> None:
        orchestrator = harness.build()

        await orchestrator.run()
        await orchestrator._cleanup()

        assert harness.calls.count("resume") == 1
        assert harness.calls.count("start") == 1
