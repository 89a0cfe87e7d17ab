"""CLI entry point for rbak using Typer."""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
import sys
from importlib.metadata import PackageNotFoundError, version
from importlib.resources import files
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.text import Text

from rbak.config import Configuration, ConfigurationError
from rbak.logger import get_latest_log_file, get_logs_directory
from rbak.models import (
    BackupAbortedError,
    ExitCode,
    PreflightError,
    RunLockedError,
    SyncError,
    TargetMissingError,
)
from rbak.orchestrator import Orchestrator

# Signals that interrupt a run; each leads to a full resume before exit.
# SIGHUP arrives when the operator's terminal or ssh session goes away.
INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

app = typer.Typer(
    name="rbak",
    help="Back up the running system with rsync while user processes and services are paused",
    add_completion=False,
)

console = Console()


def _version_callback(value: bool) -> None:
    """Print version and exit if --version flag is provided."""
    if value:
        try:
            console.print(f"rbak {version('rbak')}")
        except PackageNotFoundError:
            console.print("[bold red]Error:[/bold red] Cannot determine rbak version")
            sys.exit(1)
        raise typer.Exit()


def _load_configuration(config_path: Path) -> Configuration:
    """Load configuration, printing errors and exiting with code 1 on failure."""
    try:
        return Configuration.from_yaml(config_path)
    except ConfigurationError as e:
        console.print("[bold red]Configuration error:[/bold red]")
        for error in e.errors:
            console.print(f"  {error.path}: {error.message}")
        sys.exit(ExitCode.UNCONFIGURED)


def _init_config(config_path: Path, force: bool) -> None:
    """Write the packaged default configuration file."""
    if config_path.exists() and not force:
        console.print(f"[yellow]{config_path} exists, not overwriting (use --force)[/yellow]")
        raise typer.Exit(1)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    default_config = files("rbak").joinpath("default-config.yaml").read_text()
    config_path.write_text(default_config)

    console.print(f"[green]Created configuration file:[/green] {config_path}")
    console.print("\n[dim]Edit it before the first run:[/dim]")
    console.print("[dim]  - base_path, halt_users and halt_services (must match your system)[/dim]")
    console.print("[dim]  - configuration_affirmed (set to true when done)[/dim]")


LEVEL_STYLES = {
    "DEBUG": "dim",
    "FULL": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold red",
}

# Keys rendered in fixed columns; everything else is shown as key=value
_LOG_COLUMNS = frozenset({"timestamp", "level", "logger", "hostname", "event"})


def _render_log_entry(entry: dict[str, object]) -> Text:
    """Render one JSON log record as a console line."""
    timestamp = str(entry.get("timestamp", ""))
    _, _, clock = timestamp.partition("T")
    level = str(entry.get("level", "info")).upper()

    text = Text()
    text.append(f"{clock.split('.')[0].rstrip('Z') or timestamp} ", style="dim")
    text.append(f"[{level:8}]", style=LEVEL_STYLES.get(level, "white"))
    text.append(f" [{entry.get('logger', '')}]", style="blue")
    text.append(f" {entry.get('event', '')}")

    extra = " ".join(f"{key}={value}" for key, value in entry.items() if key not in _LOG_COLUMNS)
    if extra:
        text.append(f" {extra}", style="dim")
    return text


def _display_log_file(log_file: Path) -> None:
    """Print a JSON-lines log file; lines that are not JSON are shown raw."""
    console.print(f"\n[bold]Log file:[/bold] {log_file}\n")
    try:
        with log_file.open(encoding="utf-8") as f:
            for number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    entry = None
                if not isinstance(entry, dict):
                    console.print(f"[dim]Line {number}:[/dim] {line.strip()}")
                    continue
                console.print(_render_log_entry(entry))
    except OSError as e:
        console.print(f"[bold red]Cannot read {log_file}:[/bold red] {e}")
        sys.exit(1)


def _show_last_log() -> None:
    log_file = get_latest_log_file()
    if log_file is None:
        console.print("[yellow]No log files found[/yellow]")
        console.print(f"Logs directory: {get_logs_directory()}")
        sys.exit(1)
    _display_log_file(log_file)


@app.command()
def main(
    suffix: Annotated[
        str | None,
        typer.Argument(help="Suffix of the backup directory: <base_path>.<suffix>. Omit to list backups."),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to config file (default: $RBAK_CONFIG or /etc/rbak/config.yaml)",
        ),
    ] = None,
    init_config: Annotated[
        bool,
        typer.Option("--init-config", help="Write the default configuration file and exit"),
    ] = False,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="With --init-config: overwrite an existing file"),
    ] = False,
    show_last_log: Annotated[
        bool,
        typer.Option("--show-last-log", help="Display the most recent log file and exit"),
    ] = False,
    version_flag: Annotated[
        bool,
        typer.Option("--version", "-v", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
) -> None:
    """Pause user processes and services, copy / to <base_path>.<suffix>, resume.

    Must be run as root from a text console, not from a terminal inside the
    desktop session whose processes are paused.
    """
    config_path = config or Configuration.get_default_config_path()

    if init_config:
        _init_config(config_path, force)
        return

    if show_last_log:
        _show_last_log()
        return

    cfg = _load_configuration(config_path)
    exit_code = _run_backup(suffix, cfg)
    sys.exit(exit_code)


def _run_backup(suffix: str | None, cfg: Configuration) -> int:
    """Run the backup with asyncio and interrupt handling.

    Returns:
        Process exit code (see ExitCode)
    """
    return asyncio.run(_async_run_backup(suffix, cfg))


async def _async_run_backup(suffix: str | None, cfg: Configuration) -> int:
    """Async implementation of the backup run with interrupt handling.

    Interrupt behavior:
    - First SIGINT/SIGTERM/SIGHUP: cancel the run; the orchestrator resumes
      everything it paused before the task finishes
    - Further signals while cleanup runs: reported and ignored
    """
    loop = asyncio.get_running_loop()
    orchestrator = Orchestrator(cfg, suffix, console=console)
    main_task: asyncio.Task[object] | None = None

    def notify(message: str) -> None:
        # The terminal may already be gone (SIGHUP)
        with contextlib.suppress(OSError):
            console.print(message)

    def interrupt_handler(signame: str) -> None:
        if main_task is None or main_task.done():
            return
        if orchestrator.cleanup_in_progress or main_task.cancelling():
            notify("[yellow]Cleanup in progress, resuming processes and services. Please wait.[/yellow]")
            return
        notify(f"\n[yellow]{signame} received, cleaning up...[/yellow]")
        main_task.cancel()

    # Installed before anything can be paused, removed after cleanup finished
    for sig in INTERRUPT_SIGNALS:
        loop.add_signal_handler(sig, interrupt_handler, sig.name)

    try:
        main_task = asyncio.create_task(orchestrator.run())
        try:
            session = await main_task
            return int(session.exit_code)

        except asyncio.CancelledError:
            console.print("[yellow]Backup interrupted by user[/yellow]")
            return int(ExitCode.INTERRUPTED)

        except TargetMissingError as e:
            console.print(f"[bold red]Error:[/bold red] {e}")
            console.print(f"mkdir -p {e.path}")
            return int(e.exit_code)

        except PreflightError as e:
            console.print(f"[bold red]Error:[/bold red] {e}")
            return int(e.exit_code)

        except RunLockedError as e:
            console.print(f"[bold red]Error:[/bold red] {e}")
            return int(ExitCode.ALREADY_RUNNING)

        except BackupAbortedError as e:
            console.print(f"[yellow]{e}[/yellow]")
            return int(ExitCode.ABORTED)

        except SyncError as e:
            console.print(f"\n[bold red]Backup failed:[/bold red] {e}")
            return int(ExitCode.SYNC_FAILED)

        except Exception as e:
            console.print(f"\n[bold red]Backup failed:[/bold red] {e}")
            return int(ExitCode.ERROR)

    finally:
        for sig in INTERRUPT_SIGNALS:
            loop.remove_signal_handler(sig)


if __name__ == "__main__":
    app()
