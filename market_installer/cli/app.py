"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from market_installer import __version__
from market_installer.core.install_manager import InstallManager
from market_installer.exceptions import (
    ConfigurationError,
    JobNotFoundError,
    NotInstalledError,
)
from market_installer.models.config import InstallerConfig
from market_installer.models.job import JobStatus, JobView
from market_installer.storage.config_manager import ConfigManager
from market_installer.storage.job_store import JobStore
from market_installer.storage.lock_manager import LockManager
from market_installer.storage.registry import Registry
from market_installer.utils.path import validate_app_id

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_entry_panel,
    print_job_panel,
    print_locks_table,
    print_registry_table,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("market_installer")
logging.getLogger("market_installer.events").setLevel("WARNING")

app = typer.Typer(
    name="market-installer",
    help=(
        "Install, update and remove marketplace applications safely. Use"
        " 'market-installer <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "market-installer"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"

POLL_INTERVAL = 0.1


def _load_config(cli_options: dict | None = None) -> InstallerConfig:
    return ConfigManager(CONFIG_FILE).load_config(cli_options)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-v for job events, -vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the effective configuration."
    ),
):
    """Marketplace Installer CLI"""
    if version:
        console.print(
            f"[bold]market-installer[/bold] version [cyan]{__version__}[/cyan]"
        )
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("market_installer").setLevel(log_level)
    logging.getLogger("market_installer.events").setLevel(
        log_level if verbose >= 1 else "WARNING"
    )

    if show_config:
        try:
            settings = ConfigManager(CONFIG_FILE).get_effective_settings()
        except ConfigurationError as e:
            console.print(format_error_with_suggestions(e))
            raise typer.Exit(code=1) from e
        print_config(CONFIG_FILE if CONFIG_FILE.is_file() else None, settings)
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    root: Path | None = typer.Option(
        None, "--root", "-r", help="Marketplace root directory to manage."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration file."
    ),
):
    """Write a configuration file holding every setting."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {}
    if root is not None:
        settings["marketplace_root"] = str(root.expanduser())
    ConfigManager(CONFIG_FILE).save_new_config(settings)
    console.print(f"[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready! Try: [cyan]market-installer install <APP_ID> <URL>[/cyan]")


async def _follow_job(manager: InstallManager, job_id: str, quiet: bool) -> JobView:
    """Renders a job's progress until it finishes; Ctrl+C cancels the job."""
    async with ProgressManager(console=console, quiet=quiet) as progress:
        try:
            while True:
                view = manager.poll(job_id)
                progress.update(view)
                if view.is_terminal:
                    break
                try:
                    view = await asyncio.wait_for(
                        manager.wait(job_id), timeout=POLL_INTERVAL
                    )
                    break
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:
            console.print("\n[yellow]⚠️  Cancelling job...[/yellow]")
            await manager.cancel(job_id)
            view = await manager.wait(job_id)
        progress.update(view)
    return await manager.wait(job_id)


def _report(view: JobView) -> None:
    if view.status is JobStatus.SUCCEEDED:
        version = f"@{view.installed_version}" if view.installed_version else ""
        console.print(
            f"[bold green]✓ {view.kind.value} of {view.app_id}{version} "
            "succeeded.[/bold green]"
        )
        return
    print_job_panel(view)
    raise typer.Exit(code=1)


def _run_job_command(start, quiet: bool = False) -> JobView:
    """Runs a manager-backed job to completion in a fresh event loop."""
    config = _load_config()

    async def _run_async() -> JobView:
        manager = InstallManager(config)
        try:
            await manager.start(maintenance=False)
            job_id = await start(manager)
            console.print(f"[dim]Job {job_id}[/dim]")
            return await _follow_job(manager, job_id, quiet)
        finally:
            await manager.close()

    return asyncio.run(_run_async())


@app.command()
def install(
    app_id: str = typer.Argument(..., help="Identifier of the application."),
    url: str = typer.Argument(..., help="http(s) URL of the package archive."),
    sha256: str | None = typer.Option(
        None, "--sha256", help="Expected SHA-256 of the package archive."
    ),
    update: bool = typer.Option(
        False, "--update", "-u", help="Replace an already installed version."
    ),
    no_progress: bool = typer.Option(
        False, "--no-progress", help="Do not render a progress bar."
    ),
):
    """Download, verify and install an application."""
    if update:
        view = _run_job_command(
            lambda manager: manager.start_update(app_id, url, sha256), no_progress
        )
    else:
        view = _run_job_command(
            lambda manager: manager.start_install(app_id, url, sha256), no_progress
        )
    _report(view)


@app.command()
def uninstall(
    app_id: str = typer.Argument(..., help="Identifier of the application."),
    force: bool = typer.Option(
        False, "--force", "-f", help="Bypass the confirmation prompt."
    ),
):
    """Remove an installed application."""
    if not force and not typer.confirm(f"Remove '{app_id}' from the registry?"):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()
    view = _run_job_command(lambda manager: manager.start_uninstall(app_id), True)
    _report(view)


@app.command(name="list")
def list_command():
    """List installed applications."""
    config = _load_config()
    entries = asyncio.run(Registry(config.apps_dir).list_entries())
    print_registry_table(entries)


@app.command()
def info(app_id: str = typer.Argument(..., help="Identifier of the application.")):
    """Show details of an installed application."""
    validate_app_id(app_id)
    config = _load_config()
    entry = asyncio.run(Registry(config.apps_dir).get(app_id))
    if entry is None:
        raise NotInstalledError(f"App '{app_id}' is not installed.")
    print_entry_panel(entry)


@app.command()
def status(job_id: str = typer.Argument(..., help="Identifier of a job.")):
    """Show the status of a job, including jobs of other processes."""
    config = _load_config()
    view = JobStore(config.jobs_dir).get(job_id)
    if view is None:
        raise JobNotFoundError(f"Unknown job: {job_id}")
    print_job_panel(view)


@app.command()
def locks():
    """Show application locks currently held."""
    config = _load_config()
    print_locks_table(LockManager(config.locks_dir).list_locks())


@app.command()
def sweep(
    grace: float | None = typer.Option(
        None,
        "--grace",
        help="Only remove staging trees older than this many seconds.",
    ),
):
    """Recover interrupted jobs and remove orphaned staging trees."""
    config = _load_config({"staging_grace_seconds": grace})

    async def _sweep_async():
        manager = InstallManager(config)
        try:
            interrupted = await manager.recover_interrupted()
            removed = await manager.sweep_orphans()
            if manager.store:
                await manager.store.compact(config.job_retention_seconds)
            return interrupted, removed
        finally:
            await manager.close()

    interrupted, removed = asyncio.run(_sweep_async())

    for view in interrupted:
        console.print(f"[yellow]Marked interrupted job {view.job_id} as failed.[/yellow]")
    for path in removed:
        console.print(f"[dim]Removed {path}[/dim]")
    console.print(
        f"[green]✓ Sweep complete: {len(removed)} orphaned trees removed.[/green]"
    )
