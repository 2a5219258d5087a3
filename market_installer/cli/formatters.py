"""
Functions for formatting and displaying data in the console using Rich.
"""

import time
from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from market_installer.models.job import JobStatus, JobView
from market_installer.models.manifest import RegistryEntry
from market_installer.storage.lock_manager import LockRecord
from market_installer.utils.formatting import format_duration, format_size, format_timestamp

from .progress_manager import STATUS_STYLES


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your config.ini and MARKETPLACE_* variables.",
            "• Run `market-installer init --force` to write a fresh configuration.",
        ],
        "InvalidRequestError": [
            "• App ids may only contain letters, digits, '.', '_' and '-'.",
            "• Source URLs must start with http:// or https://.",
        ],
        "LockBusyError": [
            "• Another install or removal of this app is in progress.",
            "• Run `market-installer locks` to see who holds the lock.",
            "• Try again once the other job has finished.",
        ],
        "ArtifactTooLargeError": [
            "• The package exceeds the configured size ceiling.",
            "• Raise max_artifact_bytes if the package is trusted.",
        ],
        "IntegrityFailureError": [
            "• The package is corrupt, unsafe or its checksum does not match.",
            "• Verify the --sha256 value and the package source.",
        ],
        "NetworkFailureError": [
            "• The package could not be downloaded.",
            "• Check your internet connection and the source URL.",
            "• Please try again in a few minutes.",
        ],
        "MoveFailedError": [
            "• The registry directory could not be written.",
            "• Check free disk space and permissions of the marketplace root.",
        ],
        "JobNotFoundError": [
            "• The job id is unknown or has expired from the job log.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    suggestion_text = Text("\n".join(suggestions))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(suggestion_text)

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path | None, config_data: dict[str, Any]):
    """Displays the effective configuration."""
    console = Console()
    content = ""
    for key, value in config_data.items():
        if key.endswith("_bytes") and isinstance(value, int):
            value = f"{value} ({format_size(value)})"
        content += f"{key} = {value}\n"

    source = f"[dim]{config_path}[/dim]" if config_path else "[dim]defaults[/dim]"
    console.print(
        Panel(content.strip(), title=f"Configuration ({source})", border_style="cyan")
    )


def print_registry_table(entries: list[RegistryEntry]):
    """Displays installed applications."""
    console = Console()
    if not entries:
        console.print("[yellow]No applications installed.[/yellow]")
        return

    table = Table(title="Installed Applications", box=box.ROUNDED)
    table.add_column("App", style="cyan")
    table.add_column("Name")
    table.add_column("Version", style="green")
    table.add_column("Installed", style="dim")
    for entry in entries:
        table.add_row(
            entry.app_id,
            entry.name or "-",
            entry.version,
            format_timestamp(entry.installed_at),
        )
    console.print(table)


def print_entry_panel(entry: RegistryEntry):
    """Displays the details of one installed application."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    table.add_row("App:", entry.app_id)
    table.add_row("Name:", entry.name or "-")
    table.add_row("Version:", f"[green]{entry.version}[/green]")
    table.add_row("Installed:", format_timestamp(entry.installed_at))
    table.add_row("Path:", f"[dim]{entry.path}[/dim]")
    if entry.content_hash:
        table.add_row("SHA-256:", f"[dim]{entry.content_hash}[/dim]")
    console.print(Panel(table, title=f"[bold]{entry.app_id}[/bold]", border_style="cyan"))


def print_job_panel(view: JobView):
    """Displays the status of one job."""
    console = Console()
    style = STATUS_STYLES.get(view.status, "white")
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()
    table.add_row("Job:", view.job_id)
    table.add_row("Kind:", view.kind.value)
    table.add_row("App:", view.app_id)
    table.add_row("Status:", f"[{style}]{view.status.value}[/{style}]")
    if view.source_url:
        table.add_row("Source:", f"[dim]{view.source_url}[/dim]")
    if view.bytes_downloaded:
        total = format_size(view.total_bytes) if view.total_bytes else "?"
        table.add_row("Downloaded:", f"{format_size(view.bytes_downloaded)} / {total}")
    if view.installed_version:
        table.add_row("Version:", view.installed_version)
    if view.error:
        table.add_row("Error:", f"[red]{view.error.kind.value}[/red]: {view.error.message}")
    table.add_row("Created:", format_timestamp(view.created_at))
    table.add_row("Updated:", format_timestamp(view.updated_at))
    table.add_row("History:", " → ".join(view.history))

    border = "green" if view.status is JobStatus.SUCCEEDED else style
    console.print(Panel(table, title="[bold]Job Status[/bold]", border_style=border))


def print_locks_table(records: list[LockRecord]):
    """Displays the lock markers currently on disk."""
    console = Console()
    if not records:
        console.print("[green]No application locks are held.[/green]")
        return

    now = time.time()
    table = Table(title="Application Locks", box=box.ROUNDED)
    table.add_column("Key", style="cyan")
    table.add_column("Holder (job)")
    table.add_column("PID", justify="right")
    table.add_column("Host")
    table.add_column("Lease", justify="right")
    for record in records:
        if record.is_expired(now):
            lease = "[red]expired[/red]"
        else:
            lease = f"[green]{format_duration(record.expires_at - now)}[/green]"
        table.add_row(record.key, record.holder, str(record.pid), record.hostname, lease)
    console.print(table)
