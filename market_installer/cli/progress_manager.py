"""
Manages a Rich progress display for jobs the command line is waiting on.
"""

import asyncio
import logging

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from market_installer.models.job import JobStatus, JobView

log = logging.getLogger("market_installer")

STATUS_STYLES = {
    JobStatus.QUEUED: "dim",
    JobStatus.LOCKING: "yellow",
    JobStatus.DOWNLOADING: "cyan",
    JobStatus.STAGING: "blue",
    JobStatus.COMMITTING: "magenta",
    JobStatus.SUCCEEDED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "yellow",
}


def describe(view: JobView) -> str:
    style = STATUS_STYLES.get(view.status, "white")
    return (
        f"{view.kind.value} [bold]{view.app_id}[/bold] "
        f"[{style}]{view.status.value}[/{style}]"
    )


class ProgressManager:
    """Shows one progress bar per job, fed by polled job snapshots."""

    def __init__(self, console: Console, quiet: bool = False):
        self.console = console
        self.quiet = quiet
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            DownloadColumn(),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=console,
            transient=False,
        )
        self._tasks: dict[str, TaskID] = {}

    def track(self, view: JobView) -> None:
        if self.quiet or view.job_id in self._tasks:
            return
        self._tasks[view.job_id] = self.progress.add_task(
            describe(view), total=view.total_bytes, start=True
        )

    def update(self, view: JobView) -> None:
        if self.quiet:
            return
        task_id = self._tasks.get(view.job_id)
        if task_id is None:
            self.track(view)
            task_id = self._tasks[view.job_id]
        total = view.total_bytes
        completed = view.bytes_downloaded
        if view.status is JobStatus.SUCCEEDED and total is None:
            total = completed or 1
            completed = total
        self.progress.update(
            task_id, description=describe(view), total=total, completed=completed
        )

    async def __aenter__(self):
        if not self.quiet:
            self.progress.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if not self.quiet:
            await asyncio.sleep(0.1)
            self.progress.stop()
