"""
An append-only JSONL log of job snapshots, so job state can be inspected
after the owning process exits and recovered after a crash.

Every writer, whether appending a snapshot or compacting the log, holds the
``jobs.jsonl.guard`` file while it touches the log. The guard is created with
``O_EXCL`` so writers in other processes sharing the directory are excluded
too.
"""

import asyncio
import json
import logging
import os
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiofiles

from market_installer.models.job import JobView

log = logging.getLogger(__name__)

GUARD_SUFFIX = ".guard"


class JobStore:
    """Persists every job snapshot as one JSON line."""

    FILE_NAME = "jobs.jsonl"

    def __init__(
        self,
        jobs_dir: Path,
        guard_stale_seconds: float = 30.0,
        poll_interval: float = 0.01,
    ):
        self.jobs_dir = Path(jobs_dir)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self.path = self.jobs_dir / self.FILE_NAME
        self.guard_path = self.jobs_dir / f"{self.FILE_NAME}{GUARD_SUFFIX}"
        self.guard_stale_seconds = guard_stale_seconds
        self.poll_interval = poll_interval
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        """Holds the in-process write lock and the cross-process guard file."""
        async with self._write_lock:
            while not self._take_guard():
                await asyncio.sleep(self.poll_interval)
            try:
                yield
            finally:
                self.guard_path.unlink(missing_ok=True)

    def _take_guard(self) -> bool:
        try:
            fd = os.open(self.guard_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            try:
                age = time.time() - self.guard_path.stat().st_mtime
            except FileNotFoundError:
                return False
            if age > self.guard_stale_seconds:
                log.warning(
                    f"[yellow]Removing job log guard left behind {age:.0f}s ago.[/yellow]"
                )
                self.guard_path.unlink(missing_ok=True)
            return False
        os.close(fd)
        return True

    async def append(self, view: JobView) -> None:
        line = json.dumps(view.to_dict()) + "\n"
        try:
            async with self._exclusive():
                async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                    await f.write(line)
        except OSError as e:
            log.warning(f"Could not persist job {view.job_id}: {e}")

    def load_latest(self) -> dict[str, JobView]:
        """Returns the most recent snapshot of every job in the log."""
        latest: dict[str, JobView] = {}
        if not self.path.is_file():
            return latest
        with open(self.path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    view = JobView.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    log.debug(f"Skipping malformed job log line {line_number}: {e}")
                    continue
                latest[view.job_id] = view
        return latest

    def get(self, job_id: str) -> JobView | None:
        return self.load_latest().get(job_id)

    async def compact(self, retention_seconds: float) -> int:
        """
        Rewrites the log keeping only the newest snapshot of each job still
        inside the retention window. Returns the number of jobs dropped.

        Appends made while the rewrite runs wait for it, so none is lost.
        """
        async with self._exclusive():
            return await asyncio.to_thread(self._rewrite, retention_seconds)

    def _rewrite(self, retention_seconds: float) -> int:
        latest = self.load_latest()
        now = datetime.now(timezone.utc)
        kept = []
        for view in latest.values():
            try:
                updated = datetime.fromisoformat(view.updated_at)
            except ValueError:
                updated = now
            if not view.is_terminal or (now - updated).total_seconds() <= retention_seconds:
                kept.append(view)

        tmp_path = self.path.with_suffix(".jsonl.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for view in kept:
                f.write(json.dumps(view.to_dict()) + "\n")
        os.replace(tmp_path, self.path)
        dropped = len(latest) - len(kept)
        if dropped:
            log.debug(f"Job log compacted: dropped {dropped} expired jobs.")
        return dropped
