"""
The owned table of installation jobs.

Every write to a job goes through ``JobTracker``, which serializes it with
the job's own lock, logs it and appends the new snapshot to the durable job
log. Readers only ever receive frozen ``JobView`` snapshots.
"""

import asyncio
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from market_installer.exceptions import (
    JobCancelledError,
    JobNotFoundError,
    LockBusyError,
)
from market_installer.models.job import (
    InstallJob,
    JobError,
    JobKind,
    JobStatus,
    JobView,
    mark_interrupted,
)
from market_installer.storage.job_store import JobStore
from market_installer.storage.lock_manager import LockRecord
from market_installer.storage.staging import (
    SIBLING_PREFIXES,
    StagingArea,
    remove_tree,
    tree_age_seconds,
)
from market_installer.utils.path import is_job_id
from market_installer.utils.retry import CancelToken
from market_installer.utils.structured_logger import JobEventLogger

log = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """True if a process with ``pid`` exists on this host."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _sweep_candidates(staging: StagingArea, apps_dir: Path) -> list[tuple[Path, str]]:
    """Pairs every staging tree and hidden registry sibling with its job id."""
    candidates = [(path, path.name) for path in staging.entries()]
    try:
        siblings = list(Path(apps_dir).iterdir())
    except FileNotFoundError:
        siblings = []
    for path in siblings:
        for prefix in SIBLING_PREFIXES:
            if path.name.startswith(prefix):
                candidates.append((path, path.name[len(prefix):]))
    return candidates


@dataclass
class _JobEntry:
    job: InstallJob
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    started_monotonic: float = field(default_factory=time.monotonic)


class JobTracker:
    """
    Creates jobs, applies their transitions and answers questions about them.

    Args:
        store: Durable job log; None keeps jobs in memory only.
        events: Structured event sink for job and lock events.
        instance_id: Identity written into lock markers by this process.
    """

    def __init__(
        self,
        store: JobStore | None = None,
        events: JobEventLogger | None = None,
        instance_id: str | None = None,
    ):
        self.store = store
        self.events = events
        self.instance_id = instance_id or uuid.uuid4().hex
        self.hostname = socket.gethostname()
        self._jobs: dict[str, _JobEntry] = {}
        self._app_holders: dict[str, str] = {}

    async def create(
        self,
        kind: JobKind,
        app_id: str,
        source_url: str | None = None,
        expected_sha256: str | None = None,
    ) -> str:
        """Registers a new queued job and returns its identifier."""
        job = InstallJob(
            job_id=uuid.uuid4().hex,
            kind=kind,
            app_id=app_id,
            source_url=source_url,
            expected_sha256=expected_sha256,
            owner_pid=os.getpid(),
            owner_host=self.hostname,
        )
        self._jobs[job.job_id] = _JobEntry(job=job)
        if self.events:
            self.events.job_created(job.job_id, kind.value, app_id, source_url)
        await self._persist(job.snapshot())
        return job.job_id

    def get(self, job_id: str) -> JobView:
        """
        Returns the current snapshot of a job.

        Jobs that are no longer in memory are looked up in the job log.

        Raises:
            JobNotFoundError: If the job is unknown.
        """
        entry = self._jobs.get(job_id)
        if entry:
            return entry.job.snapshot()
        if self.store:
            view = self.store.get(job_id)
            if view:
                return view
        raise JobNotFoundError(f"Unknown job: {job_id}")

    def jobs(self) -> list[JobView]:
        return [entry.job.snapshot() for entry in self._jobs.values()]

    def cancel_token(self, job_id: str) -> CancelToken:
        return self._entry(job_id).cancel_token

    def is_active(self, job_id: str) -> bool:
        """True if the job is known in memory and not yet terminal."""
        entry = self._jobs.get(job_id)
        return entry is not None and not entry.job.is_terminal

    def holder_of(self, app_id: str) -> str | None:
        """The job currently past ``locking`` for ``app_id``, if any."""
        return self._app_holders.get(app_id)

    async def cancel(self, job_id: str) -> bool:
        """
        Requests cancellation. Returns False if the job had already finished.

        A queued job is cancelled at once; a running one unwinds at its next
        checkpoint.
        """
        entry = self._entry(job_id)
        async with entry.lock:
            if entry.job.is_terminal:
                return False
            entry.cancel_token.cancel()
            if entry.job.status is not JobStatus.QUEUED:
                log.debug(f"Cancellation requested for running job {job_id}")
                return True
            self._apply(entry, JobStatus.CANCELLED)
            view = entry.job.snapshot()
        entry.done.set()
        await self._persist(view)
        return True

    async def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        staging_path: Path | None = None,
    ) -> JobView:
        """
        Moves a running job to its next non-terminal status.

        Raises:
            JobCancelledError: If the job was cancelled while queued.
            InvalidTransitionError: If the edge is not allowed.
        """
        entry = self._entry(job_id)
        async with entry.lock:
            if entry.job.status is JobStatus.CANCELLED:
                raise JobCancelledError(f"Job {job_id} was cancelled.")
            self._apply(entry, new_status)
            if staging_path is not None:
                entry.job.staging_path = staging_path
            view = entry.job.snapshot()
        await self._persist(view)
        return view

    def record_progress(
        self, job_id: str, bytes_downloaded: int, total_bytes: int | None
    ) -> None:
        entry = self._jobs.get(job_id)
        if entry and not entry.job.is_terminal:
            entry.job.record_progress(bytes_downloaded, total_bytes)

    def claim_app(self, app_id: str, job_id: str) -> None:
        """
        Records ``job_id`` as the one job past ``locking`` for ``app_id``.

        Raises:
            LockBusyError: If another job already holds the application.
        """
        current = self._app_holders.get(app_id)
        if current and current != job_id:
            raise LockBusyError(f"App '{app_id}' is already being changed by job {current}.")
        self._app_holders[app_id] = job_id

    async def finish(
        self,
        job_id: str,
        status: JobStatus,
        error: JobError | None = None,
        installed_version: str | None = None,
    ) -> JobView:
        """Moves a job to a terminal status and wakes everyone waiting on it."""
        entry = self._entry(job_id)
        job = entry.job
        async with entry.lock:
            if not job.is_terminal:
                self._apply(entry, status, error)
                if installed_version:
                    job.installed_version = installed_version
                persist = True
            else:
                persist = False
            if self._app_holders.get(job.app_id) == job_id:
                del self._app_holders[job.app_id]
            view = job.snapshot()

        if persist:
            await self._persist(view)
            if self.events:
                if status is JobStatus.SUCCEEDED:
                    self.events.job_succeeded(
                        job_id,
                        job.app_id,
                        job.installed_version,
                        time.monotonic() - entry.started_monotonic,
                    )
                elif status is JobStatus.CANCELLED:
                    self.events.job_cancelled(job_id, job.app_id)
                elif error:
                    self.events.job_failed(
                        job_id, job.app_id, error.kind.value, error.message
                    )
        entry.done.set()
        return view

    async def wait(self, job_id: str, timeout: float | None = None) -> JobView:
        """
        Waits until the job is terminal and its resources are released.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        entry = self._jobs.get(job_id)
        if entry is None:
            return self.get(job_id)
        await asyncio.wait_for(entry.done.wait(), timeout=timeout)
        return entry.job.snapshot()

    def holder_liveness(self, record: LockRecord) -> bool | None:
        """
        Answers whether the holder of an expired lease is still running.

        Returns True when alive, False when confirmed dead, None when unknown.
        """
        entry = self._jobs.get(record.holder)
        if entry:
            return not entry.job.is_terminal
        if record.instance_id == self.instance_id:
            # Our own holders are always in the table.
            return False
        if record.hostname == self.hostname:
            if record.pid == os.getpid():
                return None
            return pid_alive(record.pid)
        return None

    async def sweep_orphans(
        self, staging: StagingArea, apps_dir: Path, grace_seconds: float
    ) -> list[Path]:
        """
        Deletes staging directories and registry siblings left by jobs that
        are no longer running and are older than ``grace_seconds``.

        Returns the removed paths. Running it twice removes nothing new.
        """
        candidates = await asyncio.to_thread(_sweep_candidates, staging, apps_dir)
        remote_active = await self._remote_active_jobs()
        removed = []
        for path, job_id in candidates:
            if not is_job_id(job_id) or self.is_active(job_id) or job_id in remote_active:
                continue
            try:
                age = await asyncio.to_thread(tree_age_seconds, path)
            except FileNotFoundError:
                continue
            if age < grace_seconds:
                continue
            try:
                gone = await asyncio.to_thread(remove_tree, path)
            except OSError as e:
                log.warning(f"[yellow]Could not remove orphan '{path}': {e}[/yellow]")
                continue
            if gone:
                removed.append(path)
                if self.events:
                    self.events.orphan_removed(str(path), age)
        if removed:
            log.info(f"Removed {len(removed)} orphaned staging trees.")
        return removed

    def collect_garbage(self, retention_seconds: float) -> int:
        """Drops terminal jobs that finished more than ``retention_seconds`` ago."""
        now = time.monotonic()
        expired = [
            job_id
            for job_id, entry in self._jobs.items()
            if entry.job.is_terminal
            and entry.job.finished_monotonic is not None
            and now - entry.job.finished_monotonic > retention_seconds
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            log.debug(f"Collected {len(expired)} finished jobs.")
        return len(expired)

    async def recover(self) -> list[JobView]:
        """
        Marks jobs left active by a process that has since stopped as failed.

        Returns the jobs that were marked interrupted.
        """
        if not self.store:
            return []
        latest = await asyncio.to_thread(self.store.load_latest)
        interrupted = []
        for view in latest.values():
            if view.is_terminal or view.job_id in self._jobs:
                continue
            if self._owner_running(view):
                continue
            failed = mark_interrupted(view)
            await self.store.append(failed)
            interrupted.append(failed)
            log.warning(
                f"[yellow]Job {view.job_id} for '{view.app_id}' was interrupted "
                f"while {view.status.value}.[/yellow]"
            )
        return interrupted

    def _owner_running(self, view: JobView) -> bool:
        """True if the process that created ``view`` may still be running it."""
        if view.owner_host and view.owner_host != self.hostname:
            return True
        if not view.owner_pid or view.owner_pid == os.getpid():
            return False
        return pid_alive(view.owner_pid)

    async def _remote_active_jobs(self) -> set[str]:
        if not self.store:
            return set()
        latest = await asyncio.to_thread(self.store.load_latest)
        return {
            view.job_id
            for view in latest.values()
            if not view.is_terminal and self._owner_running(view)
        }

    def _entry(self, job_id: str) -> _JobEntry:
        entry = self._jobs.get(job_id)
        if entry is None:
            raise JobNotFoundError(f"Unknown job: {job_id}")
        return entry

    def _apply(
        self, entry: _JobEntry, new_status: JobStatus, error: JobError | None = None
    ) -> None:
        old = entry.job.status
        entry.job.transition(new_status, error, finished_at=time.monotonic())
        if self.events:
            self.events.job_transition(
                entry.job.job_id, entry.job.app_id, old.value, new_status.value
            )

    async def _persist(self, view: JobView) -> None:
        if self.store:
            await self.store.append(view)
