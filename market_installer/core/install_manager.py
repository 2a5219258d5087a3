"""
The main orchestrator for installing, updating and removing applications.

Every request becomes a job that runs in its own task:

    lock -> download (retried) -> verify -> unpack -> promote -> release

Whatever happens, the job ends in a terminal status, its lock is released and
its staging directory is discarded.
"""

import asyncio
import json
import logging
import re
import time
from contextlib import suppress
from pathlib import Path

from market_installer.artifact import ArtifactVerifier, Downloader, extract_archive
from market_installer.exceptions import (
    AlreadyInstalledError,
    ErrorKind,
    InvalidRequestError,
    JobCancelledError,
    LockLostError,
    MarketInstallerError,
    NetworkFailureError,
    NotInstalledError,
)
from market_installer.models.config import InstallerConfig
from market_installer.models.job import JobError, JobKind, JobStatus, JobView, utc_now_iso
from market_installer.models.manifest import METADATA_FILE, InstallRecord, RegistryEntry
from market_installer.storage.job_store import JobStore
from market_installer.storage.lock_manager import LockHandle, LockManager, lock_key
from market_installer.storage.registry import Registry
from market_installer.storage.staging import (
    PREVIOUS_PREFIX,
    REMOVING_PREFIX,
    PromotionOutcome,
    StagingArea,
    TreeMover,
    summarize_tree,
)
from market_installer.utils.path import validate_app_id, validate_source_url
from market_installer.utils.retry import CancelToken, RetryPolicy, with_retry
from market_installer.utils.structured_logger import create_structured_logger

from .job_tracker import JobTracker

log = logging.getLogger(__name__)

ARTIFACT_NAME = "artifact.bin"
SHA256_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


class InstallManager:
    """
    Orchestrates install, update and uninstall jobs against one registry.

    Args:
        config: Validated installer settings.
        downloader: Artifact downloader; one is created and owned if omitted.
        force_cross_device: Always promote through the copy-then-rename path.
        event_log_dir: Directory for the JSONL event log; None disables it.
    """

    def __init__(
        self,
        config: InstallerConfig,
        downloader: Downloader | None = None,
        force_cross_device: bool = False,
        event_log_dir: Path | None = None,
    ):
        self.config = config
        self.retry_policy = RetryPolicy.from_config(config)
        self._events_base, self.events = create_structured_logger(
            event_log_dir, enable_json=event_log_dir is not None
        )
        self.store = JobStore(config.jobs_dir) if config.job_log_enabled else None
        self.tracker = JobTracker(store=self.store, events=self.events)
        self._events_base.set_session_context(instance_id=self.tracker.instance_id)
        self.locks = LockManager(
            config.locks_dir,
            liveness=self.tracker.holder_liveness,
            instance_id=self.tracker.instance_id,
            events=self.events,
        )
        self.staging = StagingArea(config.staging_dir)
        self.mover = TreeMover(
            config.apps_dir, self.retry_policy, force_cross_device=force_cross_device
        )
        self.registry = Registry(config.apps_dir)
        self._owns_downloader = downloader is None
        self.downloader = downloader or Downloader(
            max_connections=config.max_connections,
            timeout_seconds=config.network_timeout_seconds,
        )
        self._tasks: dict[str, asyncio.Task] = {}
        self._maintenance_task: asyncio.Task | None = None

    async def __aenter__(self) -> "InstallManager":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ----- Lifecycle -----

    async def start(self, maintenance: bool = True) -> None:
        """Recovers interrupted jobs, sweeps orphans and starts housekeeping."""
        await self.recover_interrupted()
        await self.sweep_orphans()
        if maintenance and (self._maintenance_task is None or self._maintenance_task.done()):
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
            log.debug("Started maintenance task.")

    async def close(self) -> None:
        """Cancels running jobs, waits for them to unwind and frees resources."""
        if self._maintenance_task and not self._maintenance_task.done():
            self._maintenance_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._maintenance_task
            log.debug("Stopped maintenance task.")

        running = [task for task in self._tasks.values() if not task.done()]
        for job_id, task in list(self._tasks.items()):
            if not task.done():
                await self.tracker.cancel(job_id)
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        if self._owns_downloader:
            await self.downloader.close()
        self._events_base.close()

    async def recover_interrupted(self) -> list[JobView]:
        """Fails jobs a stopped process left active and repairs their updates."""
        interrupted = await self.tracker.recover()
        for view in interrupted:
            await self._settle_interrupted(view)
        return interrupted

    async def _maintenance_loop(self) -> None:
        """Runs the orphan sweep and job garbage collection periodically."""
        while True:
            try:
                await asyncio.sleep(self.config.sweep_interval_seconds)
                await self.sweep_orphans()
                self.tracker.collect_garbage(self.config.job_retention_seconds)
                if self.store:
                    await self.store.compact(self.config.job_retention_seconds)
            except asyncio.CancelledError:
                log.debug("Maintenance task cancelled.")
                break
            except Exception as e:
                log.error(f"[red]Error in maintenance task: {e}[/red]", exc_info=True)

    # ----- Requests -----

    async def start_install(
        self, app_id: str, source_url: str, expected_sha256: str | None = None
    ) -> str:
        """
        Starts installing ``app_id`` from ``source_url``.

        Returns:
            The new job's identifier.

        Raises:
            InvalidRequestError: If the id, URL or checksum is malformed.
        """
        return await self._submit(JobKind.INSTALL, app_id, source_url, expected_sha256)

    async def start_update(
        self, app_id: str, source_url: str, expected_sha256: str | None = None
    ) -> str:
        """Starts replacing the installed ``app_id`` with a new package."""
        return await self._submit(JobKind.UPDATE, app_id, source_url, expected_sha256)

    async def start_uninstall(self, app_id: str) -> str:
        """Starts removing ``app_id`` from the registry."""
        return await self._submit(JobKind.UNINSTALL, app_id, None, None)

    def poll(self, job_id: str) -> JobView:
        return self.tracker.get(job_id)

    async def cancel(self, job_id: str) -> bool:
        return await self.tracker.cancel(job_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> JobView:
        """Waits for a job to finish and release everything it held."""
        return await self.tracker.wait(job_id, timeout=timeout)

    async def list_registry(self) -> list[RegistryEntry]:
        return await self.registry.list_entries()

    async def get_entry(self, app_id: str) -> RegistryEntry | None:
        validate_app_id(app_id)
        return await self.registry.get(app_id)

    async def sweep_orphans(self) -> list[Path]:
        grace = self.config.staging_grace_seconds
        await asyncio.to_thread(self.locks.remove_stale_temp_files, grace)
        return await self.tracker.sweep_orphans(self.staging, self.config.apps_dir, grace)

    async def _submit(
        self,
        kind: JobKind,
        app_id: str,
        source_url: str | None,
        expected_sha256: str | None,
    ) -> str:
        validate_app_id(app_id)
        if kind is not JobKind.UNINSTALL:
            validate_source_url(source_url or "")
        if expected_sha256 and not SHA256_PATTERN.match(expected_sha256):
            raise InvalidRequestError("Expected SHA-256 must be 64 hexadecimal characters.")

        job_id = await self.tracker.create(
            kind,
            app_id,
            source_url=source_url,
            expected_sha256=expected_sha256.lower() if expected_sha256 else None,
        )
        task = asyncio.create_task(self._run_job(job_id), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        log.info(f"Queued {kind.value} of [bold]{app_id}[/bold] as job {job_id}")
        return job_id

    # ----- Pipeline -----

    async def _run_job(self, job_id: str) -> None:
        """
        Drives one job to a terminal status.

        This is the only place exceptions become job status. Resources are
        released before the terminal status is published, so a waiter never
        observes a finished job that still holds its lock.
        """
        job = self.tracker.get(job_id)
        if job.is_terminal:
            await self.tracker.finish(job_id, job.status)
            return

        token = self.tracker.cancel_token(job_id)
        handle: LockHandle | None = None
        renewer: asyncio.Task | None = None
        status, error, version = JobStatus.SUCCEEDED, None, None
        interrupted = False

        try:
            await self.tracker.transition(job_id, JobStatus.LOCKING)
            waited_from = time.monotonic()
            handle = await self.locks.acquire(
                lock_key(job.app_id),
                holder=job_id,
                lease_seconds=self.config.lock_lease_seconds,
                timeout=self.config.lock_timeout_seconds,
                cancel_token=token,
            )
            self.tracker.claim_app(job.app_id, job_id)
            self.events.lock_acquired(handle.key, job_id, time.monotonic() - waited_from)
            renewer = asyncio.create_task(self.locks.keep_alive(handle))

            if job.kind is JobKind.UNINSTALL:
                await self._uninstall(job, token, handle)
            else:
                version = await self._install(job, token, handle)
        except JobCancelledError:
            status = JobStatus.CANCELLED
        except asyncio.CancelledError:
            status, interrupted = JobStatus.CANCELLED, True
        except MarketInstallerError as e:
            status, error = JobStatus.FAILED, JobError(e.kind, str(e))
        except Exception as e:
            current = self.tracker.get(job_id).status
            kind = (
                ErrorKind.MOVE_FAILED
                if current is JobStatus.COMMITTING
                else ErrorKind.INTERNAL_ERROR
            )
            log.exception(f"Unexpected error in job {job_id}: {e}")
            status, error = JobStatus.FAILED, JobError(kind, f"{type(e).__name__}: {e}")
        finally:
            await self._release(job_id, handle, renewer)

        view = await self.tracker.finish(job_id, status, error, installed_version=version)
        self._log_outcome(view)
        if interrupted:
            raise asyncio.CancelledError

    async def _release(
        self, job_id: str, handle: LockHandle | None, renewer: asyncio.Task | None
    ) -> None:
        if renewer:
            renewer.cancel()
            with suppress(asyncio.CancelledError):
                await renewer
        if handle:
            try:
                await self.locks.release(handle)
            except OSError as e:
                log.warning(f"[yellow]Could not release lock '{handle.key}': {e}[/yellow]")
        try:
            await asyncio.to_thread(self.staging.discard, job_id)
        except OSError as e:
            log.warning(
                f"[yellow]Could not discard staging for job {job_id}: {e}. "
                "The orphan sweep will retry.[/yellow]"
            )

    @staticmethod
    def _checkpoint(token: CancelToken, handle: LockHandle, where: str) -> None:
        token.raise_if_cancelled(where)
        if handle.lost:
            raise LockLostError(f"Lock lease lost before {where}.")

    async def _install(self, job: JobView, token: CancelToken, handle: LockHandle) -> str:
        """Runs the install or update pipeline; returns the installed version."""
        app_id, job_id = job.app_id, job.job_id
        canonical = self.registry.canonical_path(app_id)
        if job.kind is JobKind.INSTALL and canonical.exists():
            raise AlreadyInstalledError(f"App '{app_id}' is already installed.")
        if job.kind is JobKind.UPDATE and not canonical.is_dir():
            raise NotInstalledError(f"App '{app_id}' is not installed.")

        # Download
        self._checkpoint(token, handle, "download")
        staging_path = await asyncio.to_thread(self.staging.stage, job_id)
        await self.tracker.transition(
            job_id, JobStatus.DOWNLOADING, staging_path=staging_path
        )
        artifact = self.staging.download_dir(job_id) / ARTIFACT_NAME

        def on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            log.warning(
                f"[yellow]Download of {app_id} failed (attempt {attempt}/"
                f"{self.retry_policy.max_attempts}): {exc}. Retrying in "
                f"{delay:.1f}s...[/yellow]"
            )

        size = await with_retry(
            lambda: self.downloader.fetch(
                job.source_url,
                str(artifact),
                self.config.max_artifact_bytes,
                progress=lambda done, total: self.tracker.record_progress(
                    job_id, done, total
                ),
                cancel_token=token,
            ),
            self.retry_policy,
            is_retryable=lambda exc: isinstance(exc, NetworkFailureError) and exc.retryable,
            cancel_token=token,
            description=f"Download of {app_id}",
            on_retry=on_retry,
        )
        self.tracker.record_progress(job_id, size, size)

        # Verify and unpack
        self._checkpoint(token, handle, "verification")
        await self.tracker.transition(job_id, JobStatus.STAGING)
        content_hash = await asyncio.to_thread(
            ArtifactVerifier.check_artifact, artifact, job.expected_sha256
        )
        tree = self.staging.tree_dir(job_id)
        extracted = await asyncio.to_thread(
            extract_archive, artifact, tree, self.config.max_unpacked_bytes
        )
        await asyncio.to_thread(artifact.unlink, True)
        manifest = await asyncio.to_thread(ArtifactVerifier.load_manifest, tree, app_id)
        await asyncio.to_thread(ArtifactVerifier.scan_tree, tree)
        log.debug(
            f"Unpacked {app_id}@{manifest.version}: {extracted.file_count} files, "
            f"{extracted.total_bytes} bytes"
        )

        summary = await asyncio.to_thread(summarize_tree, tree)
        record = InstallRecord(
            app_id=app_id,
            name=manifest.name,
            version=manifest.version,
            content_hash=content_hash,
            tree_hash=summary.digest,
            installed_at=utc_now_iso(),
            source_url=job.source_url or "",
            job_id=job_id,
        )
        await asyncio.to_thread(
            (tree / METADATA_FILE).write_text,
            json.dumps(record.model_dump(), indent=2),
            "utf-8",
        )

        # Commit
        self._checkpoint(token, handle, "commit")
        await self.tracker.transition(job_id, JobStatus.COMMITTING)
        if job.kind is JobKind.UPDATE:
            outcome = await self._replace(tree, canonical, job_id, token)
        else:
            outcome = await self.mover.promote(tree, canonical, job_id, token)
        log.debug(f"Committed {app_id} ({outcome.value})")
        return manifest.version

    async def _replace(
        self, tree: Path, canonical: Path, job_id: str, token: CancelToken
    ) -> PromotionOutcome:
        """Swaps the installed tree for ``tree``, restoring it on failure."""
        previous = await self.mover.displace(canonical, PREVIOUS_PREFIX, job_id)
        try:
            outcome = await self.mover.promote(tree, canonical, job_id, token)
        except BaseException:
            try:
                await self.mover.restore(previous, canonical)
                log.info(f"Restored previous version of '{canonical.name}'.")
            except MarketInstallerError as restore_error:
                log.error(
                    f"[bold red]Could not restore '{canonical.name}'; the previous "
                    f"tree remains at {previous}: {restore_error}[/bold red]"
                )
            raise
        await self.mover.cleanup(previous)
        return outcome

    async def _uninstall(self, job: JobView, token: CancelToken, handle: LockHandle) -> None:
        canonical = self.registry.canonical_path(job.app_id)
        if not canonical.is_dir():
            raise NotInstalledError(f"App '{job.app_id}' is not installed.")
        self._checkpoint(token, handle, "removal")
        await self.tracker.transition(job.job_id, JobStatus.COMMITTING)
        removing = await self.mover.displace(canonical, REMOVING_PREFIX, job.job_id)
        await self.mover.cleanup(removing)

    async def _settle_interrupted(self, view: JobView) -> None:
        """Puts back an installed tree that an interrupted update had moved aside."""
        if view.kind is not JobKind.UPDATE:
            return
        previous = self.mover.sibling_path(PREVIOUS_PREFIX, view.job_id)
        if not previous.is_dir():
            return
        canonical = self.registry.canonical_path(view.app_id)
        if canonical.exists():
            await self.mover.cleanup(previous)
            return
        try:
            await self.mover.restore(previous, canonical)
            log.warning(
                f"[yellow]Restored '{view.app_id}' after interrupted update "
                f"{view.job_id}.[/yellow]"
            )
        except MarketInstallerError as e:
            log.error(f"[red]Could not restore '{view.app_id}': {e}[/red]")

    @staticmethod
    def _log_outcome(view: JobView) -> None:
        label = f"{view.kind.value} of [bold]{view.app_id}[/bold]"
        if view.status is JobStatus.SUCCEEDED:
            version = f"@{view.installed_version}" if view.installed_version else ""
            log.info(f"[green]Finished {label}{version}[/green]")
        elif view.status is JobStatus.CANCELLED:
            log.info(f"[yellow]Cancelled {label}[/yellow]")
        elif view.error:
            log.error(f"[red]Failed {label}: {view.error.message}[/red]")

