"""
Private per-job staging trees and their promotion into the registry.

A staged tree only becomes visible through a single rename onto its canonical
path. When staging and registry live on different filesystems the tree is
first copied to a sibling of the canonical path, verified, and then renamed,
so readers still observe either nothing or the complete tree.
"""

import asyncio
import errno
import hashlib
import logging
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from market_installer.exceptions import (
    ConflictExistsError,
    MoveFailedError,
    NotInstalledError,
)
from market_installer.utils.path import INCOMING_PREFIX, create_dir
from market_installer.utils.retry import CancelToken, RetryPolicy, with_retry

log = logging.getLogger(__name__)

DOWNLOAD_SUBDIR = "download"
TREE_SUBDIR = "tree"
REMOVING_PREFIX = ".removing-"
PREVIOUS_PREFIX = ".previous-"
SIBLING_PREFIXES = (INCOMING_PREFIX, REMOVING_PREFIX, PREVIOUS_PREFIX)


class PromotionOutcome(Enum):
    """How a staged tree reached its canonical path."""

    RENAMED_DIRECTLY = "renamed_directly"
    COPIED_THEN_RENAMED = "copied_then_renamed"


@dataclass(frozen=True)
class TreeSummary:
    """File count, byte total and content digest of a directory tree."""

    file_count: int
    total_bytes: int
    digest: str


class TreeMismatchError(OSError):
    """A copied tree differs from its source."""


def compute_file_sha256(path: Path) -> str:
    """Compute SHA256 hash for one file."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(1024 * 1024)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def summarize_tree(path: Path) -> TreeSummary:
    """Compute a deterministic summary for a directory tree."""
    digest = hashlib.sha256()
    files = [entry for entry in path.rglob("*") if entry.is_file()]
    total = 0
    for entry in sorted(files, key=lambda item: item.relative_to(path).as_posix()):
        digest.update(entry.relative_to(path).as_posix().encode("utf-8"))
        digest.update(b"\0")
        total += entry.stat().st_size
        with entry.open("rb") as handle:
            while True:
                chunk = handle.read(1024 * 1024)
                if not chunk:
                    break
                digest.update(chunk)
        digest.update(b"\0")
    return TreeSummary(file_count=len(files), total_bytes=total, digest=digest.hexdigest())


def _rename(source: Path, destination: Path) -> None:
    """The single rename that publishes or withdraws a tree."""
    os.rename(source, destination)


def remove_tree(path: Path) -> bool:
    """Deletes ``path``; returns False when it was already gone."""
    try:
        shutil.rmtree(path)
        return True
    except FileNotFoundError:
        return False


class StagingArea:
    """Allocates and discards ``<staging-root>/<job-id>`` directories."""

    def __init__(self, staging_root: Path):
        self.root = Path(staging_root)
        create_dir(self.root)

    def path_for(self, job_id: str) -> Path:
        return self.root / job_id

    def stage(self, job_id: str) -> Path:
        """Creates the job's staging directory. Repeated calls are harmless."""
        path = self.path_for(job_id)
        create_dir(path / DOWNLOAD_SUBDIR)
        create_dir(path / TREE_SUBDIR)
        return path

    def download_dir(self, job_id: str) -> Path:
        return self.path_for(job_id) / DOWNLOAD_SUBDIR

    def tree_dir(self, job_id: str) -> Path:
        return self.path_for(job_id) / TREE_SUBDIR

    def discard(self, job_id: str) -> bool:
        removed = remove_tree(self.path_for(job_id))
        if removed:
            log.debug(f"Discarded staging directory for job {job_id}")
        return removed

    def entries(self) -> list[Path]:
        try:
            return [p for p in self.root.iterdir() if p.is_dir()]
        except FileNotFoundError:
            return []


class TreeMover:
    """
    Promotes staged trees into the registry and withdraws installed ones.

    Args:
        apps_dir: The registry directory holding canonical paths.
        retry_policy: Governs the copy-verify step and best-effort cleanup.
        force_cross_device: Always take the copy-then-rename branch.
    """

    def __init__(
        self,
        apps_dir: Path,
        retry_policy: RetryPolicy | None = None,
        force_cross_device: bool = False,
    ):
        self.apps_dir = Path(apps_dir)
        create_dir(self.apps_dir)
        self.retry_policy = retry_policy or RetryPolicy()
        self.force_cross_device = force_cross_device

    def sibling_path(self, prefix: str, work_id: str) -> Path:
        return self.apps_dir / f"{prefix}{work_id}"

    def _same_device(self, source: Path, canonical: Path) -> bool:
        return os.stat(source).st_dev == os.stat(canonical.parent).st_dev

    def _check_conflict(self, canonical: Path) -> None:
        if canonical.exists():
            log.error(
                f"[bold red]Refusing to overwrite existing registry entry "
                f"'{canonical}'. Another writer bypassed the per-app lock or a "
                f"stale entry survived cleanup.[/bold red]"
            )
            raise ConflictExistsError(f"Registry entry '{canonical.name}' already exists.")

    async def promote(
        self,
        staging_path: Path,
        canonical_path: Path,
        job_id: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> PromotionOutcome:
        """
        Makes ``staging_path`` visible at ``canonical_path``.

        Raises:
            ConflictExistsError: If the canonical path already exists.
            MoveFailedError: On disk or permission errors.
            JobCancelledError: If cancelled before the final rename.
        """
        work_id = job_id or uuid.uuid4().hex
        self._check_conflict(canonical_path)

        if not self.force_cross_device:
            try:
                same_device = self._same_device(staging_path, canonical_path)
            except OSError as e:
                raise MoveFailedError(f"Cannot inspect promotion paths: {e}") from e
            if same_device:
                try:
                    await asyncio.to_thread(_rename, staging_path, canonical_path)
                    log.debug(f"Promoted {staging_path} -> {canonical_path} by rename")
                    return PromotionOutcome.RENAMED_DIRECTLY
                except OSError as e:
                    if e.errno in (errno.EEXIST, errno.ENOTEMPTY):
                        self._check_conflict(canonical_path)
                    if e.errno != errno.EXDEV:
                        raise MoveFailedError(f"Rename into registry failed: {e}") from e
                    log.debug("Rename crossed devices; falling back to copy")

        await self._copy_then_rename(staging_path, canonical_path, work_id, cancel_token)
        return PromotionOutcome.COPIED_THEN_RENAMED

    async def _copy_then_rename(
        self,
        staging_path: Path,
        canonical_path: Path,
        work_id: str,
        cancel_token: CancelToken | None,
    ) -> None:
        incoming = self.sibling_path(INCOMING_PREFIX, work_id)

        def copy_and_verify() -> TreeSummary:
            remove_tree(incoming)
            shutil.copytree(staging_path, incoming, symlinks=True)
            expected = summarize_tree(staging_path)
            actual = summarize_tree(incoming)
            if expected != actual:
                raise TreeMismatchError(
                    f"Copy verification failed: expected {expected.file_count} files"
                    f"/{expected.total_bytes} bytes, got {actual.file_count}"
                    f"/{actual.total_bytes}"
                )
            return actual

        if cancel_token:
            cancel_token.raise_if_cancelled("copy")
        try:
            summary = await with_retry(
                lambda: asyncio.to_thread(copy_and_verify),
                self.retry_policy,
                is_retryable=lambda exc: isinstance(exc, OSError),
                cancel_token=cancel_token,
                description="Cross-filesystem copy",
            )
        except OSError as e:
            await asyncio.to_thread(remove_tree, incoming)
            raise MoveFailedError(f"Copy into registry failed: {e}") from e
        except BaseException:
            await asyncio.to_thread(remove_tree, incoming)
            raise

        try:
            if cancel_token:
                cancel_token.raise_if_cancelled("commit")
            self._check_conflict(canonical_path)
            await asyncio.to_thread(_rename, incoming, canonical_path)
        except OSError as e:
            await asyncio.to_thread(remove_tree, incoming)
            raise MoveFailedError(f"Rename into registry failed: {e}") from e
        except BaseException:
            await asyncio.to_thread(remove_tree, incoming)
            raise

        log.debug(
            f"Promoted {staging_path} -> {canonical_path} via copy "
            f"({summary.file_count} files, {summary.total_bytes} bytes)"
        )
        await self.cleanup(staging_path)

    async def displace(self, canonical_path: Path, prefix: str, work_id: str) -> Path:
        """
        Atomically withdraws an installed tree to a hidden sibling.

        Raises:
            NotInstalledError: If nothing is installed at ``canonical_path``.
            MoveFailedError: On disk or permission errors.
        """
        target = self.sibling_path(prefix, work_id)
        if not canonical_path.is_dir():
            raise NotInstalledError(f"'{canonical_path.name}' is not installed.")
        try:
            await asyncio.to_thread(_rename, canonical_path, target)
        except FileNotFoundError as e:
            raise NotInstalledError(f"'{canonical_path.name}' is not installed.") from e
        except OSError as e:
            raise MoveFailedError(f"Could not move '{canonical_path}': {e}") from e
        return target

    async def restore(self, displaced_path: Path, canonical_path: Path) -> None:
        """Puts a displaced tree back, unless something now occupies the slot."""
        self._check_conflict(canonical_path)
        try:
            await asyncio.to_thread(_rename, displaced_path, canonical_path)
        except OSError as e:
            raise MoveFailedError(
                f"Could not restore '{canonical_path.name}' from {displaced_path}: {e}"
            ) from e

    async def cleanup(self, path: Path) -> bool:
        """Best-effort, retried removal. Never raises for a missing tree."""
        try:
            return await with_retry(
                lambda: asyncio.to_thread(remove_tree, path),
                self.retry_policy,
                is_retryable=lambda exc: isinstance(exc, OSError),
                description=f"Cleanup of {path.name}",
            )
        except OSError as e:
            log.warning(f"[yellow]Could not remove '{path}': {e}[/yellow]")
            return False


def tree_age_seconds(path: Path) -> float:
    return time.time() - path.stat().st_mtime
