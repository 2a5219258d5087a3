"""
Safe unpacking of zip and tar artifacts into a staging tree.

Entries with absolute paths, ``..`` components, links or device nodes are
rejected, as is any archive whose unpacked size exceeds the configured cap.
"""

import gzip
import logging
import lzma
import os
import shutil
import tarfile
import uuid
import zipfile
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from market_installer.exceptions import IntegrityFailureError
from market_installer.models.manifest import MANIFEST_FILE

log = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024

# What the zip, tar and compression layers raise for damaged archive bytes.
CORRUPT_ARCHIVE_ERRORS = (
    zipfile.BadZipFile,
    tarfile.TarError,
    EOFError,
    zlib.error,
    lzma.LZMAError,
    gzip.BadGzipFile,
)


class ArchiveFormat(Enum):
    ZIP = "zip"
    TAR = "tar"


@dataclass(frozen=True)
class ExtractionResult:
    archive_format: ArchiveFormat
    file_count: int
    total_bytes: int


def detect_format(archive_path: Path) -> ArchiveFormat:
    """
    Identifies the archive by content, never by file extension.

    Raises:
        IntegrityFailureError: If the file is neither a zip nor a tar archive.
    """
    if zipfile.is_zipfile(archive_path):
        return ArchiveFormat.ZIP
    try:
        if tarfile.is_tarfile(archive_path):
            return ArchiveFormat.TAR
    except (OSError, tarfile.TarError):
        pass
    raise IntegrityFailureError(
        f"'{archive_path.name}' is not a supported archive (zip or tar)."
    )


def _safe_target(destination: Path, name: str) -> Path | None:
    """Maps an archive entry name to a path inside ``destination``."""
    name = name.replace("\\", "/")
    pure = PurePosixPath(name)
    if not name or name in (".", "./"):
        return None
    if pure.is_absolute() or any(part == ".." for part in pure.parts):
        raise IntegrityFailureError(f"Unsafe archive entry path detected: {name}")
    target = (destination / pure.as_posix()).resolve()
    root = destination.resolve()
    if root not in (target, *target.parents):
        raise IntegrityFailureError(f"Archive entry escaped extraction directory: {name}")
    return target


@contextmanager
def _reading_archive(name: str) -> Iterator[None]:
    """Reports damage found while reading or decompressing archive data."""
    try:
        yield
    except CORRUPT_ARCHIVE_ERRORS as e:
        raise IntegrityFailureError(f"Corrupt archive data in {name}: {e}") from e
    except OSError as e:
        # bz2 signals a damaged stream with a plain OSError.
        raise IntegrityFailureError(f"Could not decompress {name}: {e}") from e


class _Budget:
    """Counts unpacked bytes against the cap while copying."""

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    def copy(self, source: BinaryIO, target: Path, name: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as handle:
            while True:
                with _reading_archive(name):
                    chunk = source.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                self.used += len(chunk)
                if self.used > self.limit:
                    raise IntegrityFailureError(
                        f"Unpacked content exceeds {self.limit} bytes."
                    )
                handle.write(chunk)


def _extract_zip(archive_path: Path, destination: Path, budget: _Budget) -> int:
    count = 0
    with zipfile.ZipFile(archive_path, "r") as archive:
        entries = archive.infolist()
        declared = sum(entry.file_size for entry in entries)
        if declared > budget.limit:
            raise IntegrityFailureError(
                f"Archive declares {declared} unpacked bytes, limit is {budget.limit}."
            )
        for entry in entries:
            mode = (entry.external_attr >> 16) & 0o170000
            if mode == 0o120000:
                raise IntegrityFailureError(
                    f"Archive contains symlink entry: {entry.filename}"
                )
            target = _safe_target(destination, entry.filename)
            if target is None:
                continue
            if entry.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            with _reading_archive(entry.filename):
                source = archive.open(entry, "r")
            with source:
                budget.copy(source, target, entry.filename)
            count += 1
    return count


def _extract_tar(archive_path: Path, destination: Path, budget: _Budget) -> int:
    count = 0
    with tarfile.open(archive_path, "r:*") as archive:
        with _reading_archive(archive_path.name):
            members = archive.getmembers()
        declared = sum(member.size for member in members if member.isfile())
        if declared > budget.limit:
            raise IntegrityFailureError(
                f"Archive declares {declared} unpacked bytes, limit is {budget.limit}."
            )
        for member in members:
            if member.issym() or member.islnk():
                raise IntegrityFailureError(f"Archive contains link entry: {member.name}")
            if not (member.isdir() or member.isfile()):
                raise IntegrityFailureError(
                    f"Archive contains special file entry: {member.name}"
                )
            target = _safe_target(destination, member.name)
            if target is None:
                continue
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            with _reading_archive(member.name):
                source = archive.extractfile(member)
            if source is None:
                continue
            with source:
                budget.copy(source, target, member.name)
            count += 1
    return count


def _flatten_single_root(destination: Path) -> None:
    """Lifts the contents of a lone wrapping directory up one level."""
    if (destination / MANIFEST_FILE).exists():
        return
    entries = list(destination.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        return
    wrapper = destination / f".wrapper-{uuid.uuid4().hex}"
    os.rename(entries[0], wrapper)
    for child in wrapper.iterdir():
        os.rename(child, destination / child.name)
    wrapper.rmdir()
    log.debug(f"Flattened wrapping directory '{entries[0].name}'")


def extract_archive(
    archive_path: Path, destination: Path, max_unpacked_bytes: int
) -> ExtractionResult:
    """
    Unpacks ``archive_path`` into the empty directory ``destination``.

    Raises:
        IntegrityFailureError: On unsupported, corrupt or unsafe archives. The
        destination is emptied before raising.
    """
    archive_format = detect_format(archive_path)
    destination.mkdir(parents=True, exist_ok=True)
    budget = _Budget(max_unpacked_bytes)
    try:
        if archive_format is ArchiveFormat.ZIP:
            count = _extract_zip(archive_path, destination, budget)
        else:
            count = _extract_tar(archive_path, destination, budget)
        _flatten_single_root(destination)
    except IntegrityFailureError:
        _empty_directory(destination)
        raise
    except CORRUPT_ARCHIVE_ERRORS as e:
        _empty_directory(destination)
        raise IntegrityFailureError(f"Could not read archive: {e}") from e

    return ExtractionResult(
        archive_format=archive_format, file_count=count, total_bytes=budget.used
    )


def _empty_directory(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)
