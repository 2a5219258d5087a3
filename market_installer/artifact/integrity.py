"""
Provides checks that a downloaded artifact and its unpacked tree are what the
request asked for and safe to place in the registry.
"""

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from market_installer.exceptions import IntegrityFailureError
from market_installer.models.manifest import MANIFEST_FILE, AppManifest
from market_installer.storage.staging import compute_file_sha256

from .extractor import detect_format

log = logging.getLogger(__name__)

BLOCKED_EXTENSIONS = frozenset({".exe", ".bat", ".cmd", ".scr", ".vbs", ".jar"})
MAX_PACKAGED_FILE_BYTES = 50 * 1024 * 1024


class ArtifactVerifier:
    """A collection of static methods for validating package integrity."""

    @staticmethod
    def check_artifact(archive_path: Path, expected_sha256: str | None) -> str:
        """
        Hashes the artifact and confirms it is a readable zip or tar.

        Args:
            archive_path: The downloaded artifact.
            expected_sha256: Hex digest supplied with the request, if any.

        Returns:
            The artifact's SHA-256 hex digest.

        Raises:
            IntegrityFailureError: On a hash mismatch or unreadable archive.
        """
        try:
            actual = compute_file_sha256(archive_path)
        except OSError as e:
            raise IntegrityFailureError(f"Could not read artifact: {e}") from e

        if expected_sha256 and actual.lower() != expected_sha256.strip().lower():
            log.warning(
                f"[yellow]Checksum mismatch for '{archive_path.name}': expected "
                f"{expected_sha256}, got {actual}[/yellow]"
            )
            raise IntegrityFailureError(
                f"SHA-256 mismatch: expected {expected_sha256}, got {actual}."
            )

        archive_format = detect_format(archive_path)
        log.debug(f"Artifact '{archive_path.name}' is a {archive_format.value} archive")
        return actual

    @staticmethod
    def load_manifest(tree_path: Path, app_id: str) -> AppManifest:
        """
        Reads and validates ``manifest.json`` at the root of an unpacked tree.

        Raises:
            IntegrityFailureError: If the manifest is missing, malformed, or
            describes a different application.
        """
        manifest_path = tree_path / MANIFEST_FILE
        if not manifest_path.is_file():
            raise IntegrityFailureError(f"Package is missing {MANIFEST_FILE}.")
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise IntegrityFailureError(f"Unreadable {MANIFEST_FILE}: {e}") from e
        if not isinstance(data, dict):
            raise IntegrityFailureError(f"{MANIFEST_FILE} must be a JSON object.")

        try:
            manifest = AppManifest(**data)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'manifest'}: {err['msg']}"
                for err in e.errors()
            )
            raise IntegrityFailureError(f"Invalid manifest: {problems}") from e

        if manifest.id != app_id:
            raise IntegrityFailureError(
                f"Manifest id '{manifest.id}' does not match requested app '{app_id}'."
            )
        return manifest

    @staticmethod
    def scan_tree(tree_path: Path) -> int:
        """
        Rejects packages carrying executables or oversized files.

        Returns:
            The number of files scanned.

        Raises:
            IntegrityFailureError: On the first offending file.
        """
        scanned = 0
        for entry in tree_path.rglob("*"):
            if entry.is_symlink():
                raise IntegrityFailureError(
                    f"Package contains a symbolic link: {entry.relative_to(tree_path)}"
                )
            if not entry.is_file():
                continue
            relative = entry.relative_to(tree_path)
            if entry.suffix.lower() in BLOCKED_EXTENSIONS:
                raise IntegrityFailureError(
                    f"Package contains a blocked file type: {relative}"
                )
            if entry.stat().st_size > MAX_PACKAGED_FILE_BYTES:
                raise IntegrityFailureError(f"Package file is too large: {relative}")
            scanned += 1
        return scanned
