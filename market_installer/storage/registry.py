"""
Read access to the committed application registry.

Only canonical directories are listed; hidden siblings used during promotion
or removal are never reported.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from market_installer.models.manifest import (
    MANIFEST_FILE,
    METADATA_FILE,
    AppManifest,
    InstallRecord,
    RegistryEntry,
)

log = logging.getLogger(__name__)


class Registry:
    """Lists and reads installed applications under ``apps_dir``."""

    def __init__(self, apps_dir: Path):
        self.apps_dir = Path(apps_dir)
        self.apps_dir.mkdir(parents=True, exist_ok=True)

    def canonical_path(self, app_id: str) -> Path:
        return self.apps_dir / app_id

    def read_entry(self, app_id: str) -> RegistryEntry | None:
        """Builds the entry for one installed app; None if absent or unreadable."""
        app_dir = self.canonical_path(app_id)
        if not app_dir.is_dir():
            return None

        record = self._read_record(app_dir)
        if record:
            return RegistryEntry(
                app_id=record.app_id,
                version=record.version,
                installed_at=record.installed_at,
                name=record.name,
                path=str(app_dir),
                content_hash=record.content_hash,
            )

        # Trees placed by hand or by older installers only carry a manifest.
        manifest = self._read_manifest(app_dir)
        if manifest is None:
            return None
        installed_at = datetime.fromtimestamp(
            app_dir.stat().st_mtime, tz=timezone.utc
        ).isoformat()
        return RegistryEntry(
            app_id=app_id,
            version=manifest.version,
            installed_at=installed_at,
            name=manifest.name,
            path=str(app_dir),
        )

    def list_entries_sync(self) -> list[RegistryEntry]:
        entries = []
        try:
            candidates = sorted(self.apps_dir.iterdir())
        except FileNotFoundError:
            return []
        for app_dir in candidates:
            if app_dir.name.startswith(".") or not app_dir.is_dir():
                continue
            try:
                entry = self.read_entry(app_dir.name)
            except OSError as e:
                log.warning(f"Failed to load app {app_dir.name}: {e}")
                continue
            if entry:
                entries.append(entry)
        return entries

    async def list_entries(self) -> list[RegistryEntry]:
        return await asyncio.to_thread(self.list_entries_sync)

    async def get(self, app_id: str) -> RegistryEntry | None:
        return await asyncio.to_thread(self.read_entry, app_id)

    @staticmethod
    def _read_record(app_dir: Path) -> InstallRecord | None:
        path = app_dir / METADATA_FILE
        if not path.is_file():
            return None
        try:
            return InstallRecord(**json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            log.warning(f"Ignoring invalid {METADATA_FILE} in {app_dir.name}: {e}")
            return None

    @staticmethod
    def _read_manifest(app_dir: Path) -> AppManifest | None:
        path = app_dir / MANIFEST_FILE
        if not path.is_file():
            return None
        try:
            return AppManifest(**json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            log.warning(f"Ignoring invalid {MANIFEST_FILE} in {app_dir.name}: {e}")
            return None
