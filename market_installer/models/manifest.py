"""
Pydantic models for package manifests and committed registry entries.
"""

import re

from pydantic import BaseModel, Field, field_validator

APP_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+")
APP_TYPES = ("web", "native", "hybrid")

MANIFEST_FILE = "manifest.json"
METADATA_FILE = "metadata.json"


class AppManifest(BaseModel):
    """The ``manifest.json`` every package must carry at its root."""

    id: str
    name: str
    version: str
    description: str
    author: str
    license: str
    main: str
    type: str
    permissions: list[str] = Field(default_factory=list)

    class Config:
        """Pydantic model configuration."""

        str_strip_whitespace = True
        extra = "allow"

    @field_validator("id", "name", "description", "author", "license", "main")
    @classmethod
    def require_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Field cannot be empty.")
        return v

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not APP_ID_PATTERN.match(v) or len(v) > 100:
            raise ValueError("Invalid app ID format.")
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not VERSION_PATTERN.match(v):
            raise ValueError("Invalid version format, expected MAJOR.MINOR.PATCH.")
        return v

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in APP_TYPES:
            raise ValueError(f"Invalid app type, expected one of {', '.join(APP_TYPES)}.")
        return v


class InstallRecord(BaseModel):
    """The ``metadata.json`` written next to the manifest before promotion."""

    app_id: str
    name: str
    version: str
    content_hash: str
    tree_hash: str
    installed_at: str
    source_url: str
    job_id: str


class RegistryEntry(BaseModel):
    """An installed application as seen by readers of the registry."""

    app_id: str
    version: str
    installed_at: str
    name: str = ""
    path: str = ""
    content_hash: str = ""

    def to_listing(self) -> dict[str, str]:
        """The minimal shape returned by the 'list registry' operation."""
        return {
            "app_id": self.app_id,
            "version": self.version,
            "installed_at": self.installed_at,
        }
