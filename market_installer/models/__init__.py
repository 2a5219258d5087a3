"""
Data Models Layer.

This package contains the models that define the core data structures used
throughout the installer, such as configuration, jobs and manifests.
"""

from .config import InstallerConfig
from .job import InstallJob, JobError, JobKind, JobStatus, JobView
from .manifest import AppManifest, InstallRecord, RegistryEntry

__all__ = [
    "AppManifest",
    "InstallJob",
    "InstallRecord",
    "InstallerConfig",
    "JobError",
    "JobKind",
    "JobStatus",
    "JobView",
    "RegistryEntry",
]
