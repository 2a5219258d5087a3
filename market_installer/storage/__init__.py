"""
Storage Layer.

This package handles everything the installer keeps on disk: configuration,
lock markers, staging trees, the committed registry and the job log.
"""

from .config_manager import ConfigManager
from .job_store import JobStore
from .lock_manager import LockHandle, LockManager, LockRecord, LockState, lock_key
from .registry import Registry
from .staging import PromotionOutcome, StagingArea, TreeMover

__all__ = [
    "ConfigManager",
    "JobStore",
    "LockHandle",
    "LockManager",
    "LockRecord",
    "LockState",
    "PromotionOutcome",
    "Registry",
    "StagingArea",
    "TreeMover",
    "lock_key",
]
