"""
Defines custom exceptions for the installer so every failure carries a stable
error kind that the job tracker can record.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Stable, machine-readable failure categories surfaced on failed jobs."""

    BUSY = "busy"
    TOO_LARGE = "too_large"
    INTEGRITY_FAILURE = "integrity_failure"
    NETWORK_FAILURE = "network_failure"
    CONFLICT_EXISTS = "conflict_exists"
    MOVE_FAILED = "move_failed"
    ALREADY_INSTALLED = "already_installed"
    NOT_INSTALLED = "not_installed"
    CANCELLED = "cancelled"
    INVALID_REQUEST = "invalid_request"
    INTERNAL_ERROR = "internal_error"


class MarketInstallerError(Exception):
    """Base exception for all installer errors."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR


class ConfigurationError(MarketInstallerError):
    """Raised for issues related to configuration loading or validation."""


class InvalidRequestError(MarketInstallerError):
    """Raised when an install or uninstall request is malformed."""

    kind = ErrorKind.INVALID_REQUEST


class LockBusyError(MarketInstallerError):
    """Raised when a per-application lock cannot be obtained in time."""

    kind = ErrorKind.BUSY


class LockLostError(LockBusyError):
    """Raised when a held lease was not renewed in time or was taken over."""


class ArtifactTooLargeError(MarketInstallerError):
    """Raised when a package artifact exceeds the configured byte ceiling."""

    kind = ErrorKind.TOO_LARGE


class IntegrityFailureError(MarketInstallerError):
    """Raised when a downloaded artifact fails structural or hash verification."""

    kind = ErrorKind.INTEGRITY_FAILURE


class NetworkFailureError(MarketInstallerError):
    """
    Raised when fetching an artifact fails at the transport level.

    Only failures flagged as retryable (connection errors, timeouts, 5xx, 408
    and 429 responses) are attempted again.
    """

    kind = ErrorKind.NETWORK_FAILURE

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class ConflictExistsError(MarketInstallerError):
    """Raised when a canonical registry path already exists at promotion time."""

    kind = ErrorKind.CONFLICT_EXISTS


class MoveFailedError(MarketInstallerError):
    """Raised when a disk or permission error prevents promotion or removal."""

    kind = ErrorKind.MOVE_FAILED


class AlreadyInstalledError(MarketInstallerError):
    """Raised when installing an application that is already in the registry."""

    kind = ErrorKind.ALREADY_INSTALLED


class NotInstalledError(MarketInstallerError):
    """Raised when removing or updating an application that is not installed."""

    kind = ErrorKind.NOT_INSTALLED


class JobCancelledError(MarketInstallerError):
    """Raised at a checkpoint once the owning job has been cancelled."""

    kind = ErrorKind.CANCELLED


class JobNotFoundError(MarketInstallerError):
    """Raised when a job identifier is unknown to the tracker."""

    kind = ErrorKind.INVALID_REQUEST
