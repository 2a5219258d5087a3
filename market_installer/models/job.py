"""
Data model for installation jobs and their lifecycle.

An ``InstallJob`` is only ever mutated through ``transition()`` and
``record_progress()``; callers outside the job tracker receive ``JobView``
snapshots.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from market_installer.exceptions import ErrorKind


def utc_now_iso() -> str:
    """Return timezone-aware UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


class JobKind(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    UNINSTALL = "uninstall"


class JobStatus(str, Enum):
    """Lifecycle states of an installation attempt."""

    QUEUED = "queued"
    LOCKING = "locking"
    DOWNLOADING = "downloading"
    STAGING = "staging"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}
)

# Status -> statuses it may move to
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset(
        {JobStatus.LOCKING, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.LOCKING: frozenset(
        {
            JobStatus.DOWNLOADING,
            JobStatus.COMMITTING,  # uninstall has nothing to download
            JobStatus.CANCELLED,
            JobStatus.FAILED,
        }
    ),
    JobStatus.DOWNLOADING: frozenset(
        {JobStatus.STAGING, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.STAGING: frozenset(
        {JobStatus.COMMITTING, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.COMMITTING: frozenset(
        {JobStatus.SUCCEEDED, JobStatus.CANCELLED, JobStatus.FAILED}
    ),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a job is asked to move along an edge that does not exist."""


@dataclass(frozen=True)
class JobError:
    """Failure detail attached to a failed job."""

    kind: ErrorKind
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class JobView:
    """Immutable snapshot of a job, safe to hand to pollers."""

    job_id: str
    kind: JobKind
    app_id: str
    source_url: str | None
    expected_sha256: str | None
    status: JobStatus
    created_at: str
    updated_at: str
    error: JobError | None = None
    staging_path: str | None = None
    bytes_downloaded: int = 0
    total_bytes: int | None = None
    installed_version: str | None = None
    owner_pid: int | None = None
    owner_host: str | None = None
    history: tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def progress(self) -> float | None:
        """Download progress in the range 0..1, when the total is known."""
        if not self.total_bytes:
            return None
        return min(1.0, self.bytes_downloaded / self.total_bytes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize into the wire shape a transport layer would return."""
        payload = asdict(self)
        payload["kind"] = self.kind.value
        payload["status"] = self.status.value
        payload["error"] = self.error.to_dict() if self.error else None
        payload["history"] = list(self.history)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "JobView":
        error = payload.get("error")
        return cls(
            job_id=str(payload["job_id"]),
            kind=JobKind(payload["kind"]),
            app_id=str(payload["app_id"]),
            source_url=payload.get("source_url"),
            expected_sha256=payload.get("expected_sha256"),
            status=JobStatus(payload["status"]),
            created_at=str(payload["created_at"]),
            updated_at=str(payload["updated_at"]),
            error=JobError(ErrorKind(error["kind"]), str(error["message"]))
            if error
            else None,
            staging_path=payload.get("staging_path"),
            bytes_downloaded=int(payload.get("bytes_downloaded") or 0),
            total_bytes=payload.get("total_bytes"),
            installed_version=payload.get("installed_version"),
            owner_pid=payload.get("owner_pid"),
            owner_host=payload.get("owner_host"),
            history=tuple(payload.get("history") or ()),
        )


@dataclass
class InstallJob:
    """Mutable record of one install, update or uninstall attempt."""

    job_id: str
    kind: JobKind
    app_id: str
    source_url: str | None = None
    expected_sha256: str | None = None
    status: JobStatus = JobStatus.QUEUED
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = ""
    error: JobError | None = None
    staging_path: Path | None = None
    bytes_downloaded: int = 0
    total_bytes: int | None = None
    installed_version: str | None = None
    owner_pid: int | None = None
    owner_host: str | None = None
    history: list[str] = field(default_factory=list)
    finished_monotonic: float | None = field(default=None, repr=False)

    def __post_init__(self):
        if not self.updated_at:
            self.updated_at = self.created_at
        if not self.history:
            self.history.append(self.status.value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(
        self,
        new_status: JobStatus,
        error: JobError | None = None,
        finished_at: float | None = None,
    ) -> None:
        """
        Moves the job to ``new_status``.

        Raises:
            InvalidTransitionError: If the edge is not in ALLOWED_TRANSITIONS.
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job {self.job_id}: {self.status.value} -> {new_status.value}"
                " is not allowed"
            )
        if (new_status is JobStatus.FAILED) != (error is not None):
            raise InvalidTransitionError(
                "Error detail must be present exactly when a job fails"
            )
        self.status = new_status
        self.error = error
        self.updated_at = utc_now_iso()
        self.history.append(new_status.value)
        if new_status.is_terminal:
            self.finished_monotonic = finished_at

    def record_progress(self, bytes_downloaded: int, total_bytes: int | None) -> None:
        self.bytes_downloaded = bytes_downloaded
        if total_bytes is not None:
            self.total_bytes = total_bytes
        self.updated_at = utc_now_iso()

    def snapshot(self) -> JobView:
        return JobView(
            job_id=self.job_id,
            kind=self.kind,
            app_id=self.app_id,
            source_url=self.source_url,
            expected_sha256=self.expected_sha256,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            error=self.error,
            staging_path=str(self.staging_path) if self.staging_path else None,
            bytes_downloaded=self.bytes_downloaded,
            total_bytes=self.total_bytes,
            installed_version=self.installed_version,
            owner_pid=self.owner_pid,
            owner_host=self.owner_host,
            history=tuple(self.history),
        )


def mark_interrupted(view: JobView) -> JobView:
    """Returns a failed copy of a job that was active when its process died."""
    return replace(
        view,
        status=JobStatus.FAILED,
        error=JobError(
            ErrorKind.INTERNAL_ERROR,
            f"Interrupted while {view.status.value}; the owning process stopped.",
        ),
        updated_at=utc_now_iso(),
        history=(*view.history, JobStatus.FAILED.value),
    )
