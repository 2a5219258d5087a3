"""
File-backed, lease-based locks keyed by application identifier.

Each key owns one marker file under the locks directory. A marker is published
with ``os.link`` from a fully written temp file, so other processes only ever
see complete markers; that is what lets the lock survive a process restart.

State machine per key::

    UNLOCKED --acquire--> HELD(holder, lease) --release/reclaim--> UNLOCKED
"""

import asyncio
import json
import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path

from market_installer.exceptions import LockBusyError, LockLostError
from market_installer.utils.retry import CancelToken
from market_installer.utils.structured_logger import JobEventLogger

log = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "app-install:"
MARKER_SUFFIX = ".lock"
GUARD_SUFFIX = ".reclaim"
TEMP_SUFFIX = ".tmp"

# True: holder alive, False: holder confirmed dead, None: cannot tell
HolderLiveness = Callable[["LockRecord"], bool | None]


def lock_key(app_id: str) -> str:
    """The lock key guarding installs and removals of ``app_id``."""
    return f"{LOCK_KEY_PREFIX}{app_id}"


class LockState(Enum):
    UNLOCKED = "unlocked"
    HELD = "held"


@dataclass(frozen=True)
class LockRecord:
    """The content of a marker file."""

    key: str
    holder: str
    token: str
    pid: int
    hostname: str
    instance_id: str
    acquired_at: float
    expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "LockRecord":
        data = json.loads(raw)
        return cls(
            key=str(data["key"]),
            holder=str(data["holder"]),
            token=str(data["token"]),
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            instance_id=str(data["instance_id"]),
            acquired_at=float(data["acquired_at"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class LockHandle:
    """Proof of ownership returned by ``acquire``; required to renew or release."""

    key: str
    holder: str
    token: str
    path: Path
    lease_seconds: float
    expires_at: float
    lost: bool = False
    released: bool = False
    # Serializes marker rewrites and removal for this handle across threads.
    io_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )


class LockManager:
    """
    Grants at most one holder per key, across coroutines and processes.

    Args:
        locks_dir: Directory holding one marker file per key.
        liveness: Answers whether the holder of an expired lease is dead.
            Without it, expired leases are never reclaimed.
        instance_id: Identity of this process' tracker, written into markers.
        poll_interval: How often a waiter re-reads markers written by other
            processes; waiters in this process are woken on release directly.
        events: Structured event sink for reclaimed leases.
    """

    def __init__(
        self,
        locks_dir: Path,
        liveness: HolderLiveness | None = None,
        instance_id: str | None = None,
        poll_interval: float = 0.25,
        guard_stale_seconds: float = 30.0,
        events: JobEventLogger | None = None,
    ):
        self.locks_dir = Path(locks_dir)
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        self.liveness = liveness
        self.instance_id = instance_id or uuid.uuid4().hex
        self.poll_interval = poll_interval
        self.guard_stale_seconds = guard_stale_seconds
        self.events = events
        self.hostname = socket.gethostname()
        self._release_events: dict[str, asyncio.Event] = {}

    def marker_path(self, key: str) -> Path:
        name = key.split(":", 1)[-1]
        if not name or name.startswith(".") or "/" in name or "\\" in name:
            raise ValueError(f"Invalid lock key: {key!r}")
        return self.locks_dir / f"{name}{MARKER_SUFFIX}"

    async def acquire(
        self,
        key: str,
        holder: str,
        lease_seconds: float,
        timeout: float,
        cancel_token: CancelToken | None = None,
    ) -> LockHandle:
        """
        Obtains the lock for ``key`` on behalf of ``holder``.

        The coroutine suspends between attempts: it is woken when a holder in
        this process releases the key, and re-reads the marker every
        ``poll_interval`` to notice other processes.

        Raises:
            LockBusyError: If the lock is still held when ``timeout`` elapses.
            JobCancelledError: If ``cancel_token`` is cancelled while waiting.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        while True:
            if cancel_token:
                cancel_token.raise_if_cancelled("lock acquisition")
            released = self._release_events.setdefault(key, asyncio.Event())
            handle = await asyncio.to_thread(
                self._try_acquire, key, holder, lease_seconds
            )
            if handle:
                log.debug(
                    f"Lock '{key}' acquired by {holder} after "
                    f"{loop.time() - started:.3f}s"
                )
                return handle

            remaining = deadline - loop.time()
            if remaining <= 0:
                current = await asyncio.to_thread(self.inspect, key)
                owner = current.holder if current else "unknown"
                raise LockBusyError(
                    f"Lock '{key}' is held by {owner}; gave up after {timeout:.1f}s."
                )
            try:
                await asyncio.wait_for(
                    released.wait(), timeout=min(self.poll_interval, remaining)
                )
            except asyncio.TimeoutError:
                pass

    async def renew(self, handle: LockHandle) -> LockHandle:
        """
        Extends the lease of a held lock.

        Raises:
            LockLostError: If the marker is gone or now belongs to someone else.
        """
        return await asyncio.to_thread(self._renew_sync, handle)

    async def release(self, handle: LockHandle) -> None:
        """Removes the marker if it is still ours. Safe to call twice."""
        await asyncio.to_thread(self._release_sync, handle)
        event = self._release_events.pop(handle.key, None)
        if event:
            event.set()

    async def keep_alive(self, handle: LockHandle) -> None:
        """
        Renews ``handle`` every third of its lease until cancelled.

        On a failed renewal the handle is flagged ``lost`` and the loop stops;
        the owner is expected to check the flag at its next checkpoint.
        """
        interval = max(handle.lease_seconds / 3, 0.05)
        while not handle.released:
            await asyncio.sleep(interval)
            if handle.released:
                return
            try:
                await self.renew(handle)
            except LockLostError as e:
                handle.lost = True
                log.error(f"[red]Lost lock '{handle.key}': {e}[/red]")
                return
            except OSError as e:
                log.warning(f"Could not renew lock '{handle.key}': {e}")

    def inspect(self, key: str) -> LockRecord | None:
        """Returns the current marker for ``key``, or None when unlocked."""
        return self._read_marker(self.marker_path(key))

    def state(self, key: str) -> LockState:
        return LockState.HELD if self.inspect(key) else LockState.UNLOCKED

    def list_locks(self) -> list[LockRecord]:
        records = []
        for marker in sorted(self.locks_dir.glob(f"*{MARKER_SUFFIX}")):
            try:
                record = self._read_marker(marker)
            except LockBusyError:
                continue
            if record:
                records.append(record)
        return records

    def remove_stale_temp_files(self, max_age_seconds: float) -> list[Path]:
        """
        Deletes marker temp files older than ``max_age_seconds``, left behind
        when a process died between writing one and publishing it.
        """
        removed = []
        now = time.time()
        for tmp_path in self.locks_dir.glob(f".*{MARKER_SUFFIX}.*{TEMP_SUFFIX}"):
            try:
                if now - tmp_path.stat().st_mtime < max_age_seconds:
                    continue
                tmp_path.unlink()
            except FileNotFoundError:
                continue
            removed.append(tmp_path)
        if removed:
            log.debug(f"Removed {len(removed)} abandoned lock temp files.")
        return removed

    def _new_record(self, key: str, holder: str, lease_seconds: float) -> LockRecord:
        now = time.time()
        return LockRecord(
            key=key,
            holder=holder,
            token=uuid.uuid4().hex,
            pid=os.getpid(),
            hostname=self.hostname,
            instance_id=self.instance_id,
            acquired_at=now,
            expires_at=now + lease_seconds,
        )

    def _write_temp(self, path: Path, record: LockRecord) -> Path:
        tmp_path = path.with_name(f".{path.name}.{record.token}{TEMP_SUFFIX}")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(record.to_json())
            f.flush()
            os.fsync(f.fileno())
        return tmp_path

    def _publish(self, path: Path, record: LockRecord) -> bool:
        """Atomically creates the marker; False if one already exists."""
        tmp_path = self._write_temp(path, record)
        try:
            os.link(tmp_path, path)
            return True
        except FileExistsError:
            return False
        finally:
            tmp_path.unlink(missing_ok=True)

    def _try_acquire(
        self, key: str, holder: str, lease_seconds: float, reclaimed: bool = False
    ) -> LockHandle | None:
        path = self.marker_path(key)
        record = self._new_record(key, holder, lease_seconds)
        if self._publish(path, record):
            return LockHandle(
                key=key,
                holder=holder,
                token=record.token,
                path=path,
                lease_seconds=lease_seconds,
                expires_at=record.expires_at,
            )

        existing = self._read_marker(path)
        if existing is None or reclaimed:
            # Released between our attempt and the read; caller retries.
            return None
        if not existing.is_expired():
            return None

        alive = self.liveness(existing) if self.liveness else None
        if alive is not False:
            log.debug(
                f"Lease on '{key}' expired but holder {existing.holder} is "
                f"{'alive' if alive else 'unknown'}; refusing to reclaim."
            )
            return None

        if not self._reclaim(path, existing):
            return None
        log.warning(
            f"[yellow]Reclaimed abandoned lock '{key}' from {existing.holder} "
            f"(pid {existing.pid} on {existing.hostname}).[/yellow]"
        )
        if self.events:
            self.events.lock_reclaimed(key, existing.holder, holder)
        return self._try_acquire(key, holder, lease_seconds, reclaimed=True)

    def _reclaim(self, path: Path, stale: LockRecord) -> bool:
        """Deletes ``stale`` only if it is still the marker on disk."""
        guard = path.with_name(f"{path.name}{GUARD_SUFFIX}")
        try:
            fd = os.open(guard, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            try:
                if time.time() - guard.stat().st_mtime > self.guard_stale_seconds:
                    guard.unlink(missing_ok=True)
            except FileNotFoundError:
                pass
            return False
        os.close(fd)
        try:
            current = self._read_marker(path)
            if current is None or current.token != stale.token:
                return False
            path.unlink(missing_ok=True)
            return True
        finally:
            guard.unlink(missing_ok=True)

    def _renew_sync(self, handle: LockHandle) -> LockHandle:
        with handle.io_lock:
            return self._renew_locked(handle)

    def _renew_locked(self, handle: LockHandle) -> LockHandle:
        if handle.released:
            raise LockLostError(f"Lock '{handle.key}' was already released.")
        current = self._read_marker(handle.path)
        if current is None or current.token != handle.token:
            handle.lost = True
            raise LockLostError(
                f"Lock '{handle.key}' is no longer held by {handle.holder}."
            )
        now = time.time()
        renewed = LockRecord(
            **{
                **asdict(current),
                "expires_at": now + handle.lease_seconds,
                "pid": os.getpid(),
            }
        )
        tmp_path = self._write_temp(handle.path, renewed)
        os.replace(tmp_path, handle.path)
        handle.expires_at = renewed.expires_at
        return handle

    def _release_sync(self, handle: LockHandle) -> None:
        with handle.io_lock:
            self._release_locked(handle)

    def _release_locked(self, handle: LockHandle) -> None:
        if handle.released:
            return
        handle.released = True
        current = self._read_marker(handle.path)
        if current is None:
            log.debug(f"Lock '{handle.key}' already gone at release.")
            return
        if current.token != handle.token:
            log.warning(
                f"[yellow]Not releasing '{handle.key}': now held by "
                f"{current.holder}.[/yellow]"
            )
            return
        handle.path.unlink(missing_ok=True)
        log.debug(f"Lock '{handle.key}' released by {handle.holder}")

    @staticmethod
    def _read_marker(path: Path) -> LockRecord | None:
        try:
            return LockRecord.from_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.error(f"[red]Unreadable lock marker '{path}': {e}[/red]")
            raise LockBusyError(f"Unreadable lock marker '{path.name}'.") from e
