"""
Profile Lock - Cross-process lease on a profile directory

A profile may be mutated by one process at a time. The lease is a JSON
record in profiles/<name>/.lock identifying the holder by pid and host.
A lease is considered stale, and may be taken over, when:
- it is older than stale_timeout_seconds (default 5 minutes), or
- the holder cannot be confirmed alive (dead pid, no permission to signal
  it, or a lease written by another host)

Check-and-create runs under an exclusive flock on a sidecar guard file and
the record itself is created with O_CREAT | O_EXCL, so two contenders can
never both be told they hold the lease.
"""

import fcntl
import json
import os
import socket
import tempfile
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional
import logging

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"
GUARD_FILENAME = ".lock.guard"
DEFAULT_STALE_TIMEOUT_SECONDS = 300


@dataclass(frozen=True)
class LockHolder:
    pid: int
    hostname: str

    @property
    def holder_id(self) -> str:
        return f"{self.pid}@{self.hostname}"

    @classmethod
    def current(cls) -> "LockHolder":
        return cls(pid=os.getpid(), hostname=socket.gethostname())


@dataclass(frozen=True)
class LockRecord:
    resource_name: str
    holder_id: str
    pid: int
    hostname: str
    acquired_at_epoch_millis: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LockRecord":
        return cls(
            resource_name=str(data["resource_name"]),
            holder_id=str(data["holder_id"]),
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            acquired_at_epoch_millis=int(data["acquired_at_epoch_millis"]),
        )


class StaleLockGuard:
    """
    File-based lease per resource (profile) directory.

    Usage:
        guard = StaleLockGuard("profiles")
        if not guard.acquire("alpha"):
            print("Profile is in use elsewhere")
        ...
        guard.release("alpha")
    """

    def __init__(
        self,
        base_dir: str,
        stale_timeout_seconds: float = DEFAULT_STALE_TIMEOUT_SECONDS,
        holder: Optional[LockHolder] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_dir = Path(base_dir)
        self.stale_timeout_seconds = float(stale_timeout_seconds)
        self.holder = holder or LockHolder.current()
        self._clock = clock

        self.base_dir.mkdir(parents=True, exist_ok=True)

    def lock_path(self, resource: str) -> Path:
        return self.base_dir / resource / LOCK_FILENAME

    def _now_millis(self) -> int:
        return int(self._clock() * 1000)

    @contextmanager
    def _critical(self, resource: str) -> Iterator[None]:
        """Exclusive flock on the resource's guard file."""
        directory = self.base_dir / resource
        directory.mkdir(parents=True, exist_ok=True)
        with open(directory / GUARD_FILENAME, "a+") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def _read(self, resource: str) -> Optional[LockRecord]:
        path = self.lock_path(resource)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return LockRecord.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            # Unreadable record: nobody can prove they hold it
            logger.warning(f"Invalid lock file {path}, treating as stale: {e}")
            return LockRecord(
                resource_name=resource,
                holder_id="unknown",
                pid=-1,
                hostname="",
                acquired_at_epoch_millis=0,
            )

    def _expired(self, record: LockRecord) -> bool:
        age_seconds = (self._now_millis() - record.acquired_at_epoch_millis) / 1000.0
        return age_seconds > self.stale_timeout_seconds

    def _holder_alive(self, record: LockRecord) -> bool:
        if record.pid <= 0 or record.hostname != self.holder.hostname:
            return False
        try:
            # Signal 0 only checks that the process exists
            os.kill(record.pid, 0)
            return True
        except OSError:
            # ProcessLookupError, PermissionError: liveness cannot be confirmed
            return False

    def is_stale(self, record: LockRecord) -> bool:
        return self._expired(record) or not self._holder_alive(record)

    def _write_new(self, resource: str, holder: LockHolder) -> bool:
        record = LockRecord(
            resource_name=resource,
            holder_id=holder.holder_id,
            pid=holder.pid,
            hostname=holder.hostname,
            acquired_at_epoch_millis=self._now_millis(),
        )
        try:
            fd = os.open(self.lock_path(resource), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(record.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())
        return True

    def acquire(self, resource: str, holder: Optional[LockHolder] = None) -> bool:
        """
        Acquire the lease on ``resource``.

        Returns:
            True if this holder now owns the lease (re-acquiring a lease we
            already hold is a no-op), False if a live holder has it.
        """
        holder = holder or self.holder
        with self._critical(resource):
            record = self._read(resource)
            if record is not None:
                if record.holder_id == holder.holder_id and not self._expired(record):
                    return True
                if not self.is_stale(record):
                    logger.warning(
                        f"Lock on '{resource}' held by {record.holder_id}, cannot acquire"
                    )
                    return False
                logger.warning(f"Removing stale lock on '{resource}' (holder={record.holder_id})")
                self._unlink(resource)

            if not self._write_new(resource, holder):
                return False

        logger.info(f"Lock acquired on '{resource}' (holder={holder.holder_id})")
        return True

    def release(self, resource: str, holder: Optional[LockHolder] = None) -> bool:
        """
        Remove the lease record if present. Always succeeds; a missing lock
        counts as released.
        """
        holder = holder or self.holder
        if not self.lock_path(resource).exists():
            return True
        with self._critical(resource):
            record = self._read(resource)
            if record is None:
                return True
            if record.holder_id != holder.holder_id:
                logger.warning(f"Releasing lock on '{resource}' held by {record.holder_id}")
            self._unlink(resource)
        logger.info(f"Lock released on '{resource}'")
        return True

    def refresh(self, resource: str, holder: Optional[LockHolder] = None) -> bool:
        """Heartbeat: bump acquired_at on a lease we hold."""
        holder = holder or self.holder
        with self._critical(resource):
            record = self._read(resource)
            if record is None or record.holder_id != holder.holder_id:
                return False

            renewed = LockRecord(
                resource_name=record.resource_name,
                holder_id=record.holder_id,
                pid=record.pid,
                hostname=record.hostname,
                acquired_at_epoch_millis=self._now_millis(),
            )
            path = self.lock_path(resource)
            temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".lock_", suffix=".tmp")
            try:
                with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                    json.dump(renewed.to_dict(), f)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, path)
            except OSError:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        logger.debug(f"Lock on '{resource}' refreshed")
        return True

    def holds(self, resource: str, holder: Optional[LockHolder] = None) -> bool:
        """True when ``holder`` owns a lease on ``resource`` that has not aged out."""
        holder = holder or self.holder
        record = self._read(resource)
        return record is not None and record.holder_id == holder.holder_id and not self._expired(record)

    def is_locked(self, resource: str) -> bool:
        record = self._read(resource)
        return record is not None and not self.is_stale(record)

    def get_lock_info(self, resource: str) -> Optional[LockRecord]:
        record = self._read(resource)
        if record is None or self.is_stale(record):
            return None
        return record

    def cleanup_stale(self, resources: Optional[Iterable[str]] = None) -> int:
        """
        Remove stale leases.

        Args:
            resources: names to check (default: every directory under base_dir)

        Returns:
            Number of leases removed
        """
        if resources is None:
            resources = sorted(p.name for p in self.base_dir.iterdir() if p.is_dir())

        cleaned = 0
        for resource in resources:
            if not self.lock_path(resource).exists():
                continue
            with self._critical(resource):
                record = self._read(resource)
                if record is not None and self.is_stale(record):
                    self._unlink(resource)
                    cleaned += 1
                    logger.info(f"Cleaned stale lock on '{resource}' (holder={record.holder_id})")
        return cleaned

    def _unlink(self, resource: str) -> None:
        try:
            self.lock_path(resource).unlink()
        except FileNotFoundError:
            pass
