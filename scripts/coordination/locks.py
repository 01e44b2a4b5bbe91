"""
Filesystem lock primitives shared by the slot semaphore and the ticket queue.

Every coordination structure in this package is built from two OS-level
primitives:

- Exclusive file creation (``O_CREAT | O_EXCL``) for lock entries. Creation
  either succeeds or reports that the entry exists; there is no window where
  two processes both believe they created the same name.
- ``fcntl.flock`` on a dedicated micro-lock file, held around every
  read-modify-write of a shared counter.

Lock entries are named after their owner so the reaper can find dead owners
without opening the file: ``{pid}.lock`` for slots and ``{pid}.{ticket}.lock``
for tickets. The file body is a small JSON ``LockRecord`` carrying the
acquisition time and, when leases are enabled, an expiry timestamp.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

LOCK_SUFFIX = ".lock"

logger = logging.getLogger(__name__)


class LockRecord(BaseModel):
    """Contents of an active lock entry."""

    pid: int = Field(..., gt=0, description="Owning process id")
    ticket: Optional[int] = Field(default=None, gt=0, description="Queue ticket, if any")
    acquired_at: float = Field(default_factory=time.time)
    expires_at: Optional[float] = Field(
        default=None, description="Lease expiry (epoch seconds), None when leases are off"
    )

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


def lock_name(pid: int, ticket: Optional[int] = None) -> str:
    """Build the entry name for a slot (pid only) or a ticket (pid and ticket)."""
    if ticket is None:
        return f"{pid}{LOCK_SUFFIX}"
    return f"{pid}.{ticket}{LOCK_SUFFIX}"


def parse_lock_name(name: str) -> Optional[Tuple[int, Optional[int]]]:
    """
    Extract the owner PID and optional ticket from a lock entry name.

    Args:
        name: Base name such as ``1234.lock`` or ``1234.17.lock``

    Returns:
        (pid, ticket) tuple, or None if the name is not a lock entry
    """
    if not name.endswith(LOCK_SUFFIX):
        return None
    parts = name[: -len(LOCK_SUFFIX)].split(".")
    if not 1 <= len(parts) <= 2 or not all(part.isdigit() for part in parts):
        return None
    pid = int(parts[0])
    ticket = int(parts[1]) if len(parts) == 2 else None
    return pid, ticket


def try_create(path: str, record: Optional[LockRecord] = None) -> bool:
    """
    Atomically create a lock entry.

    Args:
        path: Full path of the entry
        record: Lock contents written after creation

    Returns:
        bool: True if this call created the entry, False if it already existed
    """
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False

    with os.fdopen(fd, "w") as handle:
        if record is not None:
            handle.write(record.model_dump_json())
    return True


def remove(path: str) -> bool:
    """
    Remove a lock entry. Removing a missing entry is not an error.

    Returns:
        bool: True if this call removed the entry
    """
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False


def read_record(path: str) -> Optional[LockRecord]:
    """Read a lock entry's record; None if missing, empty or unreadable."""
    try:
        with open(path) as handle:
            content = handle.read().strip()
    except FileNotFoundError:
        return None
    if not content:
        return None
    try:
        return LockRecord.model_validate_json(content)
    except ValidationError as e:
        logger.debug(f"Ignoring malformed lock record {path}: {e}")
        return None


def write_record(path: str, record: LockRecord) -> None:
    """Replace the record of an existing lock entry (lease renewal)."""
    _atomic_write(path, record.model_dump_json())


def list_locks(namespace: str) -> List[str]:
    """Sorted lock entry names in a namespace directory; empty if it does not exist."""
    try:
        names = os.listdir(namespace)
    except FileNotFoundError:
        return []
    return sorted(name for name in names if parse_lock_name(name) is not None)


def pid_is_alive(pid: int) -> bool:
    """
    Check whether a process id belongs to a live process.

    Signal 0 performs the existence and permission checks without delivering
    anything. A PermissionError still means the process exists.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@contextmanager
def counter_lock(path: str) -> Iterator[None]:
    """
    Hold an exclusive ``flock`` on a micro-lock file for the duration of the block.

    Args:
        path: Micro-lock file, created on first use
    """
    fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def read_counter(path: str, default: int = 0) -> int:
    """Read an integer counter file; missing or empty files read as ``default``."""
    try:
        with open(path) as handle:
            content = handle.read().strip()
    except FileNotFoundError:
        return default
    if not content:
        return default
    try:
        return int(content)
    except ValueError:
        logger.warning(f"Counter file {path} holds non-integer value {content!r}")
        return default


def write_counter(path: str, value: int) -> None:
    """Write a counter so concurrent readers see either the old or the new value."""
    _atomic_write(path, f"{value}\n")


def _atomic_write(path: str, content: str) -> None:
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp_")
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        remove(tmp_path)
        raise
