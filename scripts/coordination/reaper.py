"""
Stale lock reclamation.

A worker that dies while holding a slot or ticket leaves its lock entry
behind. The reaper scans a namespace and removes entries whose owner is gone,
so crashed workers cannot permanently shrink the available capacity.

An entry is stale when:
- its owner PID is not a live process, or
- leases are enabled and the lease recorded in the entry has expired.

Entries owned by live processes with a valid (or no) lease are never touched,
whoever the caller is.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, List, Optional

from scripts.coordination import locks


class StaleLockReaper:
    """Remove lock entries orphaned by crashed processes."""

    def __init__(
        self,
        lease_seconds: float = 0,
        logger: Optional[logging.Logger] = None,
        is_alive: Callable[[int], bool] = locks.pid_is_alive,
    ):
        """
        Args:
            lease_seconds: Lease length for new entries; 0 disables lease expiry
            logger: Logger for reclaim messages
            is_alive: PID liveness check
        """
        self.lease_seconds = lease_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._is_alive = is_alive

    def new_record(self, pid: int, ticket: Optional[int] = None) -> locks.LockRecord:
        """Create the record written into a fresh lock entry."""
        now = time.time()
        expires_at = now + self.lease_seconds if self.lease_seconds > 0 else None
        return locks.LockRecord(
            pid=pid, ticket=ticket, acquired_at=now, expires_at=expires_at
        )

    def is_stale(self, path: str) -> bool:
        """
        Decide whether the lock entry at ``path`` should be reclaimed.

        Args:
            path: Full path of a lock entry

        Returns:
            bool: True if the owner is dead or its lease has expired
        """
        parsed = locks.parse_lock_name(os.path.basename(path))
        if parsed is None:
            return False
        pid, _ = parsed

        if not self._is_alive(pid):
            return True

        if self.lease_seconds > 0:
            record = locks.read_record(path)
            if record is not None and record.is_expired():
                return True

        return False

    def prune_stale(
        self,
        namespace: str,
        on_reclaim: Optional[Callable[[str], None]] = None,
    ) -> List[str]:
        """
        Remove stale entries from a lock namespace.

        Args:
            namespace: Directory holding lock entries
            on_reclaim: Called with the entry name once for every entry this
                        call actually removed

        Returns:
            List[str]: Names of the entries removed by this call
        """
        reclaimed = []
        for name in locks.list_locks(namespace):
            path = os.path.join(namespace, name)
            if not self.is_stale(path):
                continue
            # Another reaper may win the unlink; only the winner reports it
            if locks.remove(path):
                reclaimed.append(name)
                self.logger.warning(f"Reclaimed stale lock {name} in {namespace}")
                if on_reclaim is not None:
                    on_reclaim(name)
        return reclaimed

    def renew(self, path: str, lease_seconds: Optional[float] = None) -> bool:
        """
        Extend the lease of a lock entry the caller owns.

        Args:
            path: Full path of the lock entry
            lease_seconds: New lease length, defaults to the reaper's lease

        Returns:
            bool: False if the entry no longer exists (it was reclaimed)
        """
        record = locks.read_record(path)
        if record is None or not os.path.exists(path):
            return False
        lease = lease_seconds if lease_seconds is not None else self.lease_seconds
        if lease <= 0:
            return True
        record.expires_at = time.time() + lease
        locks.write_record(path, record)
        return True
