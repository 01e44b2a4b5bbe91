"""
Unordered slot semaphore for concurrent download processes.

Caps how many processes may run one class of operation at the same time
(for example, simultaneous Overpass downloads) without any ordering between
waiters: whichever process finds a free slot first takes it.

Each holder is represented by a ``{pid}.lock`` entry in the ``slots/``
namespace of the queue directory. The count-then-create step runs under an
``flock`` on ``semaphore_lock`` so the number of entries never exceeds the
limit.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Optional

from scripts.coordination import locks
from scripts.coordination.reaper import StaleLockReaper


class SlotSemaphore:
    """Cap on concurrently active operations of one resource class."""

    def __init__(
        self,
        queue_dir: str,
        limit: int,
        max_wait_attempts: int = 10,
        poll_interval: float = 0.5,
        reaper: Optional[StaleLockReaper] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if limit < 1:
            raise ValueError(f"Slot limit must be at least 1, got {limit}")

        self.queue_dir = queue_dir
        self.slots_dir = os.path.join(queue_dir, "slots")
        self.lock_file = os.path.join(queue_dir, "semaphore_lock")
        self.limit = limit
        self.max_wait_attempts = max_wait_attempts
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self.reaper = reaper or StaleLockReaper(logger=self.logger)

        os.makedirs(self.slots_dir, exist_ok=True)

    @classmethod
    def from_config(cls, logger: Optional[logging.Logger] = None) -> "SlotSemaphore":
        """Build a semaphore from the global configuration."""
        from config.settings import config

        return cls(
            queue_dir=config.queue_dir,
            limit=config.RATE_LIMIT,
            max_wait_attempts=config.SLOT_MAX_WAIT_ATTEMPTS,
            poll_interval=config.SLOT_CHECK_INTERVAL,
            reaper=StaleLockReaper(config.LOCK_LEASE_SECONDS, logger=logger),
            logger=logger,
        )

    def _slot_path(self, pid: int) -> str:
        return os.path.join(self.slots_dir, locks.lock_name(pid))

    def active_count(self) -> int:
        """Number of slot entries currently present."""
        return len(locks.list_locks(self.slots_dir))

    def acquire_slot(
        self,
        limit: Optional[int] = None,
        max_wait_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        pid: Optional[int] = None,
    ) -> bool:
        """
        Wait for a free slot and take it.

        Args:
            limit: Override for the slot limit
            max_wait_attempts: Number of admission checks before giving up
            poll_interval: Seconds between checks
            pid: Owner PID, defaults to the calling process

        Returns:
            bool: True if the slot was acquired, False on timeout
        """
        limit = limit or self.limit
        attempts = max_wait_attempts or self.max_wait_attempts
        interval = self.poll_interval if poll_interval is None else poll_interval
        pid = pid or os.getpid()
        slot_path = self._slot_path(pid)

        for attempt in range(1, attempts + 1):
            self.reaper.prune_stale(self.slots_dir)

            with locks.counter_lock(self.lock_file):
                if os.path.exists(slot_path):
                    self.logger.debug(f"Process {pid} already holds a slot")
                    return True

                active = self.active_count()
                if active < limit and locks.try_create(
                    slot_path, self.reaper.new_record(pid)
                ):
                    self.logger.debug(
                        f"Slot acquired by {pid} ({active + 1}/{limit} active)"
                    )
                    return True

            self.logger.debug(
                f"All {limit} slots busy, attempt {attempt}/{attempts}, waiting {interval}s"
            )
            if attempt < attempts:
                time.sleep(interval)

        self.logger.warning(f"Process {pid} timed out waiting for a slot")
        return False

    def release_slot(self, pid: Optional[int] = None) -> bool:
        """
        Release the slot held by ``pid``. Releasing twice is harmless.

        Returns:
            bool: True if a slot entry was removed
        """
        pid = pid or os.getpid()
        removed = locks.remove(self._slot_path(pid))
        if removed:
            self.logger.debug(f"Slot released by {pid}")
        return removed
