"""
FIFO ticket queue for rate-limited downloads.

Callers draw a ticket from a shared counter and then poll until it is their
turn and a slot is free. This keeps Overpass requests starting in the order
they were requested while capping how many run at once.

On-disk layout under the queue directory::

    ticket_counter       last issued ticket
    current_serving      lowest ticket of the admission window
    ticket_lock          flock guarding ticket_counter
    serving_lock         flock guarding current_serving and marker removal
    slot_lock            flock guarding the active-count check and admission
    waiting/{pid}.{ticket}.lock
    active/{pid}.{ticket}.lock

Every issued ticket produces exactly one release event: the owner releases it
after its work (or after giving up), or the reaper releases it for a dead
owner. Each release event advances ``current_serving`` by one. A ticket is
admitted when it falls inside the window
``[current_serving, current_serving + limit)`` and fewer than ``limit``
tickets are active, so the oldest outstanding ticket can always be admitted
once a slot frees up.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from scripts.coordination import locks
from scripts.coordination.reaper import StaleLockReaper


class RatePoller(Protocol):
    def check_status(self) -> int: ...


@dataclass
class QueueState:
    """Snapshot of the queue counters and lock namespaces."""

    ticket_counter: int
    current_serving: int
    active: int
    waiting: int


class TicketQueue:
    """Ordered admission control shared by cooperating processes."""

    def __init__(
        self,
        queue_dir: str,
        limit: int,
        poll_interval: float = 1.0,
        timeout: float = 3600,
        rate_poller: Optional[RatePoller] = None,
        reaper: Optional[StaleLockReaper] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if limit < 1:
            raise ValueError(f"Queue limit must be at least 1, got {limit}")

        self.queue_dir = queue_dir
        self.limit = limit
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.rate_poller = rate_poller
        self.logger = logger or logging.getLogger(__name__)
        self.reaper = reaper or StaleLockReaper(logger=self.logger)

        self.counter_file = os.path.join(queue_dir, "ticket_counter")
        self.serving_file = os.path.join(queue_dir, "current_serving")
        self.ticket_lock = os.path.join(queue_dir, "ticket_lock")
        self.serving_lock = os.path.join(queue_dir, "serving_lock")
        self.slot_lock = os.path.join(queue_dir, "slot_lock")
        self.waiting_dir = os.path.join(queue_dir, "waiting")
        self.active_dir = os.path.join(queue_dir, "active")

        os.makedirs(self.waiting_dir, exist_ok=True)
        os.makedirs(self.active_dir, exist_ok=True)
        self._initialize_counters()

    @classmethod
    def from_config(
        cls,
        rate_poller: Optional[RatePoller] = None,
        logger: Optional[logging.Logger] = None,
    ) -> "TicketQueue":
        """Build a queue from the global configuration."""
        from config.settings import config

        return cls(
            queue_dir=config.queue_dir,
            limit=config.RATE_LIMIT,
            poll_interval=config.TICKET_POLL_INTERVAL,
            timeout=config.TICKET_TIMEOUT,
            rate_poller=rate_poller,
            reaper=StaleLockReaper(config.LOCK_LEASE_SECONDS, logger=logger),
            logger=logger,
        )

    def _initialize_counters(self) -> None:
        with locks.counter_lock(self.ticket_lock):
            if not os.path.exists(self.counter_file):
                locks.write_counter(self.counter_file, 0)
        with locks.counter_lock(self.serving_lock):
            if not os.path.exists(self.serving_file):
                locks.write_counter(self.serving_file, 1)

    def _marker(self, namespace: str, pid: int, ticket: int) -> str:
        return os.path.join(namespace, locks.lock_name(pid, ticket))

    def state(self) -> QueueState:
        """Read the current counters and lock counts."""
        return QueueState(
            ticket_counter=locks.read_counter(self.counter_file, 0),
            current_serving=locks.read_counter(self.serving_file, 1),
            active=len(locks.list_locks(self.active_dir)),
            waiting=len(locks.list_locks(self.waiting_dir)),
        )

    def get_ticket(self, pid: Optional[int] = None) -> int:
        """
        Issue the next ticket.

        The counter increment and the waiting marker are written in the same
        critical section, so every issued ticket is visible to the reaper.

        Args:
            pid: Owner PID, defaults to the calling process

        Returns:
            int: The new ticket, starting at 1
        """
        pid = pid or os.getpid()
        with locks.counter_lock(self.ticket_lock):
            ticket = locks.read_counter(self.counter_file, 0) + 1
            locks.write_counter(self.counter_file, ticket)
            locks.try_create(
                self._marker(self.waiting_dir, pid, ticket),
                self.reaper.new_record(pid, ticket),
            )
        self.logger.debug(f"Process {pid} got ticket {ticket}")
        return ticket

    def _rate_wait(self) -> int:
        if self.rate_poller is None:
            return 0
        return self.rate_poller.check_status()

    def _in_window(self, ticket: int, limit: int) -> bool:
        serving = locks.read_counter(self.serving_file, 1)
        active = len(locks.list_locks(self.active_dir))
        return ticket < serving + limit and active < limit

    def wait_for_turn(
        self,
        ticket: int,
        limit: Optional[int] = None,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        pid: Optional[int] = None,
    ) -> bool:
        """
        Block until ``ticket`` is admitted or the timeout expires.

        Counters and lock namespaces are re-read on every iteration. When a
        rate poller is configured and reports a positive wait, that wait is
        slept before admission is attempted.

        Args:
            ticket: Ticket from get_ticket()
            limit: Override for the concurrency limit
            poll_interval: Seconds between checks
            timeout: Seconds before giving up
            pid: Owner PID, defaults to the calling process

        Returns:
            bool: True once the active lock is held, False on timeout. On
                  False the caller still owns the ticket and must release it.

        Raises:
            ValueError: If ticket is not a positive integer
        """
        if ticket < 1:
            raise ValueError(f"Invalid ticket: {ticket}")

        limit = limit or self.limit
        interval = self.poll_interval if poll_interval is None else poll_interval
        timeout = self.timeout if timeout is None else timeout
        pid = pid or os.getpid()
        active_path = self._marker(self.active_dir, pid, ticket)
        deadline = time.monotonic() + timeout

        while True:
            self.prune_stale()

            if self._in_window(ticket, limit):
                wait = self._rate_wait()
                if wait > 0:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self.logger.info(
                        f"Ticket {ticket}: Overpass asks to wait {wait}s before next request"
                    )
                    time.sleep(min(wait, remaining))
                    continue

                with locks.counter_lock(self.slot_lock):
                    if self._in_window(ticket, limit):
                        if locks.try_create(
                            active_path, self.reaper.new_record(pid, ticket)
                        ) or os.path.exists(active_path):
                            locks.remove(self._marker(self.waiting_dir, pid, ticket))
                            self.logger.debug(f"Ticket {ticket} admitted for {pid}")
                            return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(interval, remaining))

        state = self.state()
        self.logger.warning(
            f"Ticket {ticket} timed out after {timeout}s "
            f"(serving={state.current_serving}, active={state.active}/{limit})"
        )
        return False

    def _release(self, pid: int, ticket: int, reason: str) -> bool:
        with locks.counter_lock(self.serving_lock):
            removed_active = locks.remove(self._marker(self.active_dir, pid, ticket))
            removed_waiting = locks.remove(self._marker(self.waiting_dir, pid, ticket))
            if not (removed_active or removed_waiting):
                return False

            serving = locks.read_counter(self.serving_file, 1) + 1
            ceiling = locks.read_counter(self.counter_file, 0) + 1
            if serving > ceiling:
                self.logger.warning(
                    f"current_serving {serving} would pass ticket_counter + 1, clamping to {ceiling}"
                )
                serving = ceiling
            locks.write_counter(self.serving_file, serving)

        self.logger.debug(f"Ticket {ticket} of {pid} {reason}, now serving {serving}")
        return True

    def release_ticket(self, ticket: int, pid: Optional[int] = None) -> bool:
        """
        Release a ticket, whether it was admitted or is still waiting.

        Releasing a ticket that is already released is a no-op.

        Returns:
            bool: True if this call released the ticket and advanced the
                  serving pointer
        """
        return self._release(pid or os.getpid(), ticket, "released")

    def prune_stale(self) -> int:
        """
        Release tickets held or awaited by dead processes.

        Returns:
            int: Number of tickets reclaimed
        """
        reclaimed = 0
        for namespace in (self.active_dir, self.waiting_dir):
            for name in locks.list_locks(namespace):
                parsed = locks.parse_lock_name(name)
                if parsed is None or parsed[1] is None:
                    continue
                if not self.reaper.is_stale(os.path.join(namespace, name)):
                    continue
                pid, ticket = parsed
                if self._release(pid, ticket, "reclaimed from dead owner"):
                    reclaimed += 1
                    self.logger.warning(
                        f"Reclaimed ticket {ticket} from dead process {pid}"
                    )
        return reclaimed

    def reset(self) -> QueueState:
        """
        Clear every marker and move the window past all issued tickets.

        Operator recovery for a queue left inconsistent by manual
        interference. Must not run while workers are active.
        """
        with locks.counter_lock(self.ticket_lock):
            with locks.counter_lock(self.serving_lock):
                for namespace in (self.active_dir, self.waiting_dir):
                    for name in locks.list_locks(namespace):
                        locks.remove(os.path.join(namespace, name))
                counter = locks.read_counter(self.counter_file, 0)
                locks.write_counter(self.serving_file, counter + 1)
        self.logger.warning(f"Queue reset, serving set to {counter + 1}")
        return self.state()
