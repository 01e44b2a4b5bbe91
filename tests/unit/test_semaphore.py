"""
Unit tests for the slot semaphore.

Single-process tests use fake owner pids with a reaper that treats every pid
as alive; the stress test runs real worker processes.
"""

import multiprocessing
import os
import time

import pytest

from scripts.coordination import locks
from scripts.coordination.reaper import StaleLockReaper
from scripts.coordination.semaphore import SlotSemaphore


def _always_alive(pid):
    return True


@pytest.fixture
def semaphore(queue_dir):
    """Provide a 2-slot semaphore with fast polling."""
    return SlotSemaphore(
        queue_dir,
        limit=2,
        max_wait_attempts=3,
        poll_interval=0.01,
        reaper=StaleLockReaper(is_alive=_always_alive),
    )


def _hold_slot(queue_dir, limit, observed):
    semaphore = SlotSemaphore(queue_dir, limit=limit, max_wait_attempts=2000, poll_interval=0.005)
    if not semaphore.acquire_slot():
        observed.put(-1)
        return
    observed.put(semaphore.active_count())
    time.sleep(0.02)
    semaphore.release_slot()


class TestSlotSemaphore:
    """Test cases for slot acquisition and release."""

    def test_invalid_limit(self, queue_dir):
        """Test that a limit below 1 is rejected."""
        with pytest.raises(ValueError, match="at least 1"):
            SlotSemaphore(queue_dir, limit=0)

    def test_acquire_until_full(self, semaphore):
        """Test that acquisitions succeed up to the limit and then time out."""
        assert semaphore.acquire_slot(pid=1001) is True
        assert semaphore.acquire_slot(pid=1002) is True
        assert semaphore.acquire_slot(pid=1003) is False
        assert semaphore.active_count() == 2

    def test_reacquire_by_holder(self, semaphore):
        """Test that a holder asking again keeps its single slot."""
        assert semaphore.acquire_slot(pid=1001) is True
        assert semaphore.acquire_slot(pid=1001) is True
        assert semaphore.active_count() == 1

    def test_release_frees_capacity(self, semaphore):
        """Test that releasing a slot lets a waiter in."""
        semaphore.acquire_slot(pid=1001)
        semaphore.acquire_slot(pid=1002)

        assert semaphore.release_slot(pid=1001) is True
        assert semaphore.acquire_slot(pid=1003) is True

    def test_double_release(self, semaphore):
        """Test that releasing twice does not raise and reports False."""
        semaphore.acquire_slot(pid=1001)

        assert semaphore.release_slot(pid=1001) is True
        assert semaphore.release_slot(pid=1001) is False

    def test_no_sleep_after_last_attempt(self, semaphore, monkeypatch):
        """Test that the wait loop sleeps only between attempts."""
        sleeps = []
        monkeypatch.setattr("scripts.coordination.semaphore.time.sleep", sleeps.append)
        semaphore.acquire_slot(pid=1001)
        semaphore.acquire_slot(pid=1002)

        assert semaphore.acquire_slot(pid=1003, max_wait_attempts=3) is False
        assert sleeps == [0.01, 0.01]

    def test_dead_holder_is_reclaimed(self, queue_dir):
        """Test that a slot left by a dead process is reused."""
        semaphore = SlotSemaphore(
            queue_dir,
            limit=1,
            max_wait_attempts=1,
            poll_interval=0,
            reaper=StaleLockReaper(is_alive=lambda pid: pid != 1001),
        )
        locks.try_create(os.path.join(semaphore.slots_dir, locks.lock_name(1001)))

        assert semaphore.acquire_slot(pid=1002) is True
        assert locks.list_locks(semaphore.slots_dir) == ["1002.lock"]

    @pytest.mark.slow
    def test_admission_bound_under_contention(self, queue_dir):
        """Test that 3x limit concurrent processes never exceed the limit."""
        limit = 2
        ctx = multiprocessing.get_context("fork")
        observed = ctx.Queue()
        processes = [
            ctx.Process(target=_hold_slot, args=(queue_dir, limit, observed))
            for _ in range(3 * limit)
        ]
        for process in processes:
            process.start()
        for process in processes:
            process.join()

        counts = [observed.get(timeout=5) for _ in processes]
        assert all(1 <= count <= limit for count in counts)
