"""
Unit tests for stale lock reclamation.
"""

import multiprocessing
import os
import time

from scripts.coordination import locks
from scripts.coordination.reaper import StaleLockReaper


def _dead_pid() -> int:
    process = multiprocessing.get_context("fork").Process(target=time.sleep, args=(0,))
    process.start()
    process.join()
    return process.pid


class TestIsStale:
    """Test cases for staleness decisions."""

    def test_live_owner_is_not_stale(self, tmp_path):
        """Test that an entry of the current process is kept."""
        path = str(tmp_path / locks.lock_name(os.getpid()))
        locks.try_create(path)

        assert StaleLockReaper().is_stale(path) is False

    def test_dead_owner_is_stale(self, tmp_path):
        """Test that an entry of a finished process is stale."""
        path = str(tmp_path / locks.lock_name(_dead_pid(), 3))
        locks.try_create(path)

        assert StaleLockReaper().is_stale(path) is True

    def test_expired_lease_is_stale_even_if_alive(self, tmp_path):
        """Test that an expired lease is reclaimed from a live owner."""
        path = str(tmp_path / locks.lock_name(os.getpid()))
        record = locks.LockRecord(pid=os.getpid(), acquired_at=0.0, expires_at=1.0)
        locks.try_create(path, record)

        assert StaleLockReaper(lease_seconds=30).is_stale(path) is True

    def test_expired_lease_ignored_when_leases_disabled(self, tmp_path):
        """Test that lease data is not consulted without a configured lease."""
        path = str(tmp_path / locks.lock_name(os.getpid()))
        record = locks.LockRecord(pid=os.getpid(), acquired_at=0.0, expires_at=1.0)
        locks.try_create(path, record)

        assert StaleLockReaper(lease_seconds=0).is_stale(path) is False

    def test_foreign_file_is_not_stale(self, tmp_path):
        """Test that files that are not lock entries are never reclaimed."""
        path = tmp_path / "ticket_counter"
        path.write_text("3")

        assert StaleLockReaper(is_alive=lambda pid: False).is_stale(str(path)) is False


class TestPruneStale:
    """Test cases for namespace pruning."""

    def test_removes_dead_and_keeps_live(self, tmp_path):
        """Test that only dead owners lose their entries."""
        live = locks.lock_name(os.getpid())
        dead = locks.lock_name(_dead_pid())
        locks.try_create(str(tmp_path / live))
        locks.try_create(str(tmp_path / dead))

        reclaimed = StaleLockReaper().prune_stale(str(tmp_path))

        assert reclaimed == [dead]
        assert locks.list_locks(str(tmp_path)) == [live]

    def test_live_entry_survives_repeated_pruning(self, tmp_path):
        """Test that any number of prune passes leave a live entry alone."""
        live = locks.lock_name(os.getpid())
        locks.try_create(str(tmp_path / live))
        reaper = StaleLockReaper()

        for _ in range(5):
            assert reaper.prune_stale(str(tmp_path)) == []

        assert locks.list_locks(str(tmp_path)) == [live]

    def test_callback_runs_once_per_removed_entry(self, tmp_path):
        """Test that on_reclaim is called exactly for removed entries."""
        for pid in (101, 102):
            locks.try_create(str(tmp_path / locks.lock_name(pid)))
        seen = []
        reaper = StaleLockReaper(is_alive=lambda pid: False)

        reaper.prune_stale(str(tmp_path), on_reclaim=seen.append)
        reaper.prune_stale(str(tmp_path), on_reclaim=seen.append)

        assert seen == ["101.lock", "102.lock"]


class TestRenew:
    """Test cases for lease renewal."""

    def test_renew_extends_lease(self, tmp_path):
        """Test that renewing moves the expiry forward."""
        path = str(tmp_path / locks.lock_name(os.getpid()))
        reaper = StaleLockReaper(lease_seconds=60)
        locks.try_create(path, reaper.new_record(os.getpid()))
        before = locks.read_record(path).expires_at

        time.sleep(0.01)
        assert reaper.renew(path) is True
        assert locks.read_record(path).expires_at > before

    def test_renew_missing_entry(self, tmp_path):
        """Test that renewing a reclaimed entry reports False."""
        reaper = StaleLockReaper(lease_seconds=60)
        assert reaper.renew(str(tmp_path / "1.lock")) is False

    def test_new_record_without_lease(self):
        """Test that records carry no expiry when leases are disabled."""
        record = StaleLockReaper().new_record(10, ticket=2)

        assert record.pid == 10
        assert record.ticket == 2
        assert record.expires_at is None
