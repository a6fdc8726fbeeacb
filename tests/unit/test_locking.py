"""
Unit tests for the per-source lease lock (dumpkeeper/backup/locking.py).
"""

import time
from datetime import timedelta

import pytest
from freezegun import freeze_time

from dumpkeeper.backup.errors import LockContentionError
from dumpkeeper.backup.locking import LeaseLock
from dumpkeeper.models import RunLock


class TestLeaseLock:
    """Test lease acquisition, contention and expiry."""

    def test_acquire_and_release(self, db):
        lock = LeaseLock('orders-db', ttl=60, heartbeat=0)

        lock.acquire()
        row = db.session.get(RunLock, 'orders-db')
        assert row.holder == lock.holder
        assert lock.held

        lock.release()
        assert db.session.get(RunLock, 'orders-db') is None
        assert not lock.held

    def test_contention(self, db):
        first = LeaseLock('orders-db', ttl=60, heartbeat=0)
        second = LeaseLock('orders-db', ttl=60, heartbeat=0)
        first.acquire()

        with pytest.raises(LockContentionError):
            second.acquire()

        assert db.session.get(RunLock, 'orders-db').holder == first.holder
        first.release()

    def test_distinct_sources_do_not_contend(self, db):
        orders = LeaseLock('orders-db', ttl=60, heartbeat=0)
        billing = LeaseLock('billing', ttl=60, heartbeat=0)

        orders.acquire()
        billing.acquire()

        assert RunLock.query.count() == 2
        orders.release()
        billing.release()

    def test_expired_lease_is_taken_over(self, db):
        with freeze_time('2024-03-01 02:00:00') as frozen:
            crashed = LeaseLock('orders-db', ttl=60, heartbeat=0)
            crashed.acquire()

            frozen.tick(timedelta(seconds=59))
            with pytest.raises(LockContentionError):
                LeaseLock('orders-db', ttl=60, heartbeat=0).acquire()

            frozen.tick(timedelta(seconds=2))
            successor = LeaseLock('orders-db', ttl=60, heartbeat=0)
            successor.acquire()

            assert db.session.get(RunLock, 'orders-db').holder == successor.holder

            # The old holder notices on its next renewal and cannot release the new lease
            assert crashed.renew() is False
            assert crashed.lost
            crashed.release()
            assert db.session.get(RunLock, 'orders-db').holder == successor.holder

            successor.release()

    def test_renew_extends_lease(self, db):
        with freeze_time('2024-03-01 02:00:00') as frozen:
            lock = LeaseLock('orders-db', ttl=60, heartbeat=0)
            lock.acquire()

            frozen.tick(timedelta(seconds=50))
            assert lock.renew() is True

            frozen.tick(timedelta(seconds=50))
            with pytest.raises(LockContentionError):
                LeaseLock('orders-db', ttl=60, heartbeat=0).acquire()

            lock.release()

    def test_release_without_acquire(self, db):
        LeaseLock('orders-db', ttl=60, heartbeat=0).release()

    def test_heartbeat_keeps_lease_alive(self, db):
        lock = LeaseLock('orders-db', ttl=1, heartbeat=0.1)
        lock.acquire()
        try:
            first_expiry = db.session.get(RunLock, 'orders-db').expires_at
            time.sleep(0.5)
            db.session.expire_all()
            assert db.session.get(RunLock, 'orders-db').expires_at > first_expiry
            assert not lock.lost
        finally:
            lock.release()

        assert db.session.get(RunLock, 'orders-db') is None

    def test_heartbeat_detects_takeover(self, db):
        lock = LeaseLock('orders-db', ttl=1, heartbeat=0.1)
        lock.acquire()
        try:
            row = db.session.get(RunLock, 'orders-db')
            row.holder = 'someone-else'
            db.session.commit()

            deadline = time.monotonic() + 2
            while not lock.lost and time.monotonic() < deadline:
                time.sleep(0.05)

            assert lock.lost
        finally:
            lock.release()

    @pytest.mark.parametrize('ttl,heartbeat', [(0, 0), (-5, 0), (10, 10), (10, 30)])
    def test_invalid_settings(self, ttl, heartbeat):
        with pytest.raises(ValueError):
            LeaseLock('orders-db', ttl=ttl, heartbeat=heartbeat)
