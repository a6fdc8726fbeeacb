"""
Lease-based run lock, one per source.

The lock is a row in run_locks carrying an expiry. The holder renews it from
a heartbeat thread; a crashed holder stops renewing and the next run takes
the lease over once it has expired. Acquisition never waits: contention is
reported immediately with LockContentionError.
"""

import time
import uuid
import logging
import threading
from datetime import timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from dumpkeeper import db
from dumpkeeper.models import RunLock
from dumpkeeper.utils.clock import utcnow
from .errors import LockContentionError

logger = logging.getLogger(__name__)


class LeaseLock:
    """
    Exclusive, expiring lock for one source.

    Usage:
        lock = LeaseLock('orders-db', ttl=300, heartbeat=60)
        lock.acquire()
        try:
            ...
            if lock.lost: abort
        finally:
            lock.release()
    """

    def __init__(self, source_id: str, ttl: float = 300, heartbeat: Optional[float] = 60):
        """
        Initialize the lock.

        Args:
            source_id: Source the lock protects
            ttl: Lease duration in seconds
            heartbeat: Renewal interval in seconds (None or 0 disables the heartbeat thread)
        """
        if ttl <= 0:
            raise ValueError(f"Lock TTL must be positive: {ttl}")
        if heartbeat and heartbeat >= ttl:
            raise ValueError("Lock heartbeat interval must be shorter than the TTL")

        self.source_id = source_id
        self.ttl = timedelta(seconds=ttl)
        self.heartbeat = heartbeat
        self.holder = uuid.uuid4().hex

        self.held = False
        self._lost = threading.Event()
        self._stop = threading.Event()
        self._thread = None
        self._app = None
        self._renewed_at = None

    @property
    def lost(self) -> bool:
        """True once a renewal found the lease taken over or gone."""
        return self._lost.is_set()

    def acquire(self):
        """
        Take the lease, or take over an expired one.

        Raises:
            LockContentionError: If a live lease is held by someone else
        """
        now = utcnow()
        expires_at = now + self.ttl

        existing = db.session.get(RunLock, self.source_id)

        if existing is None:
            db.session.add(RunLock(
                source_id=self.source_id,
                holder=self.holder,
                acquired_at=now,
                heartbeat_at=now,
                expires_at=expires_at
            ))
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                raise LockContentionError(f"Source {self.source_id} is already being backed up")
        else:
            previous_holder = existing.holder
            result = db.session.execute(
                update(RunLock)
                .where(RunLock.source_id == self.source_id, RunLock.expires_at <= now)
                .values(holder=self.holder, acquired_at=now, heartbeat_at=now, expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()

            if result.rowcount != 1:
                raise LockContentionError(f"Source {self.source_id} is already being backed up")

            logger.warning(
                f"Took over expired lease for {self.source_id} from holder {previous_holder}"
            )

        self.held = True
        self._lost.clear()
        self._renewed_at = time.monotonic()
        logger.debug(f"Acquired lease for {self.source_id} (holder {self.holder})")

        if self.heartbeat:
            self._start_heartbeat()

    def renew(self) -> bool:
        """
        Extend the lease.

        Returns:
            True if the lease is still ours, False if it was lost
        """
        now = utcnow()
        result = db.session.execute(
            update(RunLock)
            .where(RunLock.source_id == self.source_id, RunLock.holder == self.holder)
            .values(heartbeat_at=now, expires_at=now + self.ttl)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        if result.rowcount != 1:
            self._lost.set()
            logger.error(f"Lease for {self.source_id} was lost (holder {self.holder})")
            return False

        self._renewed_at = time.monotonic()
        return True

    def release(self):
        """Give the lease back. Safe to call when the lease was never acquired."""
        self._stop_heartbeat()

        if not self.held:
            return

        db.session.rollback()
        db.session.execute(
            delete(RunLock)
            .where(RunLock.source_id == self.source_id, RunLock.holder == self.holder)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        self.held = False
        logger.debug(f"Released lease for {self.source_id}")

    def _start_heartbeat(self):
        self._app = current_app._get_current_object()
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._heartbeat_loop,
            name=f"lease-heartbeat[{self.source_id}]",
            daemon=True
        )
        self._thread.start()

    def _stop_heartbeat(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _heartbeat_loop(self):
        with self._app.app_context():
            while not self._stop.wait(self.heartbeat):
                try:
                    if not self.renew():
                        return
                except Exception as e:
                    db.session.rollback()
                    logger.error(f"Failed to renew lease for {self.source_id}: {e}")
                    if time.monotonic() - self._renewed_at >= self.ttl.total_seconds():
                        self._lost.set()
                        return
