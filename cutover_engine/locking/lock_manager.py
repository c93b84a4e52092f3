# cutover_engine/locking/lock_manager.py
"""Exclusivity lock manager - lease-based ownership of an exclusive resource."""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from cutover_engine.core.errors import LockAlreadyHeld, LockExpired, ValidationError
from cutover_engine.core.models import Lock, utcnow
from cutover_engine.core.repository import LockRepository

logger = logging.getLogger(__name__)


class LockManager:
    """
    Guarantees at most one valid holder per resource.

    A holder that stops renewing loses the lease once `expires_at` passes,
    which is how a crashed instance's data directory becomes available
    again without operator action. Expiry is judged by the injected clock
    only; give every engine the same one (the database clock in production)
    and holders on other hosts never compare their own clocks.
    """

    def __init__(
        self,
        repository: LockRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repo = repository
        self._clock = clock

    def acquire(self, resource_id: str, holder_id: str, lease_seconds: float) -> Lock:
        """Take the lease or raise LockAlreadyHeld."""
        if lease_seconds <= 0:
            raise ValidationError("lease_seconds must be > 0")

        now = self._clock()
        lock = self._repo.try_acquire(
            resource_id=resource_id,
            holder_id=holder_id,
            now=now,
            expires_at=now + timedelta(seconds=lease_seconds),
        )

        if lock is None:
            current = self._repo.get(resource_id)
            holder = current.holder_id if current else None
            raise LockAlreadyHeld(
                f"{resource_id} is held by {holder}",
                holder_id=holder,
            )

        logger.info(
            f"[lock] {resource_id} acquired by {holder_id} "
            f"until {lock.expires_at.isoformat()}"
        )
        return lock

    def renew(self, lock: Lock, lease_seconds: float) -> Lock:
        """Extend a lease we still hold, or raise LockExpired."""
        now = self._clock()
        renewed = self._repo.renew(
            resource_id=lock.resource_id,
            holder_id=lock.holder_id,
            now=now,
            expires_at=now + timedelta(seconds=lease_seconds),
        )

        if renewed is None:
            raise LockExpired(
                f"Lease on {lock.resource_id} for {lock.holder_id} expired "
                f"or was taken over"
            )

        logger.debug(f"[lock] {lock.resource_id} renewed until {renewed.expires_at.isoformat()}")
        return renewed

    def release(self, lock: Lock) -> None:
        """Idempotent; releasing a lost or already released lease is a no-op."""
        released = self._repo.release(lock.resource_id, lock.holder_id)
        if released:
            logger.info(f"[lock] {lock.resource_id} released by {lock.holder_id}")
        else:
            logger.debug(f"[lock] {lock.resource_id} release by {lock.holder_id} was a no-op")

    def current(self, resource_id: str) -> Optional[Lock]:
        """The valid lease on a resource, if any."""
        lock = self._repo.get(resource_id)
        if lock and lock.is_valid(self._clock()):
            return lock
        return None

    def is_held_by(self, resource_id: str, holder_id: str) -> bool:
        lock = self.current(resource_id)
        return lock is not None and lock.holder_id == holder_id

    def force_release(self, resource_id: str) -> bool:
        """Operator override: drop whatever lease exists."""
        dropped = self._repo.delete(resource_id)
        if dropped:
            logger.warning(f"[lock] {resource_id} force-released")
        return dropped

    def now(self) -> datetime:
        return self._clock()


class LeaseRenewer:
    """
    Background heartbeat keeping one lease alive.

    Renews every `lease_seconds * renew_fraction`. If a renewal is refused
    the renewer stops and calls `on_lost` once.
    """

    def __init__(
        self,
        manager: LockManager,
        lock: Lock,
        lease_seconds: float,
        *,
        renew_fraction: float = 1 / 3,
        on_lost: Optional[Callable[[Lock], None]] = None,
    ):
        self._manager = manager
        self._lock = lock
        self._lease_seconds = lease_seconds
        self._interval = max(lease_seconds * renew_fraction, 0.01)
        self._on_lost = on_lost
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._guard = threading.Lock()
        self.lost = False

    @property
    def lock(self) -> Lock:
        with self._guard:
            return self._lock

    def start(self) -> "LeaseRenewer":
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"lease-{self._lock.resource_id}",
            daemon=True,
        )
        self._thread.start()
        return self

    def stop(self, release: bool = True) -> None:
        """Stop renewing; by default also give the lease back."""
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join()
        if release and not self.lost:
            self._manager.release(self.lock)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self):
        while not self._stop_event.wait(self._interval):
            try:
                renewed = self._manager.renew(self.lock, self._lease_seconds)
                with self._guard:
                    self._lock = renewed
            except LockExpired:
                self.lost = True
                logger.error(
                    f"[lock] Lost lease on {self._lock.resource_id} "
                    f"held by {self._lock.holder_id}"
                )
                if self._on_lost:
                    self._on_lost(self._lock)
                return
            except Exception as e:
                # Transient store error; the lease still has time left
                logger.warning(f"[lock] Renewal error for {self._lock.resource_id}: {e}")
