"""Named mutual-exclusion leases shared across process instances.

A lock is identified by name in one global namespace. Acquisition either
succeeds with a ``LockHandle`` or returns None once ``wait`` runs out.
Leases are either fixed (expire after ``lease`` seconds) or indefinite,
in which case a watchdog task keeps extending them for as long as the
acquiring task is alive.

``SQLiteLockService`` keeps leases in the shared database so every
instance pointed at the same file competes for the same names.
``InMemoryLockService`` implements the same contract inside one event
loop, for tests and single-process deployments.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Optional

import structlog

from partnermatch.core.errors import OperationFailed, lock_timeout

if TYPE_CHECKING:
    from partnermatch.persistence.database import Database

log = structlog.get_logger()

DEFAULT_WATCHDOG_LEASE = 30.0
DEFAULT_RETRY_INTERVAL = 0.05


@dataclass
class LockHandle:
    """Proof of holding a named lock.

    Attributes:
        name: Lock name
        owner: Random token identifying this acquisition
        lease: Fixed lease in seconds, or None when renewed by the watchdog
        acquired_at: Wall-clock acquisition time
    """

    name: str
    owner: str
    lease: Optional[float] = None
    acquired_at: float = field(default_factory=time.time)
    renewal: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    @property
    def indefinite(self) -> bool:
        return self.lease is None


class LockService(ABC):
    """Acquire/release protocol shared by every lock backend.

    Subclasses supply the atomic primitives; waiting, ownership tokens
    and the lease watchdog live here.
    """

    def __init__(
        self,
        watchdog_lease: float = DEFAULT_WATCHDOG_LEASE,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        """Initialize the lock service.

        Args:
            watchdog_lease: Lease length used for indefinite locks; renewed
                every third of this
            retry_interval: Seconds between attempts while waiting
        """
        self.watchdog_lease = watchdog_lease
        self.retry_interval = retry_interval

    @abstractmethod
    async def _try_acquire(self, name: str, owner: str, lease: float) -> bool:
        """Take ``name`` for ``owner`` if it is free or its lease expired."""

    @abstractmethod
    async def _renew(self, name: str, owner: str, lease: float) -> bool:
        """Extend a live lease held by ``owner``."""

    @abstractmethod
    async def _release(self, name: str, owner: str) -> bool:
        """Drop a live lease held by ``owner``."""

    @abstractmethod
    async def is_held(self, name: str) -> bool:
        """Check whether anyone currently holds a live lease on ``name``."""

    async def acquire(
        self,
        name: str,
        wait: Optional[float] = 0.0,
        lease: Optional[float] = None,
    ) -> Optional[LockHandle]:
        """Acquire a named lock.

        Args:
            name: Lock name
            wait: Seconds to keep trying; 0 tries once, None waits forever
            lease: Lease in seconds; None for an indefinite, watchdog-renewed lease

        Returns:
            LockHandle, or None if the lock was not obtained within ``wait``
        """
        owner = uuid.uuid4().hex
        effective_lease = lease if lease is not None else self.watchdog_lease
        loop = asyncio.get_running_loop()
        deadline = None if wait is None else loop.time() + wait
        attempts = 0

        while True:
            attempts += 1
            if await self._try_acquire(name, owner, effective_lease):
                break
            if deadline is not None and loop.time() >= deadline:
                log.debug("lock_not_acquired", name=name, attempts=attempts, wait=wait)
                return None
            delay = self.retry_interval
            if deadline is not None:
                delay = max(0.0, min(delay, deadline - loop.time()))
            await asyncio.sleep(delay)

        handle = LockHandle(name=name, owner=owner, lease=lease)
        if lease is None:
            handle.renewal = asyncio.create_task(
                self._watchdog(handle, asyncio.current_task())
            )

        log.debug("lock_acquired", name=name, attempts=attempts, lease=lease)
        return handle

    async def release(self, handle: LockHandle) -> bool:
        """Release a lock held through ``handle``.

        Releasing a lock that is no longer held (expired, or taken over by
        another owner) is a no-op.

        Returns:
            True if a live lease was released
        """
        if handle.renewal is not None and not handle.renewal.done():
            handle.renewal.cancel()

        released = await self._release(handle.name, handle.owner)
        if released:
            log.debug("lock_released", name=handle.name)
        else:
            log.warning("lock_release_noop", name=handle.name)
        return released

    @asynccontextmanager
    async def hold(
        self,
        name: str,
        wait: Optional[float] = 0.0,
        lease: Optional[float] = None,
    ) -> AsyncIterator[LockHandle]:
        """Hold ``name`` for the duration of the block.

        Raises:
            OperationFailed: With a LOCK_TIMEOUT error if not acquired in time
        """
        handle = await self.acquire(name, wait=wait, lease=lease)
        if handle is None:
            raise OperationFailed(lock_timeout(name))
        try:
            yield handle
        finally:
            await self.release(handle)

    async def _watchdog(self, handle: LockHandle, holder: Optional[asyncio.Task]) -> None:
        """Renew an indefinite lease while its acquiring task is alive."""
        interval = self.watchdog_lease / 3
        while True:
            await asyncio.sleep(interval)

            if holder is not None and holder.done():
                log.warning("lock_holder_gone", name=handle.name)
                return

            try:
                renewed = await self._renew(handle.name, handle.owner, self.watchdog_lease)
            except Exception as e:
                # Next tick retries; the lease still has two thirds left
                log.error("lock_renewal_error", name=handle.name, error=str(e))
                continue

            if not renewed:
                log.warning("lock_lease_lost", name=handle.name)
                return

            log.debug("lock_renewed", name=handle.name)


class InMemoryLockService(LockService):
    """Leases kept in a dict; exclusive within one event loop only."""

    def __init__(
        self,
        watchdog_lease: float = DEFAULT_WATCHDOG_LEASE,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        super().__init__(watchdog_lease=watchdog_lease, retry_interval=retry_interval)
        self._leases: dict[str, tuple[str, float]] = {}

    def _live_owner(self, name: str) -> Optional[str]:
        entry = self._leases.get(name)
        if entry is None:
            return None
        owner, expires_at = entry
        if expires_at <= time.time():
            del self._leases[name]
            return None
        return owner

    async def _try_acquire(self, name: str, owner: str, lease: float) -> bool:
        if self._live_owner(name) is not None:
            return False
        self._leases[name] = (owner, time.time() + lease)
        return True

    async def _renew(self, name: str, owner: str, lease: float) -> bool:
        if self._live_owner(name) != owner:
            return False
        self._leases[name] = (owner, time.time() + lease)
        return True

    async def _release(self, name: str, owner: str) -> bool:
        if self._live_owner(name) != owner:
            return False
        del self._leases[name]
        return True

    async def is_held(self, name: str) -> bool:
        return self._live_owner(name) is not None


class SQLiteLockService(LockService):
    """Leases stored in the shared ``locks`` table.

    Each attempt runs in a ``BEGIN IMMEDIATE`` transaction, so the
    read-then-claim step is serialized by SQLite's write lock across
    every connection and process using the database file.
    """

    def __init__(
        self,
        database: Optional["Database"] = None,
        watchdog_lease: float = DEFAULT_WATCHDOG_LEASE,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        from partnermatch.persistence.database import Database

        super().__init__(watchdog_lease=watchdog_lease, retry_interval=retry_interval)
        self.db = database or Database()

    async def _try_acquire(self, name: str, owner: str, lease: float) -> bool:
        await self.db.initialize()

        now = time.time()
        async with self.db.transaction(immediate=True) as conn:
            cursor = await conn.execute(
                "SELECT expires_at FROM locks WHERE name = ?", (name,)
            )
            row = await cursor.fetchone()
            if row is not None and row[0] > now:
                return False

            await conn.execute(
                """
                INSERT INTO locks (name, owner, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner = excluded.owner, expires_at = excluded.expires_at
                """,
                (name, owner, now + lease),
            )

        if row is not None:
            log.info("lock_expired_reclaimed", name=name)
        return True

    async def _renew(self, name: str, owner: str, lease: float) -> bool:
        await self.db.initialize()

        now = time.time()
        async with self.db.transaction(immediate=True) as conn:
            cursor = await conn.execute(
                "UPDATE locks SET expires_at = ? "
                "WHERE name = ? AND owner = ? AND expires_at > ?",
                (now + lease, name, owner, now),
            )
            return cursor.rowcount > 0

    async def _release(self, name: str, owner: str) -> bool:
        await self.db.initialize()

        async with self.db.transaction(immediate=True) as conn:
            cursor = await conn.execute(
                "SELECT expires_at FROM locks WHERE name = ? AND owner = ?",
                (name, owner),
            )
            row = await cursor.fetchone()
            if row is None:
                return False

            # Expired rows are dropped too, but releasing them is still a no-op
            await conn.execute(
                "DELETE FROM locks WHERE name = ? AND owner = ?", (name, owner)
            )
            return row[0] > time.time()

    async def is_held(self, name: str) -> bool:
        await self.db.initialize()

        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT 1 FROM locks WHERE name = ? AND expires_at > ?",
                (name, time.time()),
            )
            return await cursor.fetchone() is not None
