"""Lease-based mutual exclusion on top of an atomic document store."""

import logging
from typing import Callable, Optional

from leaselock.errors import ConfigurationError, DuplicateKeyError
from leaselock.models import (
    CODE,
    DEFAULT_LEASE_MS,
    EXPIRE,
    EXPIRED,
    NAME,
    LockRecord,
    generate_code,
    now_ms,
    retired_name,
)
from leaselock.store import DocumentStore

logger = logging.getLogger(__name__)


class LockHandle:
    """
    A named lock bound to one resource.

    All protocol state lives in the store; the handle only holds its
    configuration, so any number of handles in any number of processes may
    point at the same name.

    Guarantees (given a store with atomic single-document updates and a
    unique index on ``name``):
    - At most one live record per name
    - acquire never blocks, spins or retries
    - release/extend only ever touch the record owning the given code

    Does NOT:
    - Queue waiters or provide fairness
    - Retry a failed acquire
    - Reap stale locks in the background (acquire reaps lazily)
    """

    def __init__(
        self,
        store: DocumentStore,
        name: str,
        lease_ms: int = DEFAULT_LEASE_MS,
        clock: Optional[Callable[[], int]] = None,
    ):
        if store is None:
            raise ConfigurationError("LockHandle requires a document store")
        if not name:
            raise ConfigurationError("LockHandle requires a lock name")
        if isinstance(lease_ms, bool) or not isinstance(lease_ms, int) or lease_ms <= 0:
            raise ConfigurationError(f"lease_ms must be a positive integer, got {lease_ms!r}")
        self._store = store
        self._name = name
        self._lease_ms = lease_ms
        self._clock = clock or now_ms

    @property
    def name(self) -> str:
        return self._name

    @property
    def lease_ms(self) -> int:
        return self._lease_ms

    def ensure_indexes(self) -> None:
        """Create the unique index on ``name``. Idempotent; call once before use."""
        self._store.ensure_unique_index(NAME)

    def acquire(self) -> Optional[str]:
        """Try to take the lock.

        Returns a fresh ownership code, or None if someone else holds a live
        lease. Store faults raise StoreError.
        """
        now = self._clock()
        code = generate_code()

        # 1. Retire a lapsed lease so its name no longer blocks the insert
        stale = self._store.find_one_and_update(
            {NAME: self._name, EXPIRE: {"$lt": now}},
            {"$set": {NAME: retired_name(self._name, now, code), EXPIRED: now}},
        )
        if stale is not None:
            reaped = LockRecord.from_dict(stale)
            logger.info(
                "Reaped stale lock '%s' (expired at %d, now=%d)",
                reaped.name, reaped.expire, now,
            )

        # 2. Claim: the unique index on name lets exactly one insert through
        record = LockRecord(
            name=self._name,
            code=code,
            expire=now + self._lease_ms,
            inserted=now,
        )
        try:
            self._store.insert(record.to_dict())
        except DuplicateKeyError:
            logger.debug("Lock '%s' is held by another owner", self._name)
            return None

        logger.info("Acquired lock '%s' until %d", self._name, record.expire)
        return record.code

    def release(self, code: str) -> bool:
        """Retire the live lease owned by ``code``.

        Returns False if there is none: already released, already reaped,
        expired, or never issued.
        """
        now = self._clock()
        old = self._store.find_one_and_update(
            self._owned_query(code, now),
            {"$set": {NAME: retired_name(self._name, now, code), EXPIRED: now}},
        )
        if old is None:
            logger.debug("Nothing to release for lock '%s'", self._name)
            return False

        logger.info("Released lock '%s'", self._name)
        return True

    def extend(self, code: str, extension_ms: Optional[int] = None) -> bool:
        """Push the lease owned by ``code`` out by ``extension_ms``.

        The extension is added to the current deadline, not to now. A missing
        or non-positive extension uses the handle's lease duration.
        """
        if not extension_ms or extension_ms <= 0:
            extension_ms = self._lease_ms

        now = self._clock()
        old = self._store.find_one_and_update(
            self._owned_query(code, now),
            {"$inc": {EXPIRE: extension_ms}},
        )
        if old is None:
            logger.debug("Nothing to extend for lock '%s'", self._name)
            return False

        logger.info(
            "Extended lock '%s' by %dms until %d",
            self._name, extension_ms, old[EXPIRE] + extension_ms,
        )
        return True

    def _owned_query(self, code: str, now: int) -> dict:
        # Live, unexpired, and issued to this code
        return {
            NAME: self._name,
            CODE: code,
            EXPIRE: {"$gt": now},
            EXPIRED: {"$exists": False},
        }

    def __repr__(self) -> str:
        return f"LockHandle(name={self._name!r}, lease_ms={self._lease_ms})"
