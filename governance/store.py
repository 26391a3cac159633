"""
store.py — Versioned record store with per-key single-writer locks.

Stands in for the shared document database. Every record carries a
`version` counter; writers read a copy, decide, then call update() with the
version they read. update() re-checks the version while holding the key's
lock and raises ConflictError when another writer got there first.

The optional `before_commit` hook runs under the same lock, after the
version check and before the record is replaced. Callers use it to append
the audit entry, so an audit record is durable no later than the
transition it describes and is never written for a transition that lost
the race.
"""

import copy
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from governance.errors import ConflictError, LockTimeoutError, NotFoundError

logger = logging.getLogger(__name__)


class VersionedStore:
    """In-process store keyed by (collection, key)."""

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self._records: dict[str, dict[str, Any]] = defaultdict(dict)
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock_for(self, collection: str, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get((collection, key))
            if lock is None:
                lock = threading.Lock()
                self._locks[(collection, key)] = lock
            return lock

    @contextmanager
    def locked(
        self,
        collection: str,
        key: str,
        timeout: Optional[float] = None,
    ) -> Iterator[None]:
        """Hold the single-writer lock for one entity key.

        Raises:
            LockTimeoutError: If the lock is not acquired within `timeout`
                seconds (defaults to the store's lock_timeout).
        """
        lock = self._lock_for(collection, key)
        wait = self.lock_timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            logger.warning("Lock timeout on %s/%s after %.1fs", collection, key, wait)
            raise LockTimeoutError(
                f"Timed out waiting for {collection}/{key}; re-query before retrying",
                entity_id=key,
            )
        try:
            yield
        finally:
            lock.release()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, collection: str, key: str) -> Optional[Any]:
        record = self._records[collection].get(key)
        return copy.deepcopy(record) if record is not None else None

    def get(self, collection: str, key: str) -> Any:
        record = self.find(collection, key)
        if record is None:
            raise NotFoundError(f"No {collection} with id '{key}'", entity_id=key)
        return record

    def all(
        self,
        collection: str,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> list[Any]:
        records = list(self._records[collection].values())
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        return copy.deepcopy(records)

    def count(self, collection: str) -> int:
        return len(self._records[collection])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(
        self,
        collection: str,
        key: str,
        record: Any,
        before_commit: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """Store a new record at version 1.

        Raises:
            ConflictError: If the key already exists.
        """
        with self.locked(collection, key):
            if key in self._records[collection]:
                raise ConflictError(f"{collection} '{key}' already exists", entity_id=key)
            new = copy.deepcopy(record)
            new.version = 1
            if before_commit is not None:
                before_commit(new)
            self._records[collection][key] = new
            return copy.deepcopy(new)

    def update(
        self,
        collection: str,
        key: str,
        record: Any,
        expected_version: int,
        before_commit: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """Replace a record if its stored version still equals `expected_version`.

        Args:
            collection: Collection name.
            key: Entity id.
            record: New record state (its version attribute is overwritten).
            expected_version: Version the caller based its decision on.
            before_commit: Hook run under the lock after the version check.

        Returns:
            A copy of the committed record with the bumped version.

        Raises:
            NotFoundError: If the key does not exist.
            ConflictError: If the stored version differs.
        """
        with self.locked(collection, key):
            current = self._records[collection].get(key)
            if current is None:
                raise NotFoundError(f"No {collection} with id '{key}'", entity_id=key)
            if current.version != expected_version:
                raise ConflictError(
                    f"{collection} '{key}' was modified concurrently "
                    f"(expected v{expected_version}, found v{current.version})",
                    entity_id=key,
                )
            new = copy.deepcopy(record)
            new.version = expected_version + 1
            if before_commit is not None:
                before_commit(new)
            self._records[collection][key] = new
            return copy.deepcopy(new)
