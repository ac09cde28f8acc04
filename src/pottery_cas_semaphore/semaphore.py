"""Distributed semaphore built on compare-and-swap writes.

This module implements a counting semaphore whose whole state lives in one
JSON record per region. There are no sessions or leases: every change is a
CAS write against the version token captured when the record was loaded,
and a node that loses a race simply loads again and retries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .exceptions import BootstrapError, LookupMiss, StoreError

if TYPE_CHECKING:
    from .store import Store

logger = logging.getLogger(__name__)

BOOTSTRAP_RETRIES = 5


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SemaphoreRecord:
    """The JSON document stored at a semaphore's path."""

    version: int
    concurrency: int
    holders: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "concurrency": self.concurrency,
                "holders": self.holders,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, encoded: str | bytes) -> SemaphoreRecord:
        if isinstance(encoded, bytes):
            encoded = encoded.decode()
        try:
            data: Any = json.loads(encoded)
            holders = data.get("holders") or {}
            return cls(
                version=int(data.get("version", 1)),
                concurrency=int(data.get("concurrency", 1)),
                holders={str(name): since for name, since in holders.items()},
            )
        except (ValueError, TypeError, AttributeError) as error:
            raise StoreError(f"Malformed semaphore record: {encoded!r}") from error


class Semaphore:
    """Distributed semaphore over a versioned key-value store.

    A Semaphore is a snapshot: :meth:`enter` and :meth:`exit` make at most
    one write each and report whether it landed. After a failed write (or
    any successful one) use :meth:`reload` before trying again.

    Usage:
        >>> sem = Semaphore.load(store, 'deploy/lock', concurrency=2)
        >>> if sem.enter('node-a'):
        ...     try:
        ...         # Critical section with limited concurrency
        ...         pass
        ...     finally:
        ...         sem.reload().exit('node-a')

    Args:
        store: Store holding the record
        path: Key of the record
        record: In-memory state, with ``version`` as the CAS token
        region: Store region the record lives in
    """

    def __init__(
        self,
        store: Store,
        path: str,
        record: SemaphoreRecord,
        region: str | None = None,
    ) -> None:
        self._store = store
        self._path = path
        self._record = record
        self._cas = record.version
        self._region = region

    @classmethod
    def load(
        cls,
        store: Store,
        path: str,
        concurrency: int,
        region: str | None = None,
    ) -> Semaphore:
        """Read the record at ``path``, creating it first if it is missing.

        ``concurrency`` always replaces the stored capacity while the stored
        holders are kept as they are.

        Raises:
            BootstrapError: If the record could not be created and read back
        """
        default = SemaphoreRecord(version=1, concurrency=concurrency, holders={})
        for _ in range(BOOTSTRAP_RETRIES):
            logger.info("Fetch lock state for %s (region=%s)", path, region)
            try:
                current = store.get(path, region)
            except LookupMiss:
                logger.info(
                    "Lock for %s did not exist, creating with value %s",
                    path,
                    default.to_json(),
                )
                # Losing this race is fine, the next read sees the winner
                store.put(path, default.to_json(), cas=0, region=region)
                continue

            persisted = SemaphoreRecord.from_json(current.value)
            record = SemaphoreRecord(
                version=current.version,
                concurrency=concurrency,
                holders=dict(persisted.holders),
            )
            return cls(store, path, record, region)

        raise BootstrapError(path, BOOTSTRAP_RETRIES)

    def reload(self) -> Semaphore:
        """Return a fresh snapshot of the same semaphore."""
        return type(self).load(
            self._store, self._path, self.concurrency, self._region
        )

    @property
    def path(self) -> str:
        return self._path

    @property
    def region(self) -> str | None:
        return self._region

    @property
    def version(self) -> int:
        """Version token the next write is checked against."""
        return self._cas

    @property
    def concurrency(self) -> int:
        return self._record.concurrency

    @property
    def holders(self) -> dict[str, str]:
        """Return a copy of the current holders and their entry times."""
        return dict(self._record.holders)

    def is_holder(self, holder_id: str) -> bool:
        return holder_id in self._record.holders

    def enter(self, holder_id: str) -> bool:
        """Take a slot for ``holder_id``.

        Re-entering is a no-op that succeeds without writing.

        Returns:
            True if ``holder_id`` holds a slot, False if the semaphore is
            full or someone else updated it since it was loaded
        """
        if self.is_holder(holder_id):
            return True
        if len(self._record.holders) >= self.concurrency:
            logger.debug(
                "Too many lock holders for %s (concurrency:%d)",
                self._path,
                self.concurrency,
            )
            return False

        holders = dict(self._record.holders)
        holders[holder_id] = _now()
        return self._write(holders)

    def exit(self, holder_id: str) -> bool:
        """Release the slot of ``holder_id``; releasing twice is a no-op."""
        if not self.is_holder(holder_id):
            return True

        holders = dict(self._record.holders)
        del holders[holder_id]
        return self._write(holders)

    def _write(self, holders: dict[str, str]) -> bool:
        """Write ``holders`` and keep them only if the store accepted them."""
        record = SemaphoreRecord(
            version=self._record.version,
            concurrency=self._record.concurrency,
            holders=holders,
        )
        result = self._store.put(
            self._path, record.to_json(), cas=self._cas, region=self._region
        )
        if not result:
            logger.debug(
                "Someone updated the lock %s at the same time, will retry",
                self._path,
            )
            return False
        self._record = record
        return True

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"path={self._path!r} "
            f"region={self._region!r} "
            f"holders={len(self._record.holders)}/{self.concurrency}>"
        )
