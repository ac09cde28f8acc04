"""Semaphore held across a majority of store regions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .exceptions import QuorumNotReached, StoreError
from .semaphore import Semaphore

if TYPE_CHECKING:
    from .store import Store

logger = logging.getLogger(__name__)


class GlobalSemaphore:
    """One :class:`Semaphore` per region, entered by strict majority.

    Entering succeeds when more than half of all regions accept the holder,
    so a minority of unreachable regions does not block work. When no
    majority is reached the regions that did accept are released again.
    Regions that could not be loaded count as refusals.

    Args:
        path: Key of the record in every region
        semaphores: Region name to loaded semaphore, None when unavailable
    """

    def __init__(
        self, path: str, semaphores: dict[str, Semaphore | None]
    ) -> None:
        self._path = path
        self._semaphores = dict(sorted(semaphores.items()))

    @classmethod
    def load(
        cls,
        store: Store,
        path: str,
        concurrency: int,
        semaphore_class: type[Semaphore] = Semaphore,
    ) -> GlobalSemaphore:
        semaphores: dict[str, Semaphore | None] = {}
        for region in sorted(store.list_regions()):
            try:
                semaphores[region] = semaphore_class.load(
                    store, path, concurrency, region
                )
            except StoreError as error:
                logger.warning(
                    "Could not load lock %s in region %s: %s", path, region, error
                )
                semaphores[region] = None
        return cls(path, semaphores)

    @property
    def path(self) -> str:
        return self._path

    @property
    def regions(self) -> list[str]:
        return list(self._semaphores)

    @property
    def semaphores(self) -> dict[str, Semaphore | None]:
        return dict(self._semaphores)

    def enter(self, holder_id: str) -> bool:
        """Enter every region; True only with a strict majority."""
        entered: list[Semaphore] = []
        for region, semaphore in self._semaphores.items():
            if semaphore is None:
                continue
            try:
                if semaphore.enter(holder_id):
                    entered.append(semaphore)
            except StoreError as error:
                logger.warning(
                    "Could not enter lock %s in region %s: %s",
                    self._path,
                    region,
                    error,
                )

        try:
            self._check_quorum(len(entered))
        except QuorumNotReached as error:
            logger.warning("%s, releasing", error)
            self._rollback(entered, holder_id)
            return False
        return True

    def _check_quorum(self, successes: int) -> None:
        if successes * 2 <= len(self._semaphores):
            raise QuorumNotReached(self._path, successes, len(self._semaphores))

    def _rollback(self, entered: list[Semaphore], holder_id: str) -> None:
        for semaphore in entered:
            # The snapshot's token is stale after its own write
            try:
                released = semaphore.reload().exit(holder_id)
            except StoreError as error:
                logger.warning(
                    "Could not release lock %s in region %s: %s",
                    self._path,
                    semaphore.region,
                    error,
                )
                continue
            if not released:
                logger.warning(
                    "Could not release lock %s in region %s, lost a race",
                    self._path,
                    semaphore.region,
                )

    def exit(self, holder_id: str) -> bool:
        """Exit every region. Failures are logged and never fail the exit.

        Each region is read again first, so the same instance can exit
        right after entering.
        """
        for region, semaphore in list(self._semaphores.items()):
            if semaphore is None:
                logger.warning(
                    "Lock %s unavailable in region %s, not released",
                    self._path,
                    region,
                )
                continue
            try:
                semaphore = semaphore.reload()
                self._semaphores[region] = semaphore
                released = semaphore.exit(holder_id)
            except StoreError as error:
                logger.warning(
                    "Could not exit lock %s in region %s: %s",
                    self._path,
                    region,
                    error,
                )
                continue
            if not released:
                logger.warning(
                    "Could not exit lock %s in region %s, lost a race",
                    self._path,
                    region,
                )
        return True

    def __repr__(self) -> str:
        available = sum(1 for s in self._semaphores.values() if s is not None)
        return (
            f"<{self.__class__.__name__} "
            f"path={self._path!r} "
            f"regions={available}/{len(self._semaphores)}>"
        )
