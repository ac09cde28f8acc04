"""Acquire and release CAS semaphores around a unit of work.

:class:`CasLock` is the only place that loops or sleeps. Each attempt
loads a fresh semaphore, tries once, and backs off on failure. Entering
retries forever since protected work must never start without a slot.
Releasing gives up after a few failures: a leaked slot is found again on
the next run because entering is reentrant.
"""

from __future__ import annotations

import itertools
import logging
import random
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

from pottery import ContextTimer

from .config import LockOptions
from .exceptions import DiscoveryError, StoreError
from .global_semaphore import GlobalSemaphore
from .policy import ConcurrencyPolicy
from .semaphore import Semaphore

if TYPE_CHECKING:
    from .discovery import Discovery
    from .store import Store

logger = logging.getLogger(__name__)

EXIT_MAX_FAILURES = 5

Hook = Callable[[], None]


class LifecycleHooks(NamedTuple):
    """Callbacks to run before and after the protected work."""

    on_enter: Hook
    on_finish: Hook


class TaskRunner(Protocol):
    """Anything that accepts before/finish callbacks."""

    def before(self, callback: Hook) -> Any: ...

    def finish(self, callback: Hook) -> Any: ...


class CasLock:
    """Bounded-concurrency lock over a versioned store.

    Usage:
        >>> store = RedisStore.from_urls({'eu': 'redis://localhost:6379/0'})
        >>> lock = CasLock(
        ...     {'path': 'deploy/lock', 'id': 'node-a', 'concurrency': 2},
        ...     store=store,
        ... )
        >>> with lock:
        ...     # At most two nodes run this at once
        ...     pass

    Args:
        options: Validated options, or a mapping accepted by
                 :meth:`LockOptions.from_mapping`
        store: Store holding the semaphore records
        discovery: Discovery client, required for service-based concurrency
        sleep: Called with the backoff duration in seconds
        rng: Random source for the global-mode jitter
    """

    semaphore_class: type[Semaphore] = Semaphore

    def __init__(
        self,
        options: LockOptions | Mapping[str, Any],
        *,
        store: Store,
        discovery: Discovery | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if not isinstance(options, LockOptions):
            options = LockOptions.from_mapping(options)
        self._options = options
        self._store = store
        self._policy = ConcurrencyPolicy(options, discovery)
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def options(self) -> LockOptions:
        return self._options

    @property
    def path(self) -> str:
        return self._options.path

    def semaphore(self) -> Semaphore | GlobalSemaphore:
        """Load a fresh semaphore, resolving concurrency for it."""
        concurrency = self._policy.resolve()
        if self._options.global_:
            return GlobalSemaphore.load(
                self._store, self.path, concurrency, self.semaphore_class
            )
        return self.semaphore_class.load(
            self._store, self.path, concurrency, self._options.datacenter
        )

    def compute_backoff(self) -> float:
        duration = self._options.backoff
        if self._options.global_:
            # Spread out nodes that all retry a global lock at once
            duration += self._rng.random() * duration
        return duration

    def backoff(self) -> bool:
        """Sleep before the next attempt. Always returns False."""
        duration = self.compute_backoff()
        logger.warning("Will sleep %s", duration)
        self._sleep(duration)
        return False

    def wait_until(
        self,
        action: str,
        block: Callable[[], Any],
        max_failures: int | None = None,
    ) -> bool:
        """Call ``block`` until it returns something truthy.

        Store and discovery errors count as failed attempts. After
        ``max_failures + 1`` failed attempts this gives up and returns
        False; with ``max_failures=None`` it never gives up.
        """
        logger.info("Will %s the lock %s", action, self.path)
        attempts = (
            itertools.count()
            if max_failures is None
            else range(max_failures + 1)
        )
        with ContextTimer() as timer:
            for _ in attempts:
                try:
                    if block():
                        logger.info(
                            "%sed the lock %s in %dms",
                            action.capitalize(),
                            self.path,
                            timer.elapsed(),
                        )
                        return True
                except (StoreError, DiscoveryError) as error:
                    logger.warning(
                        "Error while %s-ing lock %s: %s", action, self.path, error
                    )
                self.backoff()

        logger.warning(
            "Will ignore errors since we've reached %s errors on %s of %s",
            max_failures,
            action,
            self.path,
        )
        return False

    def enter(self) -> bool:
        return self.wait_until(
            "enter", lambda: self.semaphore().enter(self._options.id)
        )

    def exit(self) -> bool:
        # A failed release is retried on the next run, so give up early
        return self.wait_until(
            "exit",
            lambda: self.semaphore().exit(self._options.id),
            max_failures=EXIT_MAX_FAILURES,
        )

    def hooks(self) -> LifecycleHooks:
        def on_enter() -> None:
            self.enter()

        def on_finish() -> None:
            self.exit()

        return LifecycleHooks(on_enter=on_enter, on_finish=on_finish)

    def register(self, runner: TaskRunner) -> LifecycleHooks:
        """Attach the enter and exit hooks to ``runner``."""
        hooks = self.hooks()
        runner.before(hooks.on_enter)
        runner.finish(hooks.on_finish)
        return hooks

    def __enter__(self) -> CasLock:
        self.enter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.exit()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"path={self.path!r} "
            f"id={self._options.id!r} "
            f"global={self._options.global_}>"
        )
