"""Distributed semaphore over compare-and-swap writes to Redis.

This package provides a bounded-concurrency lock whose state is a single
versioned record per region. Nodes never hold sessions: they read the
record, write it back with a compare-and-swap, and retry with backoff when
they lose a race. A global mode takes the lock in a majority of regions.

Example usage:

    >>> from pottery_cas_semaphore import CasLock, RedisStore
    >>>
    >>> store = RedisStore.from_urls({'eu': 'redis://localhost:6379/0'})
    >>> lock = CasLock(
    ...     {'path': 'deploy/lock', 'id': 'node-a', 'concurrency': 2},
    ...     store=store,
    ... )
    >>> with lock:
    ...     # Critical section with limited concurrency (max 2)
    ...     pass

Sizing from a service instead of a fixed value:

    >>> from pottery_cas_semaphore import RedisDiscovery
    >>>
    >>> discovery = RedisDiscovery({'eu': store.client('eu')})
    >>> lock = CasLock(
    ...     {
    ...         'path': 'deploy/lock',
    ...         'id': 'node-a',
    ...         'service': {'name': 'web', 'concurrency_ratio': 0.25},
    ...     },
    ...     store=store,
    ...     discovery=discovery,
    ... )
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .config import LockOptions, ServiceOptions
from .discovery import Discovery, RedisDiscovery
from .exceptions import (
    BootstrapError,
    CasConflict,
    ConfigurationError,
    DiscoveryError,
    LookupMiss,
    QuorumNotReached,
    SemaphoreError,
    StoreError,
    TransientDiscoveryError,
    TransientStoreError,
)
from .global_semaphore import GlobalSemaphore
from .lock import CasLock, LifecycleHooks
from .policy import ConcurrencyPolicy
from .semaphore import Semaphore, SemaphoreRecord
from .store import RedisStore, Store, VersionedValue

__all__: Final[tuple[str, ...]] = (
    "BootstrapError",
    "CasConflict",
    "CasLock",
    "ConcurrencyPolicy",
    "ConfigurationError",
    "Discovery",
    "DiscoveryError",
    "GlobalSemaphore",
    "LifecycleHooks",
    "LockOptions",
    "LookupMiss",
    "QuorumNotReached",
    "RedisDiscovery",
    "RedisStore",
    "Semaphore",
    "SemaphoreError",
    "SemaphoreRecord",
    "ServiceOptions",
    "Store",
    "StoreError",
    "TransientDiscoveryError",
    "TransientStoreError",
    "VersionedValue",
)

try:
    __version__ = version("pottery-cas-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
