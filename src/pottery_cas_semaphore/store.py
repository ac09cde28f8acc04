"""Versioned key-value store with compare-and-swap writes.

:class:`RedisStore` keeps every key as a Redis hash holding the encoded
value and the modify index of its last write. Each region is a separate
Redis deployment with its own monotonic index counter, so a version token
is never reused within a region. Writes are guarded with WATCH/MULTI/EXEC.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from redis.exceptions import RedisError, WatchError

from .exceptions import (
    CasConflict,
    ConfigurationError,
    LookupMiss,
    TransientStoreError,
)

if TYPE_CHECKING:
    from redis import Redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionedValue:
    """A stored value together with the version token it was read at."""

    value: bytes | str
    version: int


class Store(Protocol):
    """Contract consumed by semaphores.

    ``put`` with ``cas=0`` only succeeds when the key does not exist yet.
    """

    def get(self, key: str, region: str | None = None) -> VersionedValue: ...

    def put(
        self, key: str, value: str, cas: int, region: str | None = None
    ) -> bool: ...

    def list_regions(self) -> list[str]: ...


class RedisStore:
    """Region-scoped versioned store backed by one Redis client per region.

    Usage:
        >>> from redis import Redis
        >>> store = RedisStore({'eu': Redis(), 'us': Redis(port=6380)})
        >>> store.put('deploy/lock', '{}', cas=0, region='eu')
        True
        >>> store.get('deploy/lock', region='eu').version
        1

    Args:
        regions: Mapping of region name to Redis client
        default_region: Region used when none is given (defaults to the
                        first region by name)
        key_prefix: Prefix for every Redis key written by this store
    """

    def __init__(
        self,
        regions: Mapping[str, Redis],
        *,
        default_region: str | None = None,
        key_prefix: str = "semaphore",
    ) -> None:
        if not regions:
            raise ConfigurationError("RedisStore needs at least one region")
        self._regions: dict[str, Redis] = dict(regions)
        if default_region is None:
            default_region = min(self._regions)
        elif default_region not in self._regions:
            raise ConfigurationError(f"Unknown default region {default_region!r}")
        self._default_region = default_region
        self._key_prefix = key_prefix

    @classmethod
    def from_urls(
        cls,
        urls: Mapping[str, str],
        *,
        token: str | None = None,
        default_region: str | None = None,
        key_prefix: str = "semaphore",
    ) -> RedisStore:
        """Connect to one Redis URL per region, authenticating with ``token``."""
        from redis import Redis as RedisClient

        kwargs = {} if token is None else {"password": token}
        clients = {
            name: RedisClient.from_url(url, **kwargs) for name, url in urls.items()
        }
        return cls(clients, default_region=default_region, key_prefix=key_prefix)

    @property
    def default_region(self) -> str:
        return self._default_region

    def list_regions(self) -> list[str]:
        return sorted(self._regions)

    def client(self, region: str | None = None) -> Redis:
        """Return the Redis client serving ``region``."""
        name = self._default_region if region is None else region
        try:
            return self._regions[name]
        except KeyError:
            raise ConfigurationError(f"Unknown region {name!r}") from None

    @property
    def index_key(self) -> str:
        """Redis key of the region's modify index counter."""
        # Outside the "<prefix>:" namespace used by lock paths
        return f"{self._key_prefix}-index"

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def get(self, key: str, region: str | None = None) -> VersionedValue:
        client = self.client(region)
        try:
            value, index = client.hmget(self._key(key), "value", "index")
        except RedisError as error:
            raise TransientStoreError(
                f"Could not read '{key}' (region={region!r}): {error}"
            ) from error
        if value is None or index is None:
            raise LookupMiss(key, region)
        return VersionedValue(value=value, version=int(index))

    def put(self, key: str, value: str, cas: int, region: str | None = None) -> bool:
        try:
            self._compare_and_set(key, value, cas, region)
        except CasConflict as conflict:
            logger.debug("CaS write refused: %s", conflict)
            return False
        return True

    def _compare_and_set(
        self, key: str, value: str, cas: int, region: str | None
    ) -> int:
        client = self.client(region)
        redis_key = self._key(key)
        current_index: int | None = None
        with client.pipeline() as pipe:
            try:
                pipe.watch(redis_key)
                current = pipe.hget(redis_key, "index")
                current_index = None if current is None else int(current)
                if cas == 0:
                    if current_index is not None:
                        raise CasConflict(key, cas, current_index)
                elif current_index != cas:
                    raise CasConflict(key, cas, current_index)

                # Executes immediately while watching; a burnt index on a
                # failed EXEC is fine since tokens only need to be unique.
                new_index = pipe.incr(self.index_key)
                pipe.multi()
                pipe.hset(redis_key, mapping={"value": value, "index": new_index})
                pipe.execute()
            except WatchError as error:
                raise CasConflict(key, cas, current_index) from error
            except RedisError as error:
                raise TransientStoreError(
                    f"Could not write '{key}' (region={region!r}): {error}"
                ) from error
        return new_index

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"regions={self.list_regions()!r} "
            f"default={self._default_region!r}>"
        )
