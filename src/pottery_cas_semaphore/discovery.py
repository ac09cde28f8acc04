"""Service discovery used to size semaphores dynamically.

Members of a service are kept in a Pottery RedisDict mapping member id to
its health status, one dict per service and region.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol

from pottery import InefficientAccessWarning, PotteryError, RedisDict
from redis.exceptions import RedisError

from .exceptions import ConfigurationError, TransientDiscoveryError

if TYPE_CHECKING:
    from redis import Redis

logger = logging.getLogger(__name__)

PASSING = "passing"


class Discovery(Protocol):
    """Contract consumed by :class:`~pottery_cas_semaphore.ConcurrencyPolicy`."""

    def count_healthy_members(
        self, service: str, region: str | None = None, **options: Any
    ) -> int: ...


class RedisDiscovery:
    """Redis-backed service registry.

    Usage:
        >>> from redis import Redis
        >>> discovery = RedisDiscovery({'eu': Redis()})
        >>> discovery.register('web', 'web-1')
        >>> discovery.register('web', 'web-2', status='critical')
        >>> discovery.count_healthy_members('web')
        1

    Args:
        regions: Mapping of region name to Redis client
        default_region: Region used when none is given (defaults to the
                        first region by name)
        key_prefix: Prefix for every Redis key written by this registry
    """

    def __init__(
        self,
        regions: Mapping[str, Redis],
        *,
        default_region: str | None = None,
        key_prefix: str = "service",
    ) -> None:
        if not regions:
            raise ConfigurationError("RedisDiscovery needs at least one region")
        self._regions: dict[str, Redis] = dict(regions)
        if default_region is None:
            default_region = min(self._regions)
        elif default_region not in self._regions:
            raise ConfigurationError(f"Unknown default region {default_region!r}")
        self._default_region = default_region
        self._key_prefix = key_prefix

    def _members(self, service: str, region: str | None) -> RedisDict:
        name = self._default_region if region is None else region
        try:
            redis = self._regions[name]
        except KeyError:
            raise ConfigurationError(f"Unknown region {name!r}") from None
        return RedisDict(redis=redis, key=f"{self._key_prefix}:{service}:members")

    def register(
        self,
        service: str,
        member: str,
        *,
        status: str = PASSING,
        region: str | None = None,
    ) -> None:
        """Add ``member`` to ``service`` or update its health status."""
        try:
            self._members(service, region)[member] = status
        except (RedisError, PotteryError) as error:
            raise TransientDiscoveryError(
                f"Could not register {member!r} in {service!r}: {error}"
            ) from error

    def deregister(
        self, service: str, member: str, *, region: str | None = None
    ) -> None:
        try:
            members = self._members(service, region)
            if member in members:
                del members[member]
        except (RedisError, PotteryError) as error:
            raise TransientDiscoveryError(
                f"Could not deregister {member!r} from {service!r}: {error}"
            ) from error

    def count_healthy_members(
        self,
        service: str,
        region: str | None = None,
        *,
        passing_only: bool = True,
    ) -> int:
        """Count members of ``service``, only passing ones unless told otherwise."""
        try:
            # Counting needs every member, the full read is expected
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", InefficientAccessWarning)
                statuses = list(self._members(service, region).to_dict().values())
        except (RedisError, PotteryError) as error:
            raise TransientDiscoveryError(
                f"Could not list members of {service!r}: {error}"
            ) from error
        if passing_only:
            total = sum(1 for status in statuses if status == PASSING)
        else:
            total = len(statuses)
        logger.debug(
            "Service %s has %d/%d healthy members (region=%s)",
            service,
            total,
            len(statuses),
            region,
        )
        return total
