"""Resolve how many holders a semaphore admits."""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .config import LockOptions
    from .discovery import Discovery

logger = logging.getLogger(__name__)


def _check_discovery_options(discovery: Discovery, options: dict) -> None:
    """Reject service options the discovery client would not accept."""
    parameters = inspect.signature(discovery.count_healthy_members).parameters
    if any(p.kind is inspect.Parameter.VAR_KEYWORD for p in parameters.values()):
        return
    # The service name and region are always passed positionally
    accepted = {
        p.name
        for p in list(parameters.values())[2:]
        if p.kind
        in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
    }
    unknown = set(options) - accepted
    if unknown:
        raise ConfigurationError(
            f"Unknown service option(s) for {type(discovery).__name__}: "
            f"{', '.join(sorted(unknown))}"
        )


class ConcurrencyPolicy:
    """Capacity from a fixed value or from the size of a discovered service.

    Service-based capacity is ``max(1, int(ratio * healthy_members))``, so a
    lock is never sized to zero even when the service looks empty. The
    policy keeps no result: callers resolve once per semaphore they build
    and pass the value along, so each new semaphore sees the current size.
    """

    def __init__(
        self, options: LockOptions, discovery: Discovery | None = None
    ) -> None:
        if options.service is not None:
            if discovery is None:
                raise ConfigurationError(
                    "Service-based concurrency needs a discovery client"
                )
            _check_discovery_options(discovery, dict(options.service.options))
        self._options = options
        self._discovery = discovery

    def resolve(self) -> int:
        service = self._options.service
        if service is None:
            return self._options.concurrency

        region = service.datacenter or self._options.datacenter
        total = self._discovery.count_healthy_members(
            service.name, region, **service.options
        )
        concurrency = max(1, int(service.concurrency_ratio * total))
        logger.info(
            "Concurrency for %s is %d (%s x %d members of %s)",
            self._options.path,
            concurrency,
            service.concurrency_ratio,
            total,
            service.name,
        )
        return concurrency
