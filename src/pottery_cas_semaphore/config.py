"""Validated configuration for CAS semaphore locks."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ConfigurationError

DEFAULT_BACKOFF = 5  # seconds


def _require_str(name: str, value: Any) -> str:
    if value is None:
        raise ConfigurationError(f"Missing {name}")
    if not isinstance(value, str):
        raise ConfigurationError(f"Invalid {name} (must be a str)")
    if not value:
        raise ConfigurationError(f"Invalid {name} (must not be empty)")
    return value


def _optional_str(name: str, value: Any) -> str | None:
    if value is None:
        return None
    return _require_str(name, value)


def _positive_number(name: str, value: Any) -> float:
    # bool is an int subclass but never a meaningful quantity here
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"Invalid {name} (must be a number)")
    if value <= 0:
        raise ConfigurationError(f"Invalid {name} (must be positive)")
    return value


@dataclass(frozen=True)
class ServiceOptions:
    """Size the semaphore from the number of healthy members of a service.

    Args:
        name: Service name as registered in discovery
        concurrency_ratio: Fraction of healthy members allowed in at once
        datacenter: Region to count members in (defaults to the lock's)
        options: Extra keyword arguments for the discovery client
    """

    name: str
    concurrency_ratio: float
    datacenter: str | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _require_str("service name", self.name)
        _positive_number("service concurrency_ratio", self.concurrency_ratio)
        _optional_str("service datacenter", self.datacenter)
        if not isinstance(self.options, Mapping):
            raise ConfigurationError("Invalid service options (must be a mapping)")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ServiceOptions:
        if not isinstance(data, Mapping):
            raise ConfigurationError("Invalid service (must be a mapping)")
        unknown = set(data) - {"name", "concurrency_ratio", "datacenter", "options"}
        if unknown:
            raise ConfigurationError(
                f"Unknown service option(s): {', '.join(sorted(unknown))}"
            )
        if "concurrency_ratio" not in data:
            raise ConfigurationError("Missing service concurrency_ratio")
        return cls(
            name=data.get("name"),
            concurrency_ratio=data["concurrency_ratio"],
            datacenter=data.get("datacenter"),
            options=dict(data.get("options") or {}),
        )


@dataclass(frozen=True)
class LockOptions:
    """Options for a :class:`~pottery_cas_semaphore.CasLock`.

    Exactly one of ``concurrency`` or ``service`` must be set.

    Args:
        path: Key of the lock record in the store
        id: Holder identity of this node
        concurrency: Fixed number of holders allowed at once
        service: Derive concurrency from a discovered service instead
        global_: Take the lock in a majority of regions
        backoff: Seconds to sleep between failed attempts
        datacenter: Region to pin the lock to (non-global mode)
        token: Store authentication token
    """

    path: str
    id: str
    concurrency: int | None = None
    service: ServiceOptions | None = None
    global_: bool = False
    backoff: float = DEFAULT_BACKOFF
    datacenter: str | None = None
    token: str | None = None

    def __post_init__(self) -> None:
        _require_str("path", self.path)
        _require_str("id", self.id)

        if self.concurrency is not None and self.service is not None:
            raise ConfigurationError("You can't set both concurrency and service")
        if self.concurrency is None and self.service is None:
            raise ConfigurationError("Missing concurrency or service")
        if self.concurrency is not None:
            if isinstance(self.concurrency, bool) or not isinstance(
                self.concurrency, int
            ):
                raise ConfigurationError("Invalid concurrency (must be an int)")
            if self.concurrency < 1:
                raise ConfigurationError("Invalid concurrency (must be positive)")
        if self.service is not None and not isinstance(self.service, ServiceOptions):
            raise ConfigurationError("Invalid service (must be ServiceOptions)")

        if not isinstance(self.global_, bool):
            raise ConfigurationError("Invalid global (must be a bool)")
        _positive_number("backoff", self.backoff)
        _optional_str("datacenter", self.datacenter)
        _optional_str("token", self.token)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> LockOptions:
        """Build options from a plain mapping such as parsed YAML or JSON.

        The mapping uses ``global`` rather than ``global_`` and may give
        ``service`` as a nested mapping.
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("Invalid options (must be a mapping)")
        known = {
            "path",
            "id",
            "concurrency",
            "service",
            "global",
            "backoff",
            "datacenter",
            "token",
        }
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown option(s): {', '.join(sorted(unknown))}")

        service = data.get("service")
        if service is not None and not isinstance(service, ServiceOptions):
            service = ServiceOptions.from_mapping(service)

        backoff = data.get("backoff")
        return cls(
            path=data.get("path"),
            id=data.get("id"),
            concurrency=data.get("concurrency"),
            service=service,
            global_=data.get("global", False),
            backoff=DEFAULT_BACKOFF if backoff is None else backoff,
            datacenter=data.get("datacenter"),
            token=data.get("token"),
        )
