"""Exceptions for pottery-cas-semaphore."""

from __future__ import annotations


class SemaphoreError(Exception):
    """Base exception for semaphore errors."""

    pass


class ConfigurationError(SemaphoreError, ValueError):
    """Raised when lock options are missing, mis-typed or conflicting."""

    pass


class StoreError(SemaphoreError):
    """Base exception for recoverable key-value store failures."""

    pass


class LookupMiss(StoreError, KeyError):
    """Raised when a key does not exist in the store."""

    def __init__(self, key: str, region: str | None = None) -> None:
        self.key = key
        self.region = region
        super().__init__(f"Key '{key}' not found (region={region!r})")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class CasConflict(StoreError):
    """Raised when a write's expected version no longer matches the store."""

    def __init__(self, key: str, expected: int, current: int | None) -> None:
        self.key = key
        self.expected = expected
        self.current = current
        super().__init__(
            f"Version mismatch on '{key}': "
            f"expected={expected}, current={current}"
        )


class TransientStoreError(StoreError):
    """Raised when the store cannot be reached."""

    pass


class BootstrapError(StoreError):
    """Raised when a semaphore record could not be created and read back."""

    def __init__(self, key: str, attempts: int) -> None:
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Could not bootstrap semaphore '{key}' after {attempts} attempts"
        )


class DiscoveryError(SemaphoreError):
    """Base exception for service discovery failures."""

    pass


class TransientDiscoveryError(DiscoveryError):
    """Raised when the discovery backend cannot be reached."""

    pass


class QuorumNotReached(SemaphoreError):
    """Raised when fewer than a strict majority of regions accepted an entry."""

    def __init__(self, key: str, successes: int, regions: int) -> None:
        self.key = key
        self.successes = successes
        self.regions = regions
        super().__init__(
            f"Semaphore '{key}' entered in {successes}/{regions} regions, "
            f"no majority"
        )
