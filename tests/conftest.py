"""Pytest configuration and fixtures for pottery-cas-semaphore tests."""

from __future__ import annotations

import os
import time
from collections.abc import Callable, Generator
from typing import TYPE_CHECKING, Any

import pytest

from pottery_cas_semaphore import LookupMiss, TransientStoreError, VersionedValue

if TYPE_CHECKING:
    from redis import Redis


def is_docker_available() -> bool:
    """Check if Docker is available."""
    import shutil
    import subprocess

    if not shutil.which("docker"):
        return False
    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return False


# Skip integration tests if Docker is not available
requires_docker = pytest.mark.skipif(
    not is_docker_available(),
    reason="Docker is not available",
)


class MemoryStore:
    """In-memory implementation of the Store contract for unit tests.

    Each region has its own modify index, like RedisStore. Regions listed in
    ``unavailable`` raise TransientStoreError on every call, and
    ``before_put`` runs right before a write is checked so tests can
    interleave a competing writer.
    """

    def __init__(self, regions: tuple[str, ...] = ("dc1",)) -> None:
        self.regions = list(regions)
        self.data: dict[tuple[str, str], tuple[str, int]] = {}
        self.index: dict[str, int] = {region: 0 for region in regions}
        self.unavailable: set[str] = set()
        self.before_put: Callable[[str, str | None], None] | None = None
        self.puts: list[tuple[str, str | None, int, bool]] = []
        self.gets = 0

    def _region(self, region: str | None) -> str:
        name = self.regions[0] if region is None else region
        if name in self.unavailable:
            raise TransientStoreError(f"region {name} is down")
        return name

    def get(self, key: str, region: str | None = None) -> VersionedValue:
        self.gets += 1
        name = self._region(region)
        try:
            value, index = self.data[(name, key)]
        except KeyError:
            raise LookupMiss(key, region) from None
        return VersionedValue(value=value, version=index)

    def put(self, key: str, value: str, cas: int, region: str | None = None) -> bool:
        name = self._region(region)
        if self.before_put is not None:
            hook, self.before_put = self.before_put, None
            hook(key, region)
        current = self.data.get((name, key))
        if cas == 0:
            ok = current is None
        else:
            ok = current is not None and current[1] == cas
        if ok:
            self.index[name] += 1
            self.data[(name, key)] = (value, self.index[name])
        self.puts.append((key, region, cas, ok))
        return ok

    def list_regions(self) -> list[str]:
        return sorted(self.regions)

    def raw(self, key: str, region: str | None = None) -> dict[str, Any]:
        import json

        name = self.regions[0] if region is None else region
        return json.loads(self.data[(name, key)][0])


class StaticDiscovery:
    """Discovery double returning a fixed member count."""

    def __init__(self, count: int) -> None:
        self.count = count
        self.calls: list[tuple[str, str | None, dict[str, Any]]] = []

    def count_healthy_members(
        self, service: str, region: str | None = None, **options: Any
    ) -> int:
        self.calls.append((service, region, options))
        return self.count


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def regional_store() -> MemoryStore:
    return MemoryStore(regions=("dc3", "dc1", "dc2"))


@pytest.fixture
def no_sleep() -> list[float]:
    """Collect backoff durations instead of sleeping."""
    return []


@pytest.fixture(scope="session")
def docker_compose_file() -> str:
    """Return path to docker-compose file for Redis."""
    return os.path.join(os.path.dirname(__file__), "docker-compose.yml")


@pytest.fixture(scope="session")
def redis_port() -> int:
    """Return the Redis port for tests."""
    return 6399  # Use non-standard port to avoid conflicts


@pytest.fixture(scope="session")
def docker_redis(docker_compose_file: str, redis_port: int) -> Generator[str, None, None]:
    """Start Redis in Docker for integration tests.

    Returns the Redis URL.
    """
    import subprocess

    compose_content = f"""
services:
  redis:
    image: redis:7-alpine
    ports:
      - "{redis_port}:6379"
    healthcheck:
      test: ["CMD", "redis-cli", "ping"]
      interval: 1s
      timeout: 3s
      retries: 30
"""
    with open(docker_compose_file, "w") as f:
        f.write(compose_content)

    subprocess.run(
        ["docker", "compose", "-f", docker_compose_file, "up", "-d", "--wait"],
        check=True,
        capture_output=True,
    )

    redis_url = f"redis://localhost:{redis_port}"
    _wait_for_redis(f"{redis_url}/0")

    yield redis_url

    subprocess.run(
        ["docker", "compose", "-f", docker_compose_file, "down", "-v"],
        capture_output=True,
    )
    os.remove(docker_compose_file)


def _wait_for_redis(url: str, timeout: float = 30) -> None:
    """Wait for Redis to be ready."""
    from redis import Redis
    from redis.exceptions import ConnectionError

    start = time.time()
    while time.time() - start < timeout:
        try:
            r = Redis.from_url(url)
            r.ping()
            r.close()
            return
        except ConnectionError:
            time.sleep(0.5)
    raise TimeoutError(f"Redis at {url} did not become ready in {timeout}s")


@pytest.fixture
def redis_regions(docker_redis: str) -> Generator[dict[str, Redis], None, None]:
    """One Redis client per region, each region on its own database."""
    from redis import Redis

    clients = {
        name: Redis.from_url(f"{docker_redis}/{db}")
        for name, db in (("dc1", 1), ("dc2", 2), ("dc3", 3))
    }
    # Cleanup before test to ensure isolation
    for client in clients.values():
        client.flushdb()
    yield clients
    for client in clients.values():
        try:
            client.flushdb()
        except Exception:
            pass  # Ignore errors during cleanup
        client.close()


@pytest.fixture
def unique_key() -> Generator[str, None, None]:
    """Generate a unique key for each test."""
    import uuid

    yield f"test-{uuid.uuid4().hex[:8]}"
