"""Integration test fixtures running the shared store against a Redis testcontainer."""

import os
from typing import AsyncGenerator, Generator

import pytest
from testcontainers.redis import RedisContainer

from clipscout.main.config import Settings, reset_settings, set_settings
from clipscout.redis.connection import create_redis_client
from clipscout.store.keys import StoreKeys
from clipscout.store.redis_store import RedisAtomicStore

# Ryuk can have connection issues in nested Docker setups
os.environ.setdefault("TESTCONTAINERS_RYUK_DISABLED", "true")

if not os.getenv("DOCKER_HOST") and os.path.exists("/var/run/docker.sock"):
    os.environ["DOCKER_HOST"] = "unix:///var/run/docker.sock"


def pytest_collection_modifyitems(config, items):
    integration_dir = os.path.dirname(__file__)
    for item in items:
        if str(item.fspath).startswith(integration_dir):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer, None, None]:
    """Start a Redis container for the test session."""
    try:
        redis = RedisContainer(image="redis:7-alpine")
        redis.start()
    except Exception as exc:  # Docker missing or unreachable
        pytest.skip(f"Redis container unavailable: {exc}")

    try:
        yield redis
    finally:
        redis.stop()


@pytest.fixture(scope="session")
def test_settings(redis_container: RedisContainer) -> Settings:
    settings = Settings(
        _env_file=None,
        store_backend="redis",
        key_prefix="clipscout-it",
        redis_host=redis_container.get_container_host_ip(),
        redis_port=int(redis_container.get_exposed_port(6379)),
        redis_db=1,
    )
    return settings


@pytest.fixture(autouse=True)
def override_settings(test_settings: Settings):
    reset_settings()
    set_settings(test_settings)
    yield
    reset_settings()


@pytest.fixture
def keys() -> StoreKeys:
    return StoreKeys(prefix="clipscout-it")


@pytest.fixture
async def redis_store(test_settings: Settings) -> AsyncGenerator[RedisAtomicStore, None]:
    """A store on a flushed database, closed after the test."""
    store = RedisAtomicStore(create_redis_client(test_settings))
    await store.redis.flushdb()
    yield store
    await store.redis.flushdb()
    await store.close()
