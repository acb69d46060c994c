"""
Fixtures for tests that need a running Redis server.

Start one with: docker run -p 6379:6379 redis:7
"""

import pytest
import pytest_asyncio
import redis.asyncio as redis

from automation_engine.config import Environment, Settings, get_settings
from automation_engine.config.settings import QueueSettings, SchedulerSettings

TEST_KEY_PREFIX = "wf:test:"


@pytest_asyncio.fixture
async def redis_client():
    """Create Redis client for tests."""
    settings = get_settings()
    client = redis.Redis(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=settings.redis.password,
        decode_responses=True,
    )

    try:
        await client.ping()
    except (redis.ConnectionError, OSError):
        await client.aclose()
        pytest.skip("Redis not available")

    yield client

    # Cleanup test keys
    async for key in client.scan_iter(match=f"{TEST_KEY_PREFIX}*"):
        await client.delete(key)

    await client.aclose()


@pytest.fixture
def redis_settings() -> Settings:
    """Settings pointing the queue and lock at test-only keys."""
    return Settings(
        environment=Environment.TEST,
        queue=QueueSettings(
            key_prefix=f"{TEST_KEY_PREFIX}queue:",
            poll_interval=0.05,
            backoff_delay=0.1,
            attempts=3,
            stale_job_timeout=600.0,
            completed_max_count=2,
        ),
        scheduler=SchedulerSettings(leader_lock_key=f"{TEST_KEY_PREFIX}leader"),
    )
