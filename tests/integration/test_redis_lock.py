"""
Integration tests for scheduler leader election on Redis.

Requires Redis running on localhost:6379.
"""

import pytest

from automation_engine.core.state_machine import LeaderState
from automation_engine.scheduling.leader import LeaderElector, RedisLeaderLock

pytestmark = pytest.mark.integration


@pytest.fixture
def lock(redis_client, redis_settings):
    return RedisLeaderLock(redis_client, redis_settings.scheduler.leader_lock_key)


class TestRedisLeaderLock:
    """Tests for the lock primitives."""

    @pytest.mark.asyncio
    async def test_acquire_is_exclusive(self, lock, redis_client):
        """Test only the first owner sets the key, with a TTL."""
        assert await lock.acquire("p1", 30)
        assert not await lock.acquire("p2", 30)

        assert await lock.owner() == "p1"
        assert 0 < await redis_client.ttl(lock.key) <= 30

    @pytest.mark.asyncio
    async def test_extend_checks_owner(self, lock, redis_client):
        """Test only the holder can extend the lock."""
        await lock.acquire("p1", 5)

        assert not await lock.extend("p2", 60)
        assert await lock.extend("p1", 60)
        assert await redis_client.ttl(lock.key) > 5

    @pytest.mark.asyncio
    async def test_extend_missing_lock(self, lock):
        """Test an expired or released lock cannot be extended."""
        assert not await lock.extend("p1", 30)

    @pytest.mark.asyncio
    async def test_release(self, lock):
        """Test release frees the lock for another owner."""
        await lock.acquire("p1", 30)
        await lock.release()

        assert await lock.owner() is None
        assert await lock.acquire("p2", 30)


class TestElectionOnRedis:
    """Tests for two electors sharing one Redis lock."""

    @pytest.mark.asyncio
    async def test_one_leader_then_handover(self, lock):
        """Test one elector leads and the other takes over after release."""
        first = LeaderElector(lock, ttl=30, check_interval=20.0, identity="p1")
        second = LeaderElector(lock, ttl=30, check_interval=20.0, identity="p2")

        assert await first.tick() == LeaderState.LEADER
        assert await second.tick() == LeaderState.NOT_LEADER
        assert await first.tick() == LeaderState.LEADER

        await first.stop()

        assert not first.is_leader
        assert await second.tick() == LeaderState.LEADER
        assert await lock.owner() == "p2"
        await second.stop()
