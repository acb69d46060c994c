"""
Leader election for the cron scheduler.

Exactly one process of a fleet fires scheduled workflows. Leadership is a
Redis key with a TTL:

- NotLeader -> Leader: SET key owner NX EX ttl succeeds
- Leader: the key's TTL is extended on every tick, only while this process
  still owns it (compare-and-expire script); a failed extension demotes
  immediately
- Clean shutdown deletes the key so another process can take over at once
"""

import asyncio
import inspect
import logging
import os
import secrets
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from automation_engine.core.errors import InfrastructureError
from automation_engine.core.state_machine import LeaderState, LeaderStateMachine

logger = logging.getLogger(__name__)

# Extend the TTL only if the key still holds our identity
# Returns 1 if extended, 0 if the lock is gone or owned by someone else
RENEW_LOCK_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("EXPIRE", KEYS[1], ARGV[2])
end
return 0
"""

LOCK_BACKEND_ERRORS = (RedisError, OSError, InfrastructureError)


def make_identity() -> str:
    """Unique owner value for the lock: <pid>-<timestampMs>-<token>."""
    return f"{os.getpid()}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class LeaderLock(Protocol):
    """Distributed lock primitives used by the election."""

    async def acquire(self, owner: str, ttl: int) -> bool:
        """Set the lock to owner if it is absent."""
        ...

    async def extend(self, owner: str, ttl: int) -> bool:
        """Reset the TTL if owner still holds the lock."""
        ...

    async def release(self) -> None:
        """Delete the lock unconditionally."""
        ...


class RedisLeaderLock:
    """LeaderLock on a single Redis key."""

    def __init__(self, client: redis.Redis, key: str):
        self.client = client
        self.key = key
        self._renew_script = client.register_script(RENEW_LOCK_SCRIPT)

    async def acquire(self, owner: str, ttl: int) -> bool:
        return bool(await self.client.set(self.key, owner, nx=True, ex=ttl))

    async def extend(self, owner: str, ttl: int) -> bool:
        return int(await self._renew_script(keys=[self.key], args=[owner, ttl])) == 1

    async def release(self) -> None:
        await self.client.delete(self.key)

    async def owner(self) -> Optional[str]:
        return await self.client.get(self.key)


Callback = Callable[[], Any]


async def _call(callback: Optional[Callback]) -> None:
    if callback is None:
        return
    result = callback()
    if inspect.isawaitable(result):
        await result


class LeaderElector:
    """
    Election state machine.

    tick() performs one renew-or-acquire step and is what the loop runs on
    every check interval; tests call it directly. Without a lock backend the
    process is always leader. When the backend errors during acquisition the
    process assumes leadership and keeps trying to take the real lock.
    """

    def __init__(
        self,
        lock: Optional[LeaderLock],
        ttl: int = 30,
        check_interval: float = 20.0,
        on_elected: Optional[Callback] = None,
        on_deposed: Optional[Callback] = None,
        identity: Optional[str] = None,
    ):
        self.lock = lock
        self.ttl = ttl
        self.check_interval = check_interval
        self.on_elected = on_elected
        self.on_deposed = on_deposed
        self.identity = identity or make_identity()

        self.machine = LeaderStateMachine()
        self._assumed = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> LeaderState:
        return self.machine.state

    @property
    def is_leader(self) -> bool:
        return self.machine.is_leader

    async def tick(self) -> LeaderState:
        """One election step."""
        if self.lock is None:
            if not self.is_leader:
                logger.warning("No lock backend configured, assuming scheduler leadership")
                await self._elect("no lock backend")
            return self.state

        if self.is_leader and not self._assumed:
            await self._renew()
        else:
            await self._try_acquire()
        return self.state

    async def _renew(self) -> None:
        try:
            renewed = await self.lock.extend(self.identity, self.ttl)
        except LOCK_BACKEND_ERRORS as e:
            logger.error(f"Failed to renew scheduler lock: {e}")
            renewed = False

        if renewed:
            logger.debug(f"Renewed scheduler lock ({self.identity})")
            return

        logger.warning(f"Lost scheduler leadership ({self.identity})")
        await self._depose("renewal failed")

    async def _try_acquire(self) -> None:
        try:
            acquired = await self.lock.acquire(self.identity, self.ttl)
        except LOCK_BACKEND_ERRORS as e:
            error = InfrastructureError(f"Lock backend unavailable: {e}")
            if not self.is_leader:
                logger.error(f"{error}; assuming scheduler leadership")
                self._assumed = True
                await self._elect("lock backend unavailable")
            return

        if acquired:
            self._assumed = False
            if self.is_leader:
                logger.info(f"Took the scheduler lock after assuming leadership ({self.identity})")
                return
            logger.info(f"Became scheduler leader ({self.identity})")
            await self._elect("lock acquired")
        elif self.is_leader:
            # Assumed leadership while the backend was down; someone else holds it now
            logger.warning("Scheduler lock is held by another process, giving up assumed leadership")
            self._assumed = False
            await self._depose("lock held elsewhere")

    async def _elect(self, reason: str) -> None:
        self.machine.transition(LeaderState.LEADER, reason=reason, triggered_by=self.identity)
        await _call(self.on_elected)

    async def _depose(self, reason: str) -> None:
        self.machine.transition(LeaderState.NOT_LEADER, reason=reason, triggered_by=self.identity)
        await _call(self.on_deposed)

    # ==================== Loop ====================

    async def start(self) -> None:
        """Run an immediate tick, then keep ticking every check interval."""
        if self._loop_task is not None:
            return
        await self._safe_tick()
        self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop the loop and release the lock if this process is leader."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        if self.is_leader:
            if self.lock is not None and not self._assumed:
                try:
                    await self.lock.release()
                    logger.info(f"Released scheduler lock ({self.identity})")
                except LOCK_BACKEND_ERRORS as e:
                    logger.error(f"Failed to release scheduler lock: {e}")
            self._assumed = False
            await self._depose("stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            await self._safe_tick()

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Leader election tick failed: {e}", exc_info=True)
