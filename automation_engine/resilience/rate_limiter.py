"""Rate limiter for calls to quota-bound external APIs.

Combines three limits: a cap on concurrent calls, a minimum spacing between
call starts, and a reservoir of tokens refilled to a fixed amount on a fixed
interval. Refill is computed lazily from the injected clock, so the limiter
holds no background task and tests can drive time directly.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from automation_engine.core.errors import EngineError
from automation_engine.resilience.circuit_breaker import call_maybe_async

logger = logging.getLogger(__name__)

# (error, attempt) -> seconds to wait before retrying, or None to give up
FailedHook = Callable[[BaseException, int], Optional[float]]


class ReservoirDepletedError(EngineError):
    """The reservoir is empty and is never refilled."""


def retry_on_rate_limit(error: BaseException, attempt: int) -> Optional[float]:
    """Retry rate-limit responses after 5 seconds, up to 3 times."""
    message = str(error).lower()
    if attempt <= 3 and ("rate limit" in message or "429" in message):
        return 5.0
    return None


class RateLimiter:
    """Concurrency, spacing and reservoir limits for one named dependency."""

    def __init__(
        self,
        name: str,
        max_concurrent: Optional[int] = None,
        min_time: float = 0.0,
        reservoir: Optional[int] = None,
        reservoir_refresh_amount: Optional[int] = None,
        reservoir_refresh_interval: Optional[float] = None,
        on_failed: Optional[FailedHook] = retry_on_rate_limit,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self.max_concurrent = max_concurrent
        self.min_time = min_time
        self.reservoir_refresh_amount = reservoir_refresh_amount
        self.reservoir_refresh_interval = reservoir_refresh_interval
        self.on_failed = on_failed
        self._clock = clock
        self._sleep = sleep

        self._reservoir = reservoir
        self._last_refresh = clock()
        self._next_start = 0.0
        self._semaphore = asyncio.Semaphore(max_concurrent) if max_concurrent else None
        self._start_lock = asyncio.Lock()

        self.running = 0
        self.queued = 0
        self.done = 0

    @property
    def reservoir(self) -> Optional[int]:
        """Tokens currently available (None = unlimited)."""
        self._refill()
        return self._reservoir

    def _refill(self) -> None:
        if (
            self._reservoir is None
            or not self.reservoir_refresh_interval
            or self.reservoir_refresh_amount is None
        ):
            return
        elapsed = self._clock() - self._last_refresh
        periods = int(elapsed // self.reservoir_refresh_interval)
        if periods > 0:
            self._reservoir = self.reservoir_refresh_amount
            self._last_refresh += periods * self.reservoir_refresh_interval

    def try_acquire(self) -> bool:
        """Take one reservoir token without waiting."""
        self._refill()
        if self._reservoir is None:
            return True
        if self._reservoir <= 0:
            return False
        self._reservoir -= 1
        if self._reservoir == 0:
            logger.warning(f"Rate limiter {self.name} reservoir depleted")
        return True

    def refund(self, tokens: int = 1) -> None:
        """Give back tokens taken for work that never ran."""
        if self._reservoir is None:
            return
        self._refill()
        limit = self.reservoir_refresh_amount
        self._reservoir += tokens
        if limit is not None:
            self._reservoir = min(self._reservoir, limit)

    def time_until_refill(self) -> float:
        if not self.reservoir_refresh_interval:
            return 0.0
        return max(0.0, self._last_refresh + self.reservoir_refresh_interval - self._clock())

    async def _wait_for_slot(self) -> None:
        async with self._start_lock:
            while not self.try_acquire():
                if not self.reservoir_refresh_interval:
                    raise ReservoirDepletedError(f"Rate limiter {self.name} reservoir exhausted")
                await self._sleep(self.time_until_refill())

            wait = self._next_start - self._clock()
            if wait > 0:
                await self._sleep(wait)
            self._next_start = self._clock() + self.min_time

    async def schedule(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run fn once the limits allow it.

        A failure is passed to the on_failed hook; when the hook returns a
        delay the call is retried after that delay, otherwise it is re-raised.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._run_once(fn, *args, **kwargs)
            except ReservoirDepletedError:
                raise
            except Exception as e:
                logger.warning(f"Rate limiter {self.name} job failed: {e}")
                delay = self.on_failed(e, attempt) if self.on_failed else None
                if delay is None:
                    raise
                logger.info(f"Rate limiter {self.name} retrying job in {delay}s (attempt {attempt})")
                await self._sleep(delay)

    async def _run_once(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        self.queued += 1
        try:
            if self._semaphore is not None:
                await self._semaphore.acquire()
            try:
                await self._wait_for_slot()
            except BaseException:
                if self._semaphore is not None:
                    self._semaphore.release()
                raise
        finally:
            self.queued -= 1

        self.running += 1
        try:
            return await call_maybe_async(fn, *args, **kwargs)
        finally:
            self.running -= 1
            self.done += 1
            if self._semaphore is not None:
                self._semaphore.release()

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.running,
            "queued": self.queued,
            "done": self.done,
            "reservoir": self.reservoir,
        }
