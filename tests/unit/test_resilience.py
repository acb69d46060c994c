"""
Unit tests for circuit breakers and rate limiters.
"""

import asyncio

import pytest

from automation_engine.core.errors import CircuitOpenError
from automation_engine.resilience.circuit_breaker import CircuitBreaker, CircuitState
from automation_engine.resilience.rate_limiter import (
    RateLimiter,
    ReservoirDepletedError,
    retry_on_rate_limit,
)
from automation_engine.resilience.registry import ResilienceRegistry


async def succeed():
    return "ok"


async def explode():
    raise RuntimeError("service down")


class TestCircuitBreaker:
    """Tests for circuit breaker state changes."""

    @pytest.fixture
    def breaker(self, fake_clock):
        return CircuitBreaker(
            "svc",
            timeout=1.0,
            error_threshold_percentage=50.0,
            volume_threshold=3,
            rolling_window=10.0,
            reset_timeout=30.0,
            clock=fake_clock,
        )

    async def _fail(self, breaker, times):
        for _ in range(times):
            with pytest.raises(RuntimeError):
                await breaker.call(explode)

    @pytest.mark.asyncio
    async def test_stays_closed_below_volume(self, breaker):
        """Test failures below the volume threshold never open the circuit."""
        await self._fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker):
        """Test the circuit opens and fails fast once the error rate is reached."""
        await self._fail(breaker, 3)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, breaker, fake_clock):
        """Test a successful trial after the reset timeout closes the circuit."""
        await self._fail(breaker, 3)
        fake_clock.advance(30)

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self, breaker, fake_clock):
        """Test a failed trial reopens the circuit."""
        await self._fail(breaker, 3)
        fake_clock.advance(30)

        await self._fail(breaker, 1)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_cancelled_trial_allows_next_call(self, breaker, fake_clock):
        """Test cancelling the half-open trial does not block the circuit for good."""
        await self._fail(breaker, 3)
        fake_clock.advance(30)
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(10)

        trial = asyncio.create_task(breaker.call(slow))
        await started.wait()
        with pytest.raises(CircuitOpenError):
            await breaker.call(succeed)

        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_old_failures_leave_window(self, breaker, fake_clock):
        """Test failures outside the rolling window are forgotten."""
        await self._fail(breaker, 2)
        fake_clock.advance(11)
        await breaker.call(succeed)
        await self._fail(breaker, 1)

        # Window now holds one success and one failure
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, fake_clock):
        """Test a call exceeding the timeout raises and is recorded."""
        breaker = CircuitBreaker("slow", timeout=0.05, volume_threshold=1, clock=fake_clock)

        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(TimeoutError):
            await breaker.call(hang)
        assert breaker.state == CircuitState.OPEN


class TestRateLimiter:
    """Tests for the reservoir, spacing and retry hook."""

    def test_reservoir_refills_on_interval(self, fake_clock):
        """Test tokens run out and come back after the interval."""
        limiter = RateLimiter(
            "api",
            reservoir=2,
            reservoir_refresh_amount=2,
            reservoir_refresh_interval=60.0,
            clock=fake_clock,
        )

        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        assert limiter.time_until_refill() == 60.0

        fake_clock.advance(60)
        assert limiter.reservoir == 2
        assert limiter.try_acquire()

    def test_refund_is_capped(self, fake_clock):
        """Test refunds never exceed the refresh amount."""
        limiter = RateLimiter(
            "api",
            reservoir=3,
            reservoir_refresh_amount=3,
            reservoir_refresh_interval=60.0,
            clock=fake_clock,
        )

        limiter.try_acquire()
        limiter.refund()
        limiter.refund()

        assert limiter.reservoir == 3

    def test_unlimited_reservoir(self, fake_clock):
        """Test a limiter without a reservoir always grants."""
        limiter = RateLimiter("free", clock=fake_clock)
        assert all(limiter.try_acquire() for _ in range(100))
        assert limiter.reservoir is None

    @pytest.mark.asyncio
    async def test_depleted_without_refresh_raises(self, fake_clock):
        """Test an empty reservoir that never refills fails the call."""
        limiter = RateLimiter("once", reservoir=1, clock=fake_clock)

        assert await limiter.schedule(succeed) == "ok"
        with pytest.raises(ReservoirDepletedError):
            await limiter.schedule(succeed)

    @pytest.mark.asyncio
    async def test_retries_rate_limit_errors(self, fake_clock):
        """Test a 429 is retried after the hook's delay."""
        sleeps: list[float] = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("HTTP 429 Too Many Requests")
            return "done"

        limiter = RateLimiter("api", clock=fake_clock, sleep=fake_sleep)

        assert await limiter.schedule(flaky) == "done"
        assert attempts == 2
        assert sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self, fake_clock):
        """Test non rate-limit errors propagate on the first attempt."""
        limiter = RateLimiter("api", clock=fake_clock)

        with pytest.raises(RuntimeError, match="service down"):
            await limiter.schedule(explode)
        assert limiter.done == 1

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        """Test no more than max_concurrent calls run at once."""
        limiter = RateLimiter("api", max_concurrent=2)
        running = 0
        peak = 0

        async def work():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await asyncio.gather(*(limiter.schedule(work) for _ in range(6)))

        assert peak == 2

    def test_retry_hook_gives_up(self):
        """Test the default hook stops after three attempts."""
        error = RuntimeError("rate limit exceeded")
        assert retry_on_rate_limit(error, 3) == 5.0
        assert retry_on_rate_limit(error, 4) is None
        assert retry_on_rate_limit(RuntimeError("boom"), 1) is None


class TestResilienceRegistry:
    """Tests for preset-driven construction."""

    def test_breaker_uses_preset(self):
        """Test a named dependency gets its preset options."""
        registry = ResilienceRegistry()
        breaker = registry.breaker("openai")

        assert breaker.timeout == 60.0
        assert registry.breaker("openai") is breaker

    def test_limiter_unknown_name(self):
        """Test dependencies without a preset get no limiter."""
        assert ResilienceRegistry().limiter("unknown") is None

    def test_limiter_preset_refresh_amount(self):
        """Test the refresh amount defaults to the reservoir size."""
        limiter = ResilienceRegistry().limiter("reddit")

        assert limiter.reservoir == 60
        assert limiter.reservoir_refresh_amount == 60

    def test_status(self):
        """Test status lists every created breaker and limiter."""
        registry = ResilienceRegistry()
        registry.breaker("twitter")
        registry.limiter("twitter")

        status = registry.get_status()

        assert status["circuits"]["twitter"]["state"] == "closed"
        assert status["limiters"]["twitter"]["reservoir"] == 300
