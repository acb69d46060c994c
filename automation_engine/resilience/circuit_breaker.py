"""Circuit breaker for calls to external services.

Stops hammering a dependency that is failing. Failures are counted over a
rolling window; once enough calls were made and the error percentage crosses
the threshold, the circuit opens and calls fail fast until a reset timeout has
passed. One trial call is then let through: success closes the circuit,
failure reopens it.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Optional

from automation_engine.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Rolling-window circuit breaker for one named dependency."""

    def __init__(
        self,
        name: str,
        timeout: Optional[float] = 10.0,
        error_threshold_percentage: float = 50.0,
        volume_threshold: int = 5,
        rolling_window: float = 10.0,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.timeout = timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.volume_threshold = volume_threshold
        self.rolling_window = rolling_window
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._calls: deque[tuple[float, bool]] = deque()  # (timestamp, succeeded)

    @property
    def state(self) -> CircuitState:
        """Current state, moving OPEN -> HALF_OPEN once the reset timeout passed."""
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"Circuit breaker half-open for {self.name} - testing recovery")
        return self._state

    async def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run fn through the breaker.

        Raises:
            CircuitOpenError: The circuit is open (or a half-open trial is running)
            TimeoutError: The call exceeded the per-call timeout
        """
        state = self.state
        if state == CircuitState.OPEN:
            raise CircuitOpenError(self.name)
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

        try:
            if self.timeout:
                async with asyncio.timeout(self.timeout):
                    result = await call_maybe_async(fn, *args, **kwargs)
            else:
                result = await call_maybe_async(fn, *args, **kwargs)
        except asyncio.CancelledError:
            # A cancelled trial proves nothing, let the next call try again
            if state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
            raise
        except TimeoutError:
            logger.error(f"Circuit breaker timeout for {self.name} ({self.timeout}s)")
            self.record_failure()
            raise TimeoutError(f"{self.name} timed out after {self.timeout}s")
        except Exception as e:
            logger.error(f"Circuit breaker detected failure in {self.name}: {e}")
            self.record_failure()
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        self._record(True)
        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False
            self._calls.clear()
            logger.info(f"Circuit breaker closed for {self.name} - service recovered")

    def record_failure(self) -> None:
        self._record(False)
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            return
        if self._state != CircuitState.CLOSED:
            return

        total = len(self._calls)
        if total < self.volume_threshold:
            return
        failures = sum(1 for _, ok in self._calls if not ok)
        if failures * 100.0 / total >= self.error_threshold_percentage:
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning(
            f"Circuit breaker opened for {self.name} - service is failing. "
            f"Retrying in {self.reset_timeout}s"
        )

    def _record(self, succeeded: bool) -> None:
        now = self._clock()
        self._calls.append((now, succeeded))
        cutoff = now - self.rolling_window
        while self._calls and self._calls[0][0] < cutoff:
            self._calls.popleft()

    def get_status(self) -> dict[str, Any]:
        failures = sum(1 for _, ok in self._calls if not ok)
        return {
            "name": self.name,
            "state": self.state.value,
            "calls": len(self._calls),
            "failures": failures,
        }


async def call_maybe_async(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result
