"""
Wave-by-wave execution of a step list.

Waves run strictly in sequence. Members of a wave start together, bounded by
max_concurrency (larger waves run in sub-batches), and the scheduler waits
for every member to settle before looking at outcomes.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from automation_engine.core.errors import StepFailure, WaveAggregateError
from automation_engine.core.graph import plan_waves

logger = logging.getLogger(__name__)

StepRunner = Callable[[Any, Any], Awaitable[Any]]


class WaveScheduler:
    """Drives a step runner over the waves of a step list."""

    def __init__(self, run_step: StepRunner, max_concurrency: int = 10):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._run_step = run_step
        self.max_concurrency = max_concurrency

    async def run(self, steps: list[Any], context: Any) -> Any:
        """
        Execute steps wave by wave against the shared context.

        Returns:
            Result of the last step of the final wave (None for no steps)

        Raises:
            ConfigurationError: Cycle or output conflict, before any step runs
            WaveAggregateError: Several steps of one wave failed
            StepExecutionError: The only step of a wave failed
        """
        if not steps:
            return None

        waves = plan_waves(steps, context.variables)
        last_output = None

        for number, wave in enumerate(waves, start=1):
            logger.info(
                f"Executing wave {number}/{len(waves)} with {len(wave)} step(s): "
                f"{[step.id for step in wave]}"
            )
            last_output = await self._run_wave(number, wave, context)

        return last_output

    async def _run_wave(self, number: int, wave: list[Any], context: Any) -> Any:
        results: list[Any] = []

        for start in range(0, len(wave), self.max_concurrency):
            batch = wave[start:start + self.max_concurrency]
            results.extend(await asyncio.gather(
                *(self._run_step(step, context) for step in batch),
                return_exceptions=True,
            ))

        failures = [
            StepFailure(step.id, result)
            for step, result in zip(wave, results)
            if isinstance(result, BaseException)
        ]

        if failures:
            cancelled = next(
                (f.error for f in failures if isinstance(f.error, asyncio.CancelledError)),
                None,
            )
            if cancelled is not None:
                raise cancelled
            if len(wave) == 1:
                raise failures[0].error
            for failure in failures:
                logger.error(f"Wave {number}: step {failure.step_id} failed: {failure.message}")
            raise WaveAggregateError(number, failures)

        return results[-1]
