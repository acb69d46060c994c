"""
Step executor: actions and control flow.

Dispatches on step type. Container steps (condition, forEach, while) re-enter
wave scheduling for their bodies, so nested steps are parallelized the same
way top-level steps are. Every failure leaving this layer carries the id of
the innermost step that failed.
"""

import logging
import time
from typing import Any, Callable

from automation_engine.core.errors import (
    ConfigurationError,
    EngineError,
    StepExecutionError,
    WaveAggregateError,
)
from automation_engine.core.models import ActionStep, ConditionStep, ForEachStep, WhileStep
from automation_engine.execution.context import ExecutionContext
from automation_engine.execution.modules import ModuleRegistry
from automation_engine.execution.waves import WaveScheduler
from automation_engine.template.conditions import evaluate_condition
from automation_engine.template.resolver import get_path, resolve, whole_reference

logger = logging.getLogger(__name__)


class LoopLimitError(EngineError):
    """A while loop hit its iteration or duration cap."""


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


class StepExecutor:
    """Executes single steps against a run's context."""

    def __init__(
        self,
        modules: ModuleRegistry,
        max_wave_concurrency: int = 10,
        while_max_iterations: int = 100,
        while_max_duration: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.modules = modules
        self.while_max_iterations = while_max_iterations
        self.while_max_duration = while_max_duration
        self._clock = clock
        self.scheduler = WaveScheduler(self.execute, max_wave_concurrency)

    async def run_steps(self, steps: list[Any], context: ExecutionContext) -> Any:
        """Run a step list through wave scheduling; returns the last output."""
        return await self.scheduler.run(steps, context)

    async def execute(self, step: Any, context: ExecutionContext) -> Any:
        """
        Execute one step.

        Raises:
            StepExecutionError: Tagged with the innermost failing step
            WaveAggregateError: Several steps of a nested wave failed
        """
        try:
            if isinstance(step, ActionStep):
                return await self._execute_action(step, context)
            if isinstance(step, ConditionStep):
                return await self._execute_condition(step, context)
            if isinstance(step, ForEachStep):
                return await self._execute_for_each(step, context)
            if isinstance(step, WhileStep):
                return await self._execute_while(step, context)
            raise ConfigurationError(f"Unknown step type: {getattr(step, 'type', None)}")
        except (StepExecutionError, WaveAggregateError):
            raise
        except Exception as e:
            module = step.module if isinstance(step, ActionStep) else None
            logger.error(f"Step {step.id} failed: {e}")
            raise StepExecutionError(step.id, str(e), module=module, cause=e) from e

    # ==================== Step types ====================

    async def _execute_action(self, step: ActionStep, context: ExecutionContext) -> Any:
        logger.info(f"Executing step {step.id} ({step.module})")

        inputs = resolve(step.inputs, context.variables)
        result = await self.modules.invoke(step.module, inputs)

        if step.output_as:
            context.set_output(step.output_as, result)

        logger.debug(f"Step {step.id} completed")
        return result

    async def _execute_condition(self, step: ConditionStep, context: ExecutionContext) -> Any:
        matched = evaluate_condition(step.condition, context.variables)
        branch = step.then_steps if matched else step.else_steps

        logger.info(
            f"Condition {step.id} evaluated to {matched}, "
            f"running {'then' if matched else 'else'} branch ({len(branch)} step(s))"
        )
        return await self.scheduler.run(branch, context)

    async def _execute_for_each(self, step: ForEachStep, context: ExecutionContext) -> list[Any]:
        reference = whole_reference(step.array)
        if reference is None:
            raise ConfigurationError(
                f"Invalid array reference: {step.array}. Expected {{{{variableName}}}}"
            )

        items = get_path(context.variables, reference.segments)
        if not isinstance(items, list):
            raise StepExecutionError(
                step.id,
                f"Array reference {step.array} did not resolve to an array. "
                f"Got: {_type_name(items)}",
            )

        logger.info(f"ForEach {step.id} iterating over {len(items)} item(s)")

        bindings: dict[str, Any] = {step.item_as: None}
        if step.index_as:
            bindings[step.index_as] = None

        results: list[Any] = []
        with context.scoped(bindings):
            for index, item in enumerate(items):
                iteration = {step.item_as: item}
                if step.index_as:
                    iteration[step.index_as] = index
                context.rebind(iteration)

                logger.debug(f"ForEach {step.id} iteration {index + 1}/{len(items)}")
                results.append(await self.scheduler.run(step.steps, context))

        return results

    async def _execute_while(self, step: WhileStep, context: ExecutionContext) -> Any:
        max_iterations = step.max_iterations or self.while_max_iterations
        started = self._clock()
        iterations = 0
        last_output = None

        while evaluate_condition(step.condition, context.variables):
            if iterations >= max_iterations:
                raise LoopLimitError(
                    f"While loop exceeded max iterations ({max_iterations}). "
                    "Possible infinite loop."
                )
            if self._clock() - started > self.while_max_duration:
                raise LoopLimitError(
                    f"While loop exceeded max duration ({self.while_max_duration}s) "
                    f"after {iterations} iteration(s)."
                )

            logger.debug(f"While {step.id} iteration {iterations + 1}")
            last_output = await self.scheduler.run(step.steps, context)
            iterations += 1

        logger.info(f"While {step.id} finished after {iterations} iteration(s)")
        return last_output
