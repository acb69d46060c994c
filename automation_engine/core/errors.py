"""
Error taxonomy for the automation engine.

Every error raised by the engine derives from EngineError so callers can catch
engine failures without swallowing unrelated bugs.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(EngineError):
    """
    Invalid workflow or engine configuration.

    Raised before any step of the affected scope runs: invalid cron
    expressions, malformed module paths, circular step dependencies,
    duplicate outputAs keys within one wave, invalid array references.
    """


class WorkflowNotFoundError(EngineError):
    """The workflow does not exist in the store."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class StepExecutionError(EngineError):
    """A step failed. Tagged with the innermost failing step id."""

    def __init__(
        self,
        step_id: str,
        message: str,
        module: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.step_id = step_id
        self.module = module
        self.cause = cause
        self.detail = message
        if module:
            text = f'Step "{step_id}" ({module}): {message}'
        else:
            text = f'Step "{step_id}": {message}'
        super().__init__(text)


class StepFailure:
    """One failed member of a wave, keyed by the innermost failing step."""

    __slots__ = ("step_id", "error")

    def __init__(self, step_id: str, error: BaseException):
        if isinstance(error, StepExecutionError):
            step_id = error.step_id
        self.step_id = step_id
        self.error = error

    @property
    def message(self) -> str:
        if isinstance(self.error, StepExecutionError):
            return self.error.detail
        return str(self.error)

    def __repr__(self) -> str:
        return f"StepFailure(step_id={self.step_id!r}, error={self.error!r})"


class WaveAggregateError(EngineError):
    """Several sibling steps of one wave failed."""

    def __init__(self, wave_number: int, failures: list[StepFailure]):
        self.wave_number = wave_number
        self.failures = failures
        lines = [f"Step {f.step_id}: {f.message}" for f in failures]
        super().__init__(
            f"Wave {wave_number} failed with {len(failures)} error(s):\n" + "\n".join(lines)
        )

    @property
    def step_ids(self) -> list[str]:
        return [f.step_id for f in self.failures]


class ConditionError(EngineError):
    """A branch or loop condition could not be evaluated."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f'Failed to evaluate condition "{expression}": {reason}')


class InfrastructureError(EngineError):
    """Queue or lock backend unreachable."""


class RetryableJobError(EngineError):
    """A queued workflow run failed and should be retried by the queue."""

    def __init__(self, error: Optional[str], error_step: Optional[str] = None):
        self.error = error
        self.error_step = error_step
        super().__init__(
            f"Workflow execution failed: {error} (step: {error_step or 'unknown'})"
        )


class CircuitOpenError(EngineError):
    """A call was rejected because the circuit for its dependency is open."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit breaker '{name}' is open")


def failing_step_of(error: BaseException) -> str:
    """Return the step id a failed run should record as errorStep."""
    if isinstance(error, StepExecutionError):
        return error.step_id
    if isinstance(error, WaveAggregateError):
        return ",".join(error.step_ids)
    return "unknown"
