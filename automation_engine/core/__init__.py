"""Core domain models and business logic."""

from automation_engine.core.errors import (
    ConfigurationError,
    EngineError,
    StepExecutionError,
    WaveAggregateError,
)
from automation_engine.core.graph import (
    analyze_parallelization_potential,
    build_dependency_graph,
    group_into_waves,
)
from automation_engine.core.models import (
    ExecutionResult,
    WorkflowConfig,
    WorkflowDefinition,
    WorkflowRun,
)
from automation_engine.core.state_machine import (
    LeaderState,
    LeaderStateMachine,
    RunStateMachine,
    RunStatus,
)

__all__ = [
    "ConfigurationError",
    "EngineError",
    "StepExecutionError",
    "WaveAggregateError",
    "analyze_parallelization_potential",
    "build_dependency_graph",
    "group_into_waves",
    "ExecutionResult",
    "WorkflowConfig",
    "WorkflowDefinition",
    "WorkflowRun",
    "LeaderState",
    "LeaderStateMachine",
    "RunStateMachine",
    "RunStatus",
]
