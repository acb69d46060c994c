"""Workflow execution: modules, context, waves, steps and the executor."""

from automation_engine.execution.context import (
    CredentialAliases,
    ExecutionContext,
    build_context,
    resolve_output,
)
from automation_engine.execution.executor import CredentialSupplier, WorkflowExecutor
from automation_engine.execution.modules import (
    CallingConvention,
    ModuleDescriptor,
    ModuleRegistry,
    ParameterMismatchError,
)
from automation_engine.execution.steps import LoopLimitError, StepExecutor
from automation_engine.execution.waves import WaveScheduler

__all__ = [
    "CallingConvention",
    "CredentialAliases",
    "CredentialSupplier",
    "ExecutionContext",
    "LoopLimitError",
    "ModuleDescriptor",
    "ModuleRegistry",
    "ParameterMismatchError",
    "StepExecutor",
    "WaveScheduler",
    "WorkflowExecutor",
    "build_context",
    "resolve_output",
]
