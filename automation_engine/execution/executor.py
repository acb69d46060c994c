"""
Workflow executor.

Runs one workflow end to end: loads it, allocates the run's context, records
the run in the ledger, drives the steps wave by wave and resolves the final
output. Every entry point returns an ExecutionResult; failures are recorded,
never raised to the caller.
"""

import logging
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import uuid4

from automation_engine.config import Settings, get_settings
from automation_engine.core.errors import failing_step_of
from automation_engine.core.graph import analyze_parallelization_potential, plan_all_scopes
from automation_engine.core.models import (
    ExecutionResult,
    TriggerType,
    WorkflowConfig,
    WorkflowRun,
    utcnow,
)
from automation_engine.core.state_machine import RunStateMachine, RunStatus
from automation_engine.execution.context import (
    CredentialAliases,
    ExecutionContext,
    build_context,
    resolve_output,
)
from automation_engine.execution.modules import ModuleRegistry
from automation_engine.execution.steps import StepExecutor
from automation_engine.storage.store import WorkflowStore

logger = logging.getLogger(__name__)

CredentialSupplier = Callable[[str], Awaitable[dict[str, Any]]]

INLINE_WORKFLOW_ID = "inline"
INACTIVE_ORGANIZATION_ERROR = "Cannot execute workflow: client organization is inactive"


class WorkflowExecutor:
    """
    Executes stored and inline workflows.

    Usage:
        executor = WorkflowExecutor(store, modules)
        result = await executor.execute_workflow(workflow_id, user_id)
    """

    def __init__(
        self,
        store: Optional[WorkflowStore],
        modules: ModuleRegistry,
        credentials: Optional[CredentialSupplier] = None,
        aliases: Optional[CredentialAliases] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.modules = modules
        self.credentials = credentials
        self.aliases = aliases or CredentialAliases()
        self.settings = settings or get_settings()

        executor_settings = self.settings.executor
        self.steps = StepExecutor(
            modules,
            max_wave_concurrency=executor_settings.max_wave_concurrency,
            while_max_iterations=executor_settings.while_max_iterations,
            while_max_duration=executor_settings.while_max_duration,
        )

    async def execute_workflow(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: Union[TriggerType, str] = TriggerType.MANUAL,
        trigger_data: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """
        Execute a stored workflow and record the run.

        Rejections (unknown workflow, inactive organization) happen before a
        run exists. Otherwise exactly one run is written at start and
        completed at the terminal transition.
        """
        if self.store is None:
            raise RuntimeError("WorkflowExecutor has no store; use execute_workflow_config()")

        definition = await self.store.get_workflow(workflow_id)
        if definition is None:
            logger.warning(f"Workflow {workflow_id} not found")
            return ExecutionResult(success=False, error=f"Workflow {workflow_id} not found")

        if definition.organization_inactive:
            logger.warning(
                f"Refusing to execute workflow {workflow_id}: "
                f"organization {definition.organization_id} is inactive"
            )
            return ExecutionResult(success=False, error=INACTIVE_ORGANIZATION_ERROR)

        trigger_value = trigger_type.value if isinstance(trigger_type, TriggerType) else trigger_type
        run = WorkflowRun(
            id=str(uuid4()),
            workflow_id=workflow_id,
            user_id=user_id,
            organization_id=definition.organization_id,
            trigger_type=trigger_value,
            trigger_data=trigger_data,
            started_at=utcnow(),
        )
        await self.store.create_run(run)
        logger.info(f"Started run {run.id} of workflow {workflow_id} ({trigger_value})")

        machine = RunStateMachine()
        try:
            context = await self._allocate_context(workflow_id, run.id, user_id, trigger_data)
            run.output = await self._run(definition, context)
            machine.transition(RunStatus.SUCCESS, reason="all steps completed")
        except Exception as e:
            run.error = str(e)
            run.error_step = failing_step_of(e)
            machine.transition(RunStatus.ERROR, reason=run.error)
            logger.error(
                f"Run {run.id} of workflow {workflow_id} failed at step {run.error_step}: {e}"
            )

        run.status = machine.state.value
        run.completed_at = utcnow()
        run.duration = max(0, int((run.completed_at - run.started_at).total_seconds() * 1000))
        await self.store.complete_run(run)

        logger.info(f"Run {run.id} finished with status {run.status} in {run.duration}ms")
        return ExecutionResult(
            success=machine.is_success,
            output=run.output if machine.is_success else None,
            error=run.error,
            error_step=run.error_step,
            run_id=run.id,
        )

    async def execute_workflow_config(
        self,
        config: Union[WorkflowConfig, dict[str, Any]],
        user_id: str,
        trigger_data: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Execute an inline configuration. Nothing is read from or written to the store."""
        run_id = str(uuid4())
        try:
            if not isinstance(config, WorkflowConfig):
                config = WorkflowConfig.model_validate(config)
            context = await self._allocate_context(
                INLINE_WORKFLOW_ID, run_id, user_id, trigger_data
            )
            output = await self._run(config, context)
        except Exception as e:
            error_step = failing_step_of(e)
            logger.error(f"Inline run {run_id} failed at step {error_step}: {e}")
            return ExecutionResult(success=False, error=str(e), error_step=error_step, run_id=run_id)

        return ExecutionResult(success=True, output=output, run_id=run_id)

    async def _allocate_context(
        self,
        workflow_id: str,
        run_id: str,
        user_id: str,
        trigger_data: Optional[dict[str, Any]],
    ) -> ExecutionContext:
        credentials: dict[str, Any] = {}
        if self.credentials is not None:
            credentials = await self.credentials(user_id) or {}
        return build_context(
            workflow_id=workflow_id,
            run_id=run_id,
            user_id=user_id,
            credentials=self.aliases.expand(credentials),
            trigger_data=trigger_data,
        )

    async def _run(self, config: WorkflowConfig, context: ExecutionContext) -> Any:
        # Nested bodies are scheduled lazily, so check them before anything runs
        plan_all_scopes(config.steps, context.variables)
        analysis = analyze_parallelization_potential(config.steps, context.variables)
        logger.info(
            f"Workflow {context.workflow_id} parallelization: {analysis['speedupPotential']}, "
            f"max parallelism {analysis['maxParallelism']}"
        )

        await self.steps.run_steps(config.steps, context)
        return resolve_output(context, config.return_value, self.aliases.names())
