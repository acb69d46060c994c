"""
Repository layer for workflow data access.

Provides high-level data access methods with proper transaction handling.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from automation_engine.core.errors import WorkflowNotFoundError
from automation_engine.core.models import (
    POLLING_TRIGGERS,
    TriggerType,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowStatus,
)
from automation_engine.storage.postgres.database import Database
from automation_engine.storage.postgres.models import WorkflowModel, WorkflowRunModel

SCHEDULED_TRIGGER_TYPES = sorted([TriggerType.CRON.value, *(t.value for t in POLLING_TRIGGERS)])


def to_definition(model: WorkflowModel) -> WorkflowDefinition:
    """Build the domain workflow from its row."""
    config = model.config or {}
    return WorkflowDefinition.model_validate({
        **config,
        "id": model.id,
        "name": model.name,
        "userId": model.user_id,
        "organizationId": model.organization_id,
        "organizationStatus": model.organization_status,
        "status": model.status,
        "trigger": model.trigger or {},
        "lastRun": model.last_run,
        "lastRunStatus": model.last_run_status,
        "lastRunError": model.last_run_error,
        "runCount": model.run_count or 0,
    })


def to_run(model: WorkflowRunModel) -> WorkflowRun:
    return WorkflowRun(
        id=model.id,
        workflow_id=model.workflow_id,
        user_id=model.user_id,
        organization_id=model.organization_id,
        trigger_type=model.trigger_type,
        trigger_data=model.trigger_data,
        status=model.status,
        started_at=model.started_at,
        completed_at=model.completed_at,
        duration=model.duration,
        output=model.output,
        error=model.error,
        error_step=model.error_step,
    )


class WorkflowRepository:
    """
    Repository for workflows and their runs.

    All methods operate within the provided session's transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Workflow Operations ====================

    async def create_workflow(self, definition: WorkflowDefinition) -> WorkflowModel:
        """Create a new workflow."""
        config = definition.model_dump(
            mode="json",
            by_alias=True,
            include={"steps", "return_value", "output_display"},
            exclude_none=True,
        )
        model = WorkflowModel(
            id=definition.id,
            user_id=definition.user_id,
            organization_id=definition.organization_id,
            organization_status=(
                definition.organization_status.value if definition.organization_status else None
            ),
            name=definition.name,
            status=definition.status.value,
            trigger=definition.trigger.model_dump(mode="json"),
            config=config,
            run_count=definition.run_count,
        )

        self.session.add(model)
        await self.session.flush()
        return model

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowModel]:
        """Get workflow by ID."""
        result = await self.session.execute(
            select(WorkflowModel).where(WorkflowModel.id == workflow_id)
        )
        return result.scalar_one_or_none()

    async def list_scheduled_workflows(self) -> list[WorkflowModel]:
        """Active workflows with a cron or polling trigger."""
        result = await self.session.execute(
            select(WorkflowModel)
            .where(WorkflowModel.status == WorkflowStatus.ACTIVE.value)
            .where(WorkflowModel.trigger["type"].as_string().in_(SCHEDULED_TRIGGER_TYPES))
            .order_by(WorkflowModel.id)
        )
        return list(result.scalars().all())

    async def get_organization_id(self, workflow_id: str) -> Optional[str]:
        """
        Organization owning a workflow (None for personal workflows).

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
        """
        result = await self.session.execute(
            select(WorkflowModel.id, WorkflowModel.organization_id)
            .where(WorkflowModel.id == workflow_id)
        )
        row = result.first()
        if row is None:
            raise WorkflowNotFoundError(workflow_id)
        return row.organization_id

    async def update_workflow_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        await self.session.execute(
            update(WorkflowModel)
            .where(WorkflowModel.id == workflow_id)
            .values(status=status.value)
        )

    # ==================== Run Operations ====================

    async def create_run(self, run: WorkflowRun) -> WorkflowRunModel:
        """Insert the running row of a new run."""
        model = WorkflowRunModel(
            id=run.id,
            workflow_id=run.workflow_id,
            user_id=run.user_id,
            organization_id=run.organization_id,
            trigger_type=run.trigger_type,
            trigger_data=run.trigger_data,
            status=run.status,
            started_at=run.started_at,
        )

        self.session.add(model)
        await self.session.flush()
        return model

    async def complete_run(self, run: WorkflowRun) -> None:
        """
        Write a run's terminal fields and the workflow aggregates.

        run_count is incremented in SQL. Callers run this inside one
        transaction so both updates commit together.
        """
        await self.session.execute(
            update(WorkflowRunModel)
            .where(WorkflowRunModel.id == run.id)
            .values(
                status=run.status,
                completed_at=run.completed_at,
                duration=run.duration,
                output=run.output,
                error=run.error,
                error_step=run.error_step,
            )
        )
        await self.session.execute(
            update(WorkflowModel)
            .where(WorkflowModel.id == run.workflow_id)
            .values(
                last_run=run.completed_at,
                last_run_status=run.status,
                last_run_error=run.error,
                run_count=WorkflowModel.run_count + 1,
            )
        )

    async def get_run(self, run_id: str) -> Optional[WorkflowRunModel]:
        result = await self.session.execute(
            select(WorkflowRunModel).where(WorkflowRunModel.id == run_id)
        )
        return result.scalar_one_or_none()

    async def list_runs(self, workflow_id: str, limit: int = 50) -> list[WorkflowRunModel]:
        """Most recent runs of a workflow first."""
        result = await self.session.execute(
            select(WorkflowRunModel)
            .where(WorkflowRunModel.workflow_id == workflow_id)
            .order_by(WorkflowRunModel.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def delete_runs_completed_before(self, status: str, cutoff: datetime) -> int:
        """Delete runs with the given status completed before cutoff."""
        result = await self.session.execute(
            delete(WorkflowRunModel)
            .where(WorkflowRunModel.status == status)
            .where(WorkflowRunModel.completed_at.is_not(None))
            .where(WorkflowRunModel.completed_at < cutoff)
        )
        return result.rowcount or 0


class SQLWorkflowStore:
    """WorkflowStore backed by the database; one session per operation."""

    def __init__(self, database: Database):
        self.database = database

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        async with self.database.session() as session:
            model = await WorkflowRepository(session).get_workflow(workflow_id)
            return to_definition(model) if model else None

    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        async with self.database.transaction() as session:
            await WorkflowRepository(session).create_workflow(definition)

    async def list_scheduled_workflows(self) -> list[WorkflowDefinition]:
        async with self.database.session() as session:
            models = await WorkflowRepository(session).list_scheduled_workflows()
            return [to_definition(m) for m in models]

    async def get_organization_id(self, workflow_id: str) -> Optional[str]:
        async with self.database.session() as session:
            return await WorkflowRepository(session).get_organization_id(workflow_id)

    async def create_run(self, run: WorkflowRun) -> None:
        async with self.database.transaction() as session:
            await WorkflowRepository(session).create_run(run)

    async def complete_run(self, run: WorkflowRun) -> None:
        async with self.database.transaction() as session:
            await WorkflowRepository(session).complete_run(run)

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        async with self.database.session() as session:
            model = await WorkflowRepository(session).get_run(run_id)
            return to_run(model) if model else None

    async def list_runs(self, workflow_id: str, limit: int = 50) -> list[WorkflowRun]:
        async with self.database.session() as session:
            models = await WorkflowRepository(session).list_runs(workflow_id, limit)
            return [to_run(m) for m in models]

    async def delete_runs_completed_before(self, status: str, cutoff: datetime) -> int:
        async with self.database.transaction() as session:
            return await WorkflowRepository(session).delete_runs_completed_before(status, cutoff)
