"""
Workflow store interface.

The executor and the scheduler only see this protocol. SQLWorkflowStore is the
database implementation; tests use an in-memory one.
"""

from datetime import datetime
from typing import Optional, Protocol

from automation_engine.core.models import WorkflowDefinition, WorkflowRun


class WorkflowStore(Protocol):
    """Persistence operations needed to execute and schedule workflows."""

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...

    async def list_scheduled_workflows(self) -> list[WorkflowDefinition]:
        """Active workflows with a cron or polling trigger."""
        ...

    async def get_organization_id(self, workflow_id: str) -> Optional[str]:
        """Raises WorkflowNotFoundError for an unknown workflow."""
        ...

    async def create_run(self, run: WorkflowRun) -> None:
        ...

    async def complete_run(self, run: WorkflowRun) -> None:
        """Terminal run fields and workflow aggregates, in one transaction."""
        ...

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        ...

    async def delete_runs_completed_before(self, status: str, cutoff: datetime) -> int:
        ...
