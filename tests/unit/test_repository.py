"""
Unit tests for the SQL workflow store, run against SQLite.
"""

from datetime import timedelta

import pytest

from automation_engine.core.errors import WorkflowNotFoundError
from automation_engine.core.models import WorkflowDefinition, WorkflowRun, WorkflowStatus, utcnow
from automation_engine.execution.executor import WorkflowExecutor
from automation_engine.storage.postgres.repository import SQLWorkflowStore, WorkflowRepository


@pytest.fixture
def store(sqlite_database):
    return SQLWorkflowStore(sqlite_database)


def cron_definition(workflow_id: str, status: str = "active") -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({
        "id": workflow_id,
        "name": f"Cron {workflow_id}",
        "userId": "user-1",
        "organizationId": "org-1",
        "status": status,
        "trigger": {"type": "cron", "config": {"schedule": "0 * * * *"}},
        "steps": [{"id": "t", "module": "utilities.time.now", "outputAs": "now"}],
    })


class TestWorkflows:
    """Tests for workflow rows."""

    @pytest.mark.asyncio
    async def test_round_trip(self, store, sample_workflow):
        """Test a saved workflow loads back with its steps and trigger."""
        definition = WorkflowDefinition.model_validate({
            **sample_workflow,
            "returnValue": {"total": "{{sum}}"},
        })

        await store.save_workflow(definition)
        loaded = await store.get_workflow("wf-parallel")

        assert loaded.user_id == "user-1"
        assert loaded.status == WorkflowStatus.ACTIVE
        assert [s.id for s in loaded.steps] == ["fetchA", "fetchB", "combine"]
        assert loaded.steps[2].output_as == "sum"
        assert loaded.steps[2].inputs == {"a": "{{a}}", "b": "{{b}}"}
        assert loaded.return_value == {"total": "{{sum}}"}
        assert loaded.run_count == 0

    @pytest.mark.asyncio
    async def test_missing_workflow(self, store):
        """Test an unknown id loads as None."""
        assert await store.get_workflow("nope") is None

    @pytest.mark.asyncio
    async def test_organization_lookup(self, store):
        """Test the owning organization is returned, and a missing workflow raises."""
        await store.save_workflow(cron_definition("wf-org"))

        assert await store.get_organization_id("wf-org") == "org-1"
        with pytest.raises(WorkflowNotFoundError):
            await store.get_organization_id("nope")

    @pytest.mark.asyncio
    async def test_list_scheduled_workflows(self, store, sample_workflow):
        """Test only active cron workflows are listed."""
        await store.save_workflow(cron_definition("wf-active"))
        await store.save_workflow(cron_definition("wf-paused", status="paused"))
        await store.save_workflow(WorkflowDefinition.model_validate(sample_workflow))

        scheduled = await store.list_scheduled_workflows()

        assert [w.id for w in scheduled] == ["wf-active"]
        assert scheduled[0].trigger.schedule == "0 * * * *"

    @pytest.mark.asyncio
    async def test_list_scheduled_includes_polling_triggers(self, store):
        """Test active Gmail and Outlook workflows are listed with cron ones."""
        await store.save_workflow(cron_definition("wf-cron"))
        for workflow_id, trigger_type in (("wf-gmail", "gmail"), ("wf-outlook", "outlook"), ("wf-hook", "webhook")):
            await store.save_workflow(WorkflowDefinition.model_validate({
                "id": workflow_id,
                "userId": "user-1",
                "status": "active",
                "trigger": {"type": trigger_type, "config": {"pollInterval": 120}},
                "steps": [],
            }))

        scheduled = await store.list_scheduled_workflows()

        assert [w.id for w in scheduled] == ["wf-cron", "wf-gmail", "wf-outlook"]
        assert scheduled[1].is_polling
        assert scheduled[1].trigger.poll_interval == 120.0

    @pytest.mark.asyncio
    async def test_update_status(self, sqlite_database, store):
        """Test pausing a workflow removes it from the schedule listing."""
        await store.save_workflow(cron_definition("wf-active"))

        async with sqlite_database.transaction() as session:
            await WorkflowRepository(session).update_workflow_status("wf-active", WorkflowStatus.PAUSED)

        assert await store.list_scheduled_workflows() == []


class TestRuns:
    """Tests for the run ledger."""

    @pytest.mark.asyncio
    async def test_create_and_complete(self, store):
        """Test a run is written at start and completed with the aggregates."""
        await store.save_workflow(cron_definition("wf-1"))
        run = WorkflowRun(workflow_id="wf-1", user_id="user-1", trigger_type="cron", trigger_data={"scheduledAt": "x"})

        await store.create_run(run)
        started = await store.get_run(run.id)
        assert started.status == "running"
        assert started.completed_at is None

        run.status = "success"
        run.completed_at = run.started_at + timedelta(milliseconds=250)
        run.duration = 250
        run.output = {"now": "later"}
        await store.complete_run(run)

        finished = await store.get_run(run.id)
        assert finished.status == "success"
        assert finished.duration == 250
        assert finished.output == {"now": "later"}
        assert finished.trigger_data == {"scheduledAt": "x"}

        workflow = await store.get_workflow("wf-1")
        assert workflow.run_count == 1
        assert workflow.last_run_status == "success"
        assert workflow.last_run is not None

    @pytest.mark.asyncio
    async def test_run_count_increments(self, store):
        """Test every completed run increments the workflow's counter."""
        await store.save_workflow(cron_definition("wf-1"))

        for status in ("success", "error", "success"):
            run = WorkflowRun(workflow_id="wf-1", user_id="user-1")
            await store.create_run(run)
            run.status = status
            run.completed_at = utcnow()
            run.error = "failed" if status == "error" else None
            await store.complete_run(run)

        workflow = await store.get_workflow("wf-1")
        assert workflow.run_count == 3
        assert workflow.last_run_status == "success"
        assert workflow.last_run_error is None
        assert len(await store.list_runs("wf-1")) == 3

    @pytest.mark.asyncio
    async def test_delete_runs_completed_before(self, store):
        """Test only finished runs of the given status before the cutoff are deleted."""
        await store.save_workflow(cron_definition("wf-1"))
        now = utcnow()

        old = WorkflowRun(workflow_id="wf-1", user_id="user-1", started_at=now - timedelta(days=40))
        recent = WorkflowRun(workflow_id="wf-1", user_id="user-1", started_at=now - timedelta(days=1))
        failed = WorkflowRun(workflow_id="wf-1", user_id="user-1", started_at=now - timedelta(days=40))
        for run, status in ((old, "success"), (recent, "success"), (failed, "error")):
            await store.create_run(run)
            run.status = status
            run.completed_at = run.started_at + timedelta(seconds=1)
            await store.complete_run(run)

        deleted = await store.delete_runs_completed_before("success", now - timedelta(days=30))

        assert deleted == 1
        assert await store.get_run(old.id) is None
        assert await store.get_run(recent.id) is not None
        assert await store.get_run(failed.id) is not None


class TestExecutorWithDatabase:
    """Tests for the executor writing through the SQL store."""

    @pytest.mark.asyncio
    async def test_exactly_one_run_row(self, store, module_registry, test_settings, sample_workflow):
        """Test one execution leaves one terminal run row."""
        await store.save_workflow(WorkflowDefinition.model_validate(sample_workflow))
        executor = WorkflowExecutor(store, module_registry, settings=test_settings)

        result = await executor.execute_workflow("wf-parallel", "user-1")

        runs = await store.list_runs("wf-parallel")
        assert result.success
        assert [r.id for r in runs] == [result.run_id]
        assert runs[0].status == "success"
        assert runs[0].output == {"a": 1, "b": 2, "sum": 3}
        assert runs[0].completed_at >= runs[0].started_at
