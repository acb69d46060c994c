"""
Unit tests for workflow run retention.
"""

from datetime import datetime, timedelta, timezone

import pytest

from automation_engine.core.models import WorkflowRun
from automation_engine.jobs.cleanup import cleanup_workflow_runs

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def finished_run(run_id: str, status: str, age_days: int) -> WorkflowRun:
    completed = NOW - timedelta(days=age_days)
    return WorkflowRun(
        id=run_id,
        workflow_id="wf-1",
        user_id="user-1",
        status=status,
        started_at=completed - timedelta(seconds=5),
        completed_at=completed,
        duration=5000,
    )


class TestCleanup:
    """Tests for deleting old runs."""

    @pytest.mark.asyncio
    async def test_retention_windows_per_status(self, workflow_store, test_settings):
        """Test successes older than 30 days and errors older than 90 days are deleted."""
        for run in [
            finished_run("ok-new", "success", 10),
            finished_run("ok-old", "success", 31),
            finished_run("err-mid", "error", 31),
            finished_run("err-old", "error", 91),
        ]:
            workflow_store.runs[run.id] = run

        deleted = await cleanup_workflow_runs(workflow_store, test_settings, now=NOW)

        assert deleted == {"success": 1, "error": 1}
        assert set(workflow_store.runs) == {"ok-new", "err-mid"}

    @pytest.mark.asyncio
    async def test_running_runs_kept(self, workflow_store, test_settings):
        """Test unfinished runs are never deleted."""
        workflow_store.runs["live"] = WorkflowRun(
            id="live",
            workflow_id="wf-1",
            user_id="user-1",
            started_at=NOW - timedelta(days=400),
        )

        deleted = await cleanup_workflow_runs(workflow_store, test_settings, now=NOW)

        assert deleted == {"success": 0, "error": 0}
        assert "live" in workflow_store.runs

    @pytest.mark.asyncio
    async def test_custom_retention(self, workflow_store, test_settings):
        """Test the retention windows come from settings."""
        test_settings.scheduler.success_retention_days = 5
        workflow_store.runs["ok"] = finished_run("ok", "success", 6)

        deleted = await cleanup_workflow_runs(workflow_store, test_settings, now=NOW)

        assert deleted["success"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, workflow_store, test_settings):
        """Test a store error is raised to the scheduler."""
        async def broken(status, cutoff):
            raise RuntimeError("database gone")

        workflow_store.delete_runs_completed_before = broken

        with pytest.raises(RuntimeError, match="database gone"):
            await cleanup_workflow_runs(workflow_store, test_settings, now=NOW)
