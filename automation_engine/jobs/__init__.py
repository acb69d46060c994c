"""Leader-only maintenance jobs."""

from automation_engine.jobs.cleanup import cleanup_workflow_runs

__all__ = ["cleanup_workflow_runs"]
