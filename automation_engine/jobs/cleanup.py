"""
Workflow run retention.

Successful runs are kept for SCHEDULER_SUCCESS_RETENTION_DAYS and failed runs
for SCHEDULER_ERROR_RETENTION_DAYS. Runs by the scheduler leader only.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from automation_engine.config import Settings, get_settings
from automation_engine.core.models import utcnow
from automation_engine.core.state_machine import RunStatus
from automation_engine.storage.store import WorkflowStore

logger = logging.getLogger(__name__)


async def cleanup_workflow_runs(
    store: WorkflowStore,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """
    Delete finished runs older than their retention window.

    Returns:
        Number of deleted runs per status
    """
    settings = settings or get_settings()
    now = now or utcnow()

    try:
        success_deleted = await store.delete_runs_completed_before(
            RunStatus.SUCCESS.value,
            now - timedelta(days=settings.scheduler.success_retention_days),
        )
        error_deleted = await store.delete_runs_completed_before(
            RunStatus.ERROR.value,
            now - timedelta(days=settings.scheduler.error_retention_days),
        )
    except Exception as e:
        logger.error(f"Workflow run cleanup failed: {e}")
        raise

    if success_deleted or error_deleted:
        logger.info(
            f"Cleaned up {success_deleted} successful and {error_deleted} failed workflow run(s)"
        )

    return {"success": success_deleted, "error": error_deleted}
