"""PostgreSQL storage layer."""

from automation_engine.storage.postgres.models import Base, WorkflowModel, WorkflowRunModel
from automation_engine.storage.postgres.repository import SQLWorkflowStore, WorkflowRepository
from automation_engine.storage.postgres.database import Database

__all__ = [
    "Base",
    "WorkflowModel",
    "WorkflowRunModel",
    "WorkflowRepository",
    "SQLWorkflowStore",
    "Database",
]
