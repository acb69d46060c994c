"""Storage layer for workflow persistence."""

from automation_engine.storage.postgres.repository import SQLWorkflowStore, WorkflowRepository
from automation_engine.storage.redis.connection import RedisConnection
from automation_engine.storage.store import WorkflowStore

__all__ = ["WorkflowRepository", "SQLWorkflowStore", "WorkflowStore", "RedisConnection"]
