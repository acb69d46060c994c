"""
Per-process service container.

Builds the object graph a worker process needs (Redis, database, store,
module and resilience registries, executor, job queue, cron scheduler) and
owns its lifecycle. Nothing here is a module-level singleton: each process,
and each test, builds its own EngineServices.

Without Redis (disabled or unreachable) the engine degrades instead of
failing: triggers execute directly and the scheduler is always leader.
"""

import logging
from functools import partial
from typing import Any, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

from automation_engine.config import Settings, get_settings
from automation_engine.core.errors import InfrastructureError
from automation_engine.core.models import EnqueueResult, ExecutionResult, TriggerType
from automation_engine.execution.executor import CredentialSupplier, WorkflowExecutor
from automation_engine.execution.modules import ModuleRegistry
from automation_engine.jobs.cleanup import cleanup_workflow_runs
from automation_engine.messaging.queue import TenantJobQueue
from automation_engine.resilience.registry import ResilienceRegistry
from automation_engine.scheduling.cron import CronScheduler
from automation_engine.scheduling.leader import RedisLeaderLock
from automation_engine.storage.postgres.database import Database
from automation_engine.storage.postgres.repository import SQLWorkflowStore
from automation_engine.storage.redis.connection import RedisConnection
from automation_engine.storage.store import WorkflowStore

logger = logging.getLogger(__name__)


class EngineServices:
    """
    Everything one process runs.

    Usage:
        services = EngineServices(modules=registry, credentials=load_credentials)
        await services.start()
        result = await services.queue_workflow_execution(workflow_id, user_id)
        await services.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        modules: Optional[ModuleRegistry] = None,
        credentials: Optional[CredentialSupplier] = None,
        store: Optional[WorkflowStore] = None,
        resilience: Optional[ResilienceRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.resilience = resilience or ResilienceRegistry()
        self.modules = modules or ModuleRegistry(
            self.resilience,
            default_timeout=self.settings.executor.module_timeout,
        )
        self.credentials = credentials
        self.store = store

        self.database: Optional[Database] = None
        self.redis: Optional[RedisConnection] = None
        self.executor: Optional[WorkflowExecutor] = None
        self.queue: Optional[TenantJobQueue] = None
        self.scheduler: Optional[CronScheduler] = None
        self._started = False

    async def start(self) -> None:
        """Connect backends and start the queue workers and the scheduler."""
        if self._started:
            return
        self._started = True
        logger.info(f"Starting {self.settings.app_name} ({self.settings.environment.value})")

        if self.store is None:
            self.database = Database(settings=self.settings)
            await self.database.init()
            self.store = SQLWorkflowStore(self.database)
            logger.info("Database connection established")

        client = await self._connect_redis()

        self.executor = WorkflowExecutor(
            self.store,
            self.modules,
            credentials=self.credentials,
            settings=self.settings,
        )
        self.queue = TenantJobQueue(
            client,
            self.store,
            self.executor.execute_workflow,
            settings=self.settings,
        )
        await self.queue.start()

        if self.settings.scheduler.enabled:
            lock = (
                RedisLeaderLock(client, self.settings.scheduler.leader_lock_key)
                if client is not None
                else None
            )
            self.scheduler = CronScheduler(
                self.store,
                self.queue.enqueue,
                lock=lock,
                maintenance=partial(cleanup_workflow_runs, self.store, self.settings),
                settings=self.settings,
                modules=self.modules,
            )
            await self.scheduler.initialize()

        logger.info(
            f"Engine started: {len(self.modules)} module(s), "
            f"queue {'enabled' if client is not None else 'disabled (direct execution)'}, "
            f"scheduler {'enabled' if self.scheduler else 'disabled'}"
        )

    async def stop(self) -> None:
        """Stop in reverse order of start. Idempotent."""
        if not self._started:
            return
        self._started = False
        logger.info("Stopping engine services")

        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.queue is not None:
            await self.queue.stop()
        if self.redis is not None:
            await self.redis.close()
            self.redis = None
        if self.database is not None:
            await self.database.close()
            self.database = None

        logger.info("Engine services stopped")

    async def _connect_redis(self) -> Optional[redis.Redis]:
        if not self.settings.redis.enabled:
            logger.warning(
                "Redis disabled: workflows execute directly and this process is always scheduler leader"
            )
            return None

        connection = RedisConnection(self.settings)
        try:
            await connection.init()
        except (RedisError, OSError) as e:
            error = InfrastructureError(f"Redis unreachable at {self.settings.redis.url}: {e}")
            logger.error(f"{error}; running without queue and lock backend")
            await connection.close()
            return None

        self.redis = connection
        return connection.client

    # ==================== Entry points ====================

    async def execute_workflow(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: Union[TriggerType, str] = TriggerType.MANUAL,
        trigger_data: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Execute now, in this process."""
        self._require_started()
        return await self.executor.execute_workflow(workflow_id, user_id, trigger_type, trigger_data)

    async def queue_workflow_execution(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: Union[TriggerType, str] = TriggerType.MANUAL,
        trigger_data: Optional[dict[str, Any]] = None,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> EnqueueResult:
        """Queue on the organization's partition (or execute directly when degraded)."""
        self._require_started()
        return await self.queue.enqueue(
            workflow_id,
            user_id,
            trigger_type,
            trigger_data,
            priority=priority,
            delay=delay,
        )

    async def refresh_schedules(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.refresh()

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("EngineServices not started. Call start() first.")

    def get_status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "queueEnabled": bool(self.queue and self.queue.enabled),
            "modules": self.modules.list_modules(),
            "scheduler": self.scheduler.get_status() if self.scheduler else None,
            "resilience": self.resilience.get_status(),
        }
