"""
Cron scheduler for workflows with a cron or polling trigger.

Only the elected leader keeps timers. On election it scans the store for
active scheduled workflows and registers one cron timer or poller per
workflow; on demotion every timer and poller is cancelled so two processes
never fire the same schedule or poll the same inbox. The leader also runs
the daily run-retention cleanup.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from croniter import croniter

from automation_engine.config import Settings, get_settings
from automation_engine.core.errors import ConfigurationError
from automation_engine.core.models import TriggerType, utcnow
from automation_engine.execution.modules import ModuleRegistry
from automation_engine.scheduling.leader import LeaderElector, LeaderLock
from automation_engine.scheduling.polling import PollingTriggers
from automation_engine.storage.store import WorkflowStore

logger = logging.getLogger(__name__)

# (workflow_id, user_id, trigger_type, trigger_data) -> anything
TriggerFunc = Callable[[str, str, str, dict[str, Any]], Awaitable[Any]]
MaintenanceFunc = Callable[[], Awaitable[Any]]

CLEANUP_JOB = "workflow-runs-cleanup"


def next_run_after(pattern: str, base: datetime) -> datetime:
    return croniter(pattern, base).get_next(datetime)


@dataclass
class CronTimer:
    """One registered schedule."""

    name: str
    cron_pattern: str
    next_run_at: datetime
    callback: Callable[[datetime], Awaitable[Any]]
    user_id: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.task = None


class CronScheduler:
    """
    Fires cron-triggered workflows from the elected leader.

    Usage:
        scheduler = CronScheduler(store, queue.enqueue, lock)
        await scheduler.initialize()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: WorkflowStore,
        trigger: TriggerFunc,
        lock: Optional[LeaderLock] = None,
        maintenance: Optional[MaintenanceFunc] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        run_timers: bool = True,
        identity: Optional[str] = None,
        modules: Optional[ModuleRegistry] = None,
    ):
        self.store = store
        self.trigger = trigger
        self.maintenance = maintenance
        self.settings = settings or get_settings()
        self._clock = clock
        self._run_timers = run_timers

        scheduler_settings = self.settings.scheduler
        self.elector = LeaderElector(
            lock,
            ttl=scheduler_settings.leader_lock_ttl,
            check_interval=scheduler_settings.leader_check_interval,
            on_elected=self._on_elected,
            on_deposed=self._on_deposed,
            identity=identity,
        )

        self._timers: dict[str, CronTimer] = {}
        self.polling: Optional[PollingTriggers] = None
        if modules is not None:
            self.polling = PollingTriggers(modules, trigger, clock=clock, run_timers=run_timers)
        self._maintenance_timer: Optional[CronTimer] = None
        self._initialized = False
        self._sync_lock = asyncio.Lock()

    @property
    def is_leader(self) -> bool:
        return self.elector.is_leader

    # ==================== Lifecycle ====================

    async def initialize(self) -> None:
        """Join the election and start the check loop. Idempotent."""
        if self._initialized:
            return
        self._initialized = True
        logger.info(f"Initializing cron scheduler ({self.elector.identity})")
        await self.elector.start()

    async def refresh(self) -> None:
        """Re-read scheduled workflows (after a workflow was saved or toggled)."""
        if not self.is_leader:
            logger.debug("Not the scheduler leader, skipping refresh")
            return
        await self.sync()

    async def stop(self) -> None:
        """Leave the election, cancel every timer and release the lock. Idempotent."""
        was_running = self._initialized or self.is_leader
        self._initialized = False
        await self.elector.stop()
        self._cancel_all()
        if was_running:
            logger.info("Cron scheduler stopped")

    async def tick(self) -> None:
        """One election step."""
        await self.elector.tick()

    async def _on_elected(self) -> None:
        await self.sync()
        self._schedule_maintenance()

    def _on_deposed(self) -> None:
        self._cancel_all()

    def _cancel_all(self) -> None:
        count = len(self._timers)
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self.polling is not None:
            count += self.polling.cancel_all()
        if self._maintenance_timer is not None:
            self._maintenance_timer.cancel()
            self._maintenance_timer = None
        if count:
            logger.info(f"Cancelled {count} cron timer(s) and poller(s)")

    # ==================== Registration ====================

    async def sync(self) -> None:
        """Diff active scheduled workflows against the registered timers and pollers."""
        async with self._sync_lock:
            workflows = await self.store.list_scheduled_workflows()
            if not self.is_leader:
                # Deposed while the store was read; _on_deposed already cleared the timers
                logger.info("Lost scheduler leadership during sync, not registering timers")
                return

            polled = [w for w in workflows if w.is_polling]
            if self.polling is not None:
                self.polling.sync(polled)
            elif polled:
                logger.warning(f"No module registry configured, not polling {len(polled)} workflow(s)")

            desired: dict[str, tuple[str, str]] = {}
            for workflow in workflows:
                if not workflow.is_cron:
                    continue
                pattern = workflow.trigger.schedule
                if pattern is None:
                    logger.warning(f"Workflow {workflow.id} has a cron trigger but no schedule")
                    continue
                if not croniter.is_valid(pattern):
                    logger.error(f"Skipping workflow {workflow.id}: invalid cron expression {pattern!r}")
                    continue
                desired[workflow.id] = (workflow.user_id, pattern)

            for workflow_id in list(self._timers):
                if workflow_id not in desired:
                    self.unschedule_workflow(workflow_id)

            added = 0
            for workflow_id, (user_id, pattern) in desired.items():
                current = self._timers.get(workflow_id)
                if current is not None and current.cron_pattern == pattern and current.user_id == user_id:
                    continue
                self.schedule_workflow(workflow_id, user_id, pattern)
                added += 1

            logger.info(
                f"Cron sync: {len(self._timers)} workflow(s) scheduled, {added} added or changed, "
                f"{len(self.polling) if self.polling is not None else 0} polled"
            )

    def schedule_workflow(self, workflow_id: str, user_id: str, cron_pattern: str) -> CronTimer:
        """
        Register (or replace) the timer of one workflow.

        Raises:
            ConfigurationError: Invalid cron expression
        """
        if not croniter.is_valid(cron_pattern):
            raise ConfigurationError(
                f"Invalid cron expression for workflow {workflow_id}: {cron_pattern}"
            )

        self.unschedule_workflow(workflow_id)

        async def fire(scheduled_at: datetime) -> None:
            await self._fire_workflow(workflow_id, user_id, scheduled_at)

        timer = CronTimer(
            name=workflow_id,
            cron_pattern=cron_pattern,
            next_run_at=next_run_after(cron_pattern, self._clock()),
            callback=fire,
            user_id=user_id,
        )
        self._timers[workflow_id] = timer
        self._start_timer(timer)

        logger.info(f"Scheduled workflow {workflow_id} ({cron_pattern}), next run at {timer.next_run_at.isoformat()}")
        return timer

    def unschedule_workflow(self, workflow_id: str) -> bool:
        timer = self._timers.pop(workflow_id, None)
        if timer is None:
            return False
        timer.cancel()
        logger.info(f"Unscheduled workflow {workflow_id}")
        return True

    def _schedule_maintenance(self) -> None:
        if self.maintenance is None or self._maintenance_timer is not None or not self.is_leader:
            return
        pattern = self.settings.scheduler.cleanup_cron
        if not croniter.is_valid(pattern):
            raise ConfigurationError(f"Invalid cleanup cron expression: {pattern}")

        async def run(scheduled_at: datetime) -> None:
            logger.info(f"Running {CLEANUP_JOB} scheduled at {scheduled_at.isoformat()}")
            await self.maintenance()

        self._maintenance_timer = CronTimer(
            name=CLEANUP_JOB,
            cron_pattern=pattern,
            next_run_at=next_run_after(pattern, self._clock()),
            callback=run,
        )
        self._start_timer(self._maintenance_timer)

    # ==================== Firing ====================

    async def _fire_workflow(self, workflow_id: str, user_id: str, scheduled_at: datetime) -> None:
        logger.info(f"Cron firing workflow {workflow_id}")
        await self.trigger(
            workflow_id,
            user_id,
            TriggerType.CRON.value,
            {"scheduledAt": scheduled_at.isoformat()},
        )

    async def _fire(self, timer: CronTimer, now: datetime) -> None:
        """Run a timer's callback and advance it. A failing run never stops the timer."""
        scheduled_at = timer.next_run_at
        timer.next_run_at = next_run_after(timer.cron_pattern, max(scheduled_at, now))
        try:
            await timer.callback(scheduled_at)
        except Exception as e:
            logger.error(f"Cron job {timer.name} failed: {e}", exc_info=True)

    async def fire_due(self, now: Optional[datetime] = None) -> list[str]:
        """Fire every timer due at ``now``; returns the names that fired."""
        now = now or self._clock()
        timers = list(self._timers.values())
        if self._maintenance_timer is not None:
            timers.append(self._maintenance_timer)

        fired = []
        for timer in timers:
            if timer.next_run_at <= now:
                fired.append(timer.name)
                await self._fire(timer, now)
        return fired

    async def poll_due(self, now: Optional[datetime] = None) -> list[str]:
        """Run every polling trigger due at ``now``; returns the polled workflow ids."""
        if self.polling is None:
            return []
        return await self.polling.poll_due(now or self._clock())

    def _start_timer(self, timer: CronTimer) -> None:
        if self._run_timers:
            timer.task = asyncio.create_task(self._timer_loop(timer))

    async def _timer_loop(self, timer: CronTimer) -> None:
        while True:
            delay = (timer.next_run_at - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self._fire(timer, self._clock())

    # ==================== Status ====================

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "isLeader": self.is_leader,
            "leaderState": self.elector.state.value,
            "identity": self.elector.identity,
            "scheduledCount": len(self._timers),
            "jobs": [
                {
                    "workflowId": timer.name,
                    "userId": timer.user_id,
                    "cronPattern": timer.cron_pattern,
                    "nextRunAt": timer.next_run_at.isoformat(),
                }
                for timer in self._timers.values()
            ],
            "pollingCount": len(self.polling) if self.polling is not None else 0,
            "pollers": self.polling.get_status() if self.polling is not None else [],
        }
