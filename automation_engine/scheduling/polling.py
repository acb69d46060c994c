"""
Polling triggers (Gmail, Outlook).

The scheduler leader polls a fetch module for each workflow with a polling
trigger and starts one run per new item. Items already seen are remembered
per workflow, so overlapping fetch windows never start the same run twice.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from automation_engine.core.errors import ConfigurationError
from automation_engine.core.models import WorkflowDefinition, utcnow
from automation_engine.execution.modules import ModuleRegistry

logger = logging.getLogger(__name__)

# (workflow_id, user_id, trigger_type, trigger_data) -> anything
TriggerFunc = Callable[[str, str, str, dict[str, Any]], Awaitable[Any]]

DEFAULT_POLL_INTERVAL = 60.0
FETCH_LIMIT = 10
MAX_TRACKED_ITEMS = 10000

# Trigger type -> module that lists recent items for a user
POLL_FETCHERS = {
    "gmail": "communication.gmail.fetchEmails",
    "outlook": "communication.outlook.fetchEmails",
}


@dataclass
class Poller:
    """Polling state of one workflow."""

    workflow_id: str
    user_id: str
    trigger_type: str
    fetcher: str
    filters: dict[str, Any]
    interval: float
    next_poll_at: datetime
    last_checked: Optional[datetime] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def matches(self, workflow: WorkflowDefinition, interval: float) -> bool:
        return (
            self.user_id == workflow.user_id
            and self.trigger_type == workflow.trigger.type.value
            and self.filters == workflow.trigger.filters
            and self.interval == interval
        )

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.task = None


class PollingTriggers:
    """
    Registry of polled workflows.

    Owned by the CronScheduler, which only syncs it while leader and clears
    it on demotion.
    """

    def __init__(
        self,
        modules: ModuleRegistry,
        trigger: TriggerFunc,
        clock: Callable[[], datetime] = utcnow,
        run_timers: bool = True,
        fetchers: Optional[dict[str, str]] = None,
        max_tracked: int = MAX_TRACKED_ITEMS,
    ):
        self.modules = modules
        self.trigger = trigger
        self.fetchers = fetchers or POLL_FETCHERS
        self.max_tracked = max_tracked
        self._clock = clock
        self._run_timers = run_timers

        self._pollers: dict[str, Poller] = {}
        self._seen: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._pollers)

    # ==================== Registration ====================

    def sync(self, workflows: list[WorkflowDefinition]) -> None:
        """Register new or changed polling workflows and drop removed ones."""
        desired = {w.id: w for w in workflows}

        for workflow_id in list(self._pollers):
            if workflow_id not in desired:
                self.unregister(workflow_id)

        for workflow in desired.values():
            interval = workflow.trigger.poll_interval or DEFAULT_POLL_INTERVAL
            current = self._pollers.get(workflow.id)
            if current is not None and current.matches(workflow, interval):
                continue
            try:
                self.register(workflow)
            except ConfigurationError as e:
                logger.error(f"Skipping workflow {workflow.id}: {e}")

    def register(self, workflow: WorkflowDefinition) -> Poller:
        """
        Start polling for one workflow (replacing an existing poller).

        Raises:
            ConfigurationError: No fetch module for the trigger type
        """
        trigger_type = workflow.trigger.type.value
        fetcher = self.fetchers.get(trigger_type)
        if fetcher is None:
            raise ConfigurationError(f"No polling fetcher for trigger type {trigger_type}")

        self.unregister(workflow.id)
        poller = Poller(
            workflow_id=workflow.id,
            user_id=workflow.user_id,
            trigger_type=trigger_type,
            fetcher=fetcher,
            filters=workflow.trigger.filters,
            interval=workflow.trigger.poll_interval or DEFAULT_POLL_INTERVAL,
            # First poll right away
            next_poll_at=self._clock(),
        )
        self._pollers[workflow.id] = poller
        if self._run_timers:
            poller.task = asyncio.create_task(self._poll_loop(poller))

        logger.info(f"Polling {trigger_type} for workflow {workflow.id} every {poller.interval}s")
        return poller

    def unregister(self, workflow_id: str) -> bool:
        poller = self._pollers.pop(workflow_id, None)
        if poller is None:
            return False
        poller.cancel()
        logger.info(f"Stopped polling for workflow {workflow_id}")
        return True

    def cancel_all(self) -> int:
        count = len(self._pollers)
        for poller in self._pollers.values():
            poller.cancel()
        self._pollers.clear()
        return count

    # ==================== Polling ====================

    async def poll(self, poller: Poller, now: Optional[datetime] = None) -> int:
        """
        Fetch once and start a run per unseen item.

        A failed fetch keeps the previous watermark so the next poll covers
        the same window.

        Returns:
            Number of runs started
        """
        now = now or self._clock()
        poller.next_poll_at = now + timedelta(seconds=poller.interval)

        try:
            items = await self.modules.invoke(poller.fetcher, {
                "userId": poller.user_id,
                "filters": poller.filters,
                "since": poller.last_checked.isoformat() if poller.last_checked else None,
                "limit": FETCH_LIMIT,
            })
        except Exception as e:
            logger.error(f"Error polling {poller.trigger_type} for workflow {poller.workflow_id}: {e}")
            return 0

        poller.last_checked = now
        new_items = [item for item in items or [] if self._mark_seen(poller, item)]
        if new_items:
            logger.info(
                f"Found {len(new_items)} new {poller.trigger_type} item(s) "
                f"for workflow {poller.workflow_id}"
            )

        for item in new_items:
            trigger_data = {
                "email": {**item, "emailId": item["id"]},
                "userId": poller.user_id,
            }
            try:
                await self.trigger(poller.workflow_id, poller.user_id, poller.trigger_type, trigger_data)
            except Exception as e:
                logger.error(
                    f"Failed to start workflow {poller.workflow_id} for item {item['id']}: {e}"
                )
        return len(new_items)

    def _mark_seen(self, poller: Poller, item: Any) -> bool:
        """True the first time an item is seen for this workflow."""
        if not isinstance(item, dict) or item.get("id") is None:
            logger.warning(f"Ignoring {poller.trigger_type} item without an id for workflow {poller.workflow_id}")
            return False

        key = f"{poller.trigger_type}:{poller.workflow_id}:{item['id']}"
        if key in self._seen:
            return False
        self._seen[key] = None
        while len(self._seen) > self.max_tracked:
            self._seen.popitem(last=False)
        return True

    async def poll_due(self, now: Optional[datetime] = None) -> list[str]:
        """Poll every workflow due at ``now``; returns the polled workflow ids."""
        now = now or self._clock()
        polled = []
        for poller in list(self._pollers.values()):
            if poller.next_poll_at <= now:
                polled.append(poller.workflow_id)
                await self.poll(poller, now)
        return polled

    async def _poll_loop(self, poller: Poller) -> None:
        while True:
            delay = (poller.next_poll_at - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.poll(poller, self._clock())

    def get_status(self) -> list[dict[str, Any]]:
        return [
            {
                "workflowId": poller.workflow_id,
                "userId": poller.user_id,
                "triggerType": poller.trigger_type,
                "pollInterval": poller.interval,
                "lastChecked": poller.last_checked.isoformat() if poller.last_checked else None,
                "nextPollAt": poller.next_poll_at.isoformat(),
            }
            for poller in self._pollers.values()
        ]
