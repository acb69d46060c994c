"""
Pytest fixtures and configuration for tests.
"""

import asyncio
from datetime import datetime
from typing import Any, Optional

import pytest
import pytest_asyncio

from automation_engine.config import Environment, Settings
from automation_engine.config.settings import (
    ExecutorSettings,
    QueueSettings,
    RedisSettings,
    SchedulerSettings,
)
from automation_engine.core.errors import InfrastructureError, WorkflowNotFoundError
from automation_engine.core.models import WorkflowDefinition, WorkflowRun
from automation_engine.execution.modules import CallingConvention, ModuleRegistry


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryLeaderLock:
    """
    Lock backend shared by several electors, with expiry driven by a FakeClock.

    Set ``failing`` to make every call raise like an unreachable backend.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.owner: Optional[str] = None
        self.expires_at = 0.0
        self.failing = False

    def _check(self) -> None:
        if self.failing:
            raise InfrastructureError("lock backend down")
        if self.owner is not None and self.clock() >= self.expires_at:
            self.owner = None

    async def acquire(self, owner: str, ttl: int) -> bool:
        self._check()
        if self.owner is not None:
            return False
        self.owner = owner
        self.expires_at = self.clock() + ttl
        return True

    async def extend(self, owner: str, ttl: int) -> bool:
        self._check()
        if self.owner != owner:
            return False
        self.expires_at = self.clock() + ttl
        return True

    async def release(self) -> None:
        self._check()
        self.owner = None


class InMemoryWorkflowStore:
    """WorkflowStore kept in dictionaries."""

    def __init__(self):
        self.workflows: dict[str, WorkflowDefinition] = {}
        self.runs: dict[str, WorkflowRun] = {}
        self.create_run_calls = 0
        self.complete_run_calls = 0

    def add(self, workflow: WorkflowDefinition | dict[str, Any]) -> WorkflowDefinition:
        if isinstance(workflow, dict):
            workflow = WorkflowDefinition.model_validate(workflow)
        self.workflows[workflow.id] = workflow
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self.workflows.get(workflow_id)

    async def list_scheduled_workflows(self) -> list[WorkflowDefinition]:
        return [
            w for w in self.workflows.values()
            if w.status.value == "active" and (w.is_cron or w.is_polling)
        ]

    async def get_organization_id(self, workflow_id: str) -> Optional[str]:
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow.organization_id

    async def create_run(self, run: WorkflowRun) -> None:
        self.create_run_calls += 1
        self.runs[run.id] = run.model_copy()

    async def complete_run(self, run: WorkflowRun) -> None:
        self.complete_run_calls += 1
        self.runs[run.id] = run.model_copy()
        workflow = self.workflows[run.workflow_id]
        workflow.last_run = run.completed_at
        workflow.last_run_status = run.status
        workflow.last_run_error = run.error
        workflow.run_count += 1

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        return self.runs.get(run_id)

    async def delete_runs_completed_before(self, status: str, cutoff: datetime) -> int:
        doomed = [
            run_id for run_id, run in self.runs.items()
            if run.status == status and run.completed_at is not None and run.completed_at < cutoff
        ]
        for run_id in doomed:
            del self.runs[run_id]
        return len(doomed)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with no Redis backend."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
        redis=RedisSettings(enabled=False),
        executor=ExecutorSettings(while_max_duration=5.0, module_timeout=2.0),
        queue=QueueSettings(poll_interval=0.05, backoff_delay=0.1),
        scheduler=SchedulerSettings(leader_lock_ttl=30, leader_check_interval=20.0),
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def leader_lock(fake_clock) -> InMemoryLeaderLock:
    return InMemoryLeaderLock(fake_clock)


@pytest.fixture
def workflow_store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def module_registry() -> ModuleRegistry:
    """Registry with a handful of fake integrations."""
    registry = ModuleRegistry(default_timeout=2.0)
    calls: list[tuple[str, Any]] = []
    registry.calls = calls

    @registry.module("utilities.math.add", params=("a", "b"), convention=CallingConvention.POSITIONAL)
    def add(a, b=0):
        calls.append(("add", (a, b)))
        return a + b

    @registry.module("utilities.text.echo")
    async def echo(inputs):
        calls.append(("echo", inputs))
        return inputs

    @registry.module("data.fetch.delayed")
    async def delayed(inputs):
        await asyncio.sleep(inputs.get("delay", 0))
        calls.append(("delayed", inputs))
        return inputs.get("value")

    @registry.module("utilities.fail.boom")
    async def boom(inputs):
        await asyncio.sleep(inputs.get("delay", 0))
        calls.append(("boom", inputs))
        raise RuntimeError(inputs.get("message", "boom"))

    @registry.module("utilities.time.now", convention=CallingConvention.NONE)
    def now():
        return "2026-01-01T00:00:00Z"

    @registry.module("utilities.counter.increment", params=("value",), convention=CallingConvention.POSITIONAL)
    def increment(value):
        return value + 1

    return registry


@pytest.fixture
def sample_workflow() -> dict:
    """fetchA and fetchB run in parallel; combine depends on both."""
    return {
        "id": "wf-parallel",
        "name": "Parallel fetch",
        "userId": "user-1",
        "status": "active",
        "trigger": {"type": "manual"},
        "steps": [
            {"id": "fetchA", "module": "data.fetch.delayed", "inputs": {"value": 1}, "outputAs": "a"},
            {"id": "fetchB", "module": "data.fetch.delayed", "inputs": {"value": 2}, "outputAs": "b"},
            {
                "id": "combine",
                "module": "utilities.math.add",
                "inputs": {"a": "{{a}}", "b": "{{b}}"},
                "outputAs": "sum",
            },
        ],
    }


@pytest_asyncio.fixture
async def sqlite_database(test_settings, tmp_path):
    """Throwaway SQLite database with the schema created."""
    from automation_engine.storage.postgres.database import Database

    database = Database(url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", settings=test_settings)
    await database.init()
    await database.create_all()
    yield database
    await database.close()
