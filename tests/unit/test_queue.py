"""
Unit tests for the tenant job queue and partition workers (no Redis needed).
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from automation_engine.core.errors import InfrastructureError, RetryableJobError, WorkflowNotFoundError
from automation_engine.core.models import ExecutionResult, QueueJob
from automation_engine.messaging.consumer import PartitionWorker
from automation_engine.messaging.queue import (
    DIRECT_EXECUTION_JOB_ID,
    Job,
    TenantJobQueue,
    partition_name,
)


class ExecuteRecorder:
    """Stands in for WorkflowExecutor.execute_workflow."""

    def __init__(self, success: bool = True):
        self.calls: list[tuple] = []
        self.success = success

    async def __call__(self, workflow_id, user_id, trigger_type="manual", trigger_data=None):
        self.calls.append((workflow_id, user_id, trigger_type, trigger_data))
        if self.success:
            return ExecutionResult(success=True, output={"ok": True}, run_id="run-1")
        return ExecutionResult(success=False, error="step blew up", error_step="s1", run_id="run-1")


class UnreachableRedis:
    """Client whose every command fails like a dropped connection."""

    def register_script(self, script):
        async def run(keys=None, args=None):
            raise RedisConnectionError("Connection refused")
        return run

    async def sadd(self, key, *values):
        raise RedisConnectionError("Connection refused")


class InMemoryJobQueue:
    """Partition double for driving a PartitionWorker."""

    def __init__(self, jobs: list[Job]):
        self.name = "workflows-execution:org-1"
        self.jobs = list(jobs)
        self.completed: dict[str, object] = {}
        self.failed: dict[str, str] = {}
        self.extended: list[str] = []
        self.pop_errors: list[Exception] = []

    async def pop(self):
        if self.pop_errors:
            raise self.pop_errors.pop(0)
        return self.jobs.pop(0) if self.jobs else None

    async def extend_lease(self, job_id):
        self.extended.append(job_id)
        return job_id not in self.completed and job_id not in self.failed

    async def complete(self, job_id, result=None):
        self.completed[job_id] = result
        return True

    async def fail(self, job_id, error):
        self.failed[job_id] = error
        return None

    async def recover_stale(self):
        return 0


def make_job(job_id: str, workflow_id: str = "wf-1") -> Job:
    return Job(
        id=job_id,
        payload=QueueJob(workflow_id=workflow_id, user_id="user-1", organization_id="org-1"),
        attempts_made=0,
        max_attempts=3,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class TestPartitionNames:
    """Tests for partition naming."""

    def test_organization_partition(self):
        """Test each organization gets its own partition."""
        assert partition_name("org-1") == "workflows-execution:org-1"

    def test_personal_workflows_share_admin_partition(self):
        """Test workflows without an organization go to the admin partition."""
        assert partition_name(None) == "workflows-execution:admin"


class TestDirectExecution:
    """Tests for the degraded path without a queue backend."""

    @pytest.mark.asyncio
    async def test_no_backend_executes_directly(self, workflow_store, test_settings, sample_workflow):
        """Test enqueue runs the workflow in-process without Redis."""
        workflow_store.add(sample_workflow)
        execute = ExecuteRecorder()
        queue = TenantJobQueue(None, workflow_store, execute, settings=test_settings)

        result = await queue.enqueue("wf-parallel", "user-1", "webhook", {"x": 1})

        assert not queue.enabled
        assert result.job_id == DIRECT_EXECUTION_JOB_ID
        assert result.queued is False
        assert result.result.success
        assert execute.calls == [("wf-parallel", "user-1", "webhook", {"x": 1})]

    @pytest.mark.asyncio
    async def test_unknown_workflow_raises(self, workflow_store, test_settings):
        """Test enqueueing a missing workflow raises before anything runs."""
        execute = ExecuteRecorder()
        queue = TenantJobQueue(None, workflow_store, execute, settings=test_settings)

        with pytest.raises(WorkflowNotFoundError, match="Workflow ghost not found"):
            await queue.enqueue("ghost", "user-1")
        assert execute.calls == []

    @pytest.mark.asyncio
    async def test_backend_failure_falls_back(self, workflow_store, test_settings, sample_workflow):
        """Test a Redis error at enqueue time degrades to direct execution."""
        workflow_store.add(sample_workflow)
        execute = ExecuteRecorder()
        queue = TenantJobQueue(UnreachableRedis(), workflow_store, execute, settings=test_settings)

        result = await queue.enqueue("wf-parallel", "user-1")

        assert result.queued is False
        assert result.job_id == DIRECT_EXECUTION_JOB_ID
        assert len(execute.calls) == 1

    @pytest.mark.asyncio
    async def test_get_queue_requires_backend(self, workflow_store, test_settings):
        """Test partitions cannot be created without a backend."""
        queue = TenantJobQueue(None, workflow_store, ExecuteRecorder(), settings=test_settings)

        with pytest.raises(InfrastructureError):
            await queue.get_queue("org-1")

    @pytest.mark.asyncio
    async def test_start_without_backend_is_noop(self, workflow_store, test_settings):
        """Test start/stop and stats work with no backend."""
        queue = TenantJobQueue(None, workflow_store, ExecuteRecorder(), settings=test_settings)

        await queue.start()
        stats = await queue.get_all_stats()
        await queue.stop()

        assert stats["queues"] == 0
        assert stats["total"] == 0
        assert await queue.get_queue_stats("org-1") is None


class TestProcessJob:
    """Tests for running a dequeued job."""

    @pytest.mark.asyncio
    async def test_success_returns_result(self, workflow_store, test_settings):
        """Test a successful run is returned to the worker."""
        execute = ExecuteRecorder()
        queue = TenantJobQueue(None, workflow_store, execute, settings=test_settings)

        result = await queue.process_job(QueueJob(workflow_id="wf-1", user_id="user-1", trigger_type="cron"))

        assert result.success
        assert execute.calls == [("wf-1", "user-1", "cron", None)]

    @pytest.mark.asyncio
    async def test_failure_is_retryable(self, workflow_store, test_settings):
        """Test a failed run raises so the queue retries it."""
        queue = TenantJobQueue(None, workflow_store, ExecuteRecorder(success=False), settings=test_settings)

        with pytest.raises(RetryableJobError) as exc_info:
            await queue.process_job(QueueJob(workflow_id="wf-1", user_id="user-1"))

        assert exc_info.value.error_step == "s1"
        assert "step blew up" in str(exc_info.value)


class TestPartitionWorker:
    """Tests for the per-partition consumer."""

    @pytest.mark.asyncio
    async def test_completes_successful_jobs(self, test_settings):
        """Test processed jobs are completed with the serialized result."""
        partition = InMemoryJobQueue([make_job("j1"), make_job("j2")])

        async def process(payload):
            return ExecutionResult(success=True, output=payload.workflow_id)

        worker = PartitionWorker(partition, process, concurrency=2, max_jobs_per_minute=100, settings=test_settings)
        await worker.start()
        try:
            await wait_until(lambda: len(partition.completed) == 2)
        finally:
            await worker.stop()

        assert partition.completed["j1"]["output"] == "wf-1"
        assert partition.failed == {}

    @pytest.mark.asyncio
    async def test_failed_jobs_handed_back(self, test_settings):
        """Test a raising processor marks the attempt failed."""
        partition = InMemoryJobQueue([make_job("j1")])

        async def process(payload):
            raise RetryableJobError("step blew up", "s1")

        worker = PartitionWorker(partition, process, concurrency=1, max_jobs_per_minute=100, settings=test_settings)
        await worker.start()
        try:
            await wait_until(lambda: "j1" in partition.failed)
        finally:
            await worker.stop()

        assert "step blew up" in partition.failed["j1"]
        assert partition.completed == {}

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, test_settings):
        """Test no more jobs run at once than the pool allows."""
        partition = InMemoryJobQueue([make_job(f"j{i}") for i in range(6)])
        running = 0
        peak = 0

        async def process(payload):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1
            return ExecutionResult(success=True)

        worker = PartitionWorker(partition, process, concurrency=2, max_jobs_per_minute=100, settings=test_settings)
        await worker.start()
        try:
            await wait_until(lambda: len(partition.completed) == 6)
        finally:
            await worker.stop()

        assert peak == 2

    @pytest.mark.asyncio
    async def test_rate_limit_per_minute(self, test_settings):
        """Test the worker starts no more jobs per minute than its limit."""
        partition = InMemoryJobQueue([make_job(f"j{i}") for i in range(3)])

        async def process(payload):
            return ExecutionResult(success=True)

        worker = PartitionWorker(partition, process, concurrency=5, max_jobs_per_minute=2, settings=test_settings)
        await worker.start()
        try:
            await wait_until(lambda: len(partition.completed) == 2)
            await asyncio.sleep(0.2)
        finally:
            await worker.stop()

        assert len(partition.completed) == 2
        assert len(partition.jobs) == 1

    @pytest.mark.asyncio
    async def test_empty_polls_refund_tokens(self, test_settings):
        """Test polling an empty partition does not use up the rate limit."""
        partition = InMemoryJobQueue([])

        async def process(payload):
            return ExecutionResult(success=True)

        worker = PartitionWorker(partition, process, concurrency=1, max_jobs_per_minute=2, settings=test_settings)
        await worker.start()
        try:
            await asyncio.sleep(0.3)
            partition.jobs.extend([make_job("late1"), make_job("late2")])
            await wait_until(lambda: len(partition.completed) == 2)
        finally:
            await worker.stop()

        assert set(partition.completed) == {"late1", "late2"}

    @pytest.mark.asyncio
    async def test_long_job_renews_lease(self, test_settings):
        """Test a job running past the stale timeout keeps renewing its lease."""
        test_settings.queue.stale_job_timeout = 0.15
        partition = InMemoryJobQueue([make_job("slow")])

        async def process(payload):
            await asyncio.sleep(0.3)
            return ExecutionResult(success=True)

        worker = PartitionWorker(partition, process, concurrency=1, max_jobs_per_minute=100, settings=test_settings)
        await worker.start()
        try:
            await wait_until(lambda: "slow" in partition.completed)
            renewals = len(partition.extended)
            await asyncio.sleep(0.2)
        finally:
            await worker.stop()

        assert renewals >= 2
        assert set(partition.extended) == {"slow"}
        # No renewals once the job is done
        assert len(partition.extended) == renewals

    @pytest.mark.asyncio
    async def test_pop_error_refunds_token(self, test_settings):
        """Test a dropped connection while popping does not use up the rate limit."""
        partition = InMemoryJobQueue([make_job("j1")])
        partition.pop_errors.append(RedisConnectionError("Connection reset"))

        async def process(payload):
            return ExecutionResult(success=True)

        worker = PartitionWorker(partition, process, concurrency=1, max_jobs_per_minute=1, settings=test_settings)
        await worker.start()
        try:
            await wait_until(lambda: "j1" in partition.completed, timeout=3.0)
        finally:
            await worker.stop()

        assert partition.pop_errors == []
