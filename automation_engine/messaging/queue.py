"""
Durable per-organization job queue on Redis.

Each partition keeps its jobs in hashes and moves their ids between sorted
sets with Lua scripts, so every state change is atomic:

    wait       priority-ordered ready jobs (lower score first)
    delayed    jobs scheduled for later (score = ready-at, ms)
    active     leased jobs (score = lease expiry, ms)
    completed  finished jobs (score = finish time, ms)
    failed     permanently failed jobs (score = failure time, ms)

A leased job whose worker dies is returned to ``wait`` once its lease
expires, which gives at-least-once delivery.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from automation_engine.config import Settings, get_settings
from automation_engine.core.errors import InfrastructureError, RetryableJobError
from automation_engine.core.models import EnqueueResult, ExecutionResult, QueueJob, TriggerType
from automation_engine.messaging.consumer import PartitionWorker
from automation_engine.storage.store import WorkflowStore

logger = logging.getLogger(__name__)

QUEUE_NAME_PREFIX = "workflows-execution"
ADMIN_PARTITION = "admin"
DIRECT_EXECUTION_JOB_ID = "direct-execution"

# Priority dominates the wait score; the enqueue time keeps FIFO order within it
PRIORITY_SCALE = 10 ** 13


# Add a job: KEYS = job hash, wait, delayed
# ARGV = id, data, priority, score, ready_at_ms (0 = now), max_attempts, created_ms
ADD_JOB_SCRIPT = """
local job_key = KEYS[1]
redis.call("HSET", job_key,
    "id", ARGV[1],
    "data", ARGV[2],
    "priority", ARGV[3],
    "score", ARGV[4],
    "max_attempts", ARGV[6],
    "attempts_made", 0,
    "created_at", ARGV[7])

if tonumber(ARGV[5]) > 0 then
    redis.call("HSET", job_key, "state", "delayed")
    redis.call("ZADD", KEYS[3], ARGV[5], ARGV[1])
else
    redis.call("HSET", job_key, "state", "waiting")
    redis.call("ZADD", KEYS[2], ARGV[4], ARGV[1])
end
return ARGV[1]
"""

# Promote due delayed jobs, then lease the best waiting one
# KEYS = wait, delayed, active; ARGV = now_ms, lease_expiry_ms, job key prefix
# Returns {id, data, attempts_made, max_attempts} or nil
POP_JOB_SCRIPT = """
local now = ARGV[1]
local prefix = ARGV[3]

local due = redis.call("ZRANGEBYSCORE", KEYS[2], "-inf", now)
for _, id in ipairs(due) do
    local score = redis.call("HGET", prefix .. id, "score")
    redis.call("ZREM", KEYS[2], id)
    if score then
        redis.call("ZADD", KEYS[1], score, id)
        redis.call("HSET", prefix .. id, "state", "waiting")
    end
end

local popped = redis.call("ZPOPMIN", KEYS[1])
if #popped == 0 then
    return nil
end

local id = popped[1]
local job_key = prefix .. id
if redis.call("EXISTS", job_key) == 0 then
    return nil
end

redis.call("ZADD", KEYS[3], ARGV[2], id)
redis.call("HSET", job_key, "state", "active", "processed_at", now)
local fields = redis.call("HMGET", job_key, "data", "attempts_made", "max_attempts")
return {id, fields[1], fields[2], fields[3]}
"""

# Shared retention trim for the completed/failed sets
TRIM_FUNCTION = """
local function trim(set_key, prefix, cutoff, max_count)
    local expired = redis.call("ZRANGEBYSCORE", set_key, "-inf", cutoff)
    for _, id in ipairs(expired) do
        redis.call("DEL", prefix .. id)
    end
    if #expired > 0 then
        redis.call("ZREMRANGEBYSCORE", set_key, "-inf", cutoff)
    end

    local excess = redis.call("ZCARD", set_key) - max_count
    if excess > 0 then
        local oldest = redis.call("ZRANGE", set_key, 0, excess - 1)
        for _, id in ipairs(oldest) do
            redis.call("DEL", prefix .. id)
        end
        redis.call("ZREMRANGEBYRANK", set_key, 0, excess - 1)
    end
end
"""

# Finish a leased job. KEYS = active, completed
# ARGV = id, now_ms, prefix, result, cutoff_ms, max_count
# Returns 0 when the lease was lost (job recovered by another worker)
COMPLETE_JOB_SCRIPT = TRIM_FUNCTION + """
local id = ARGV[1]
if redis.call("ZREM", KEYS[1], id) == 0 then
    return 0
end
redis.call("HSET", ARGV[3] .. id,
    "state", "completed",
    "finished_at", ARGV[2],
    "result", ARGV[4])
redis.call("ZADD", KEYS[2], ARGV[2], id)
trim(KEYS[2], ARGV[3], ARGV[5], tonumber(ARGV[6]))
return 1
"""

# Record a failed attempt; retry with exponential backoff or fail for good
# KEYS = active, delayed, failed
# ARGV = id, now_ms, prefix, error, base_backoff_ms, cutoff_ms, max_count
# Returns {1, delay_ms} when retried, {0, attempts} when failed, {-1, 0} on lost lease
FAIL_JOB_SCRIPT = TRIM_FUNCTION + """
local id = ARGV[1]
local job_key = ARGV[3] .. id
if redis.call("ZREM", KEYS[1], id) == 0 then
    return {-1, 0}
end

local attempts = redis.call("HINCRBY", job_key, "attempts_made", 1)
local max_attempts = tonumber(redis.call("HGET", job_key, "max_attempts") or "1")
redis.call("HSET", job_key, "failed_reason", ARGV[4])

if attempts < max_attempts then
    local delay = tonumber(ARGV[5]) * (2 ^ (attempts - 1))
    redis.call("HSET", job_key, "state", "delayed")
    redis.call("ZADD", KEYS[2], tonumber(ARGV[2]) + delay, id)
    return {1, delay}
end

redis.call("HSET", job_key, "state", "failed", "finished_at", ARGV[2])
redis.call("ZADD", KEYS[3], ARGV[2], id)
trim(KEYS[3], ARGV[3], ARGV[6], tonumber(ARGV[7]))
return {0, attempts}
"""

# Return jobs with expired leases to the wait set. KEYS = active, wait
# ARGV = now_ms, prefix. Returns the number of recovered jobs
RECOVER_STALE_SCRIPT = """
local stale = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
for _, id in ipairs(stale) do
    redis.call("ZREM", KEYS[1], id)
    local score = redis.call("HGET", ARGV[2] .. id, "score")
    if score then
        redis.call("HSET", ARGV[2] .. id, "state", "waiting")
        redis.call("ZADD", KEYS[2], score, id)
    end
end
return #stale
"""

# Push back the lease expiry of a job still held. KEYS = active
# ARGV = id, lease_expiry_ms. Returns 0 if the lease was already lost
EXTEND_LEASE_SCRIPT = """
if redis.call("ZSCORE", KEYS[1], ARGV[1]) then
    redis.call("ZADD", KEYS[1], "XX", ARGV[2], ARGV[1])
    return 1
end
return 0
"""


def partition_name(organization_id: Optional[str]) -> str:
    """Queue name of an organization's partition."""
    return f"{QUEUE_NAME_PREFIX}:{organization_id or ADMIN_PARTITION}"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Job:
    """A job leased by a worker."""

    id: str
    payload: QueueJob
    attempts_made: int
    max_attempts: int


class JobQueue:
    """
    One partition of the workflow queue.

    Usage:
        queue = JobQueue(client, "workflows-execution:org-1")
        await queue.init()
        job_id = await queue.add(QueueJob(...))
    """

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.client = client
        self.name = name
        self.settings = settings or get_settings()
        self._clock = clock

        base = f"{self.settings.queue.key_prefix}{name}:"
        self.job_prefix = f"{base}job:"
        self.wait_key = f"{base}wait"
        self.delayed_key = f"{base}delayed"
        self.active_key = f"{base}active"
        self.completed_key = f"{base}completed"
        self.failed_key = f"{base}failed"

        self._add_script = None
        self._pop_script = None
        self._complete_script = None
        self._fail_script = None
        self._recover_script = None
        self._extend_script = None

    async def init(self) -> None:
        """Register the Lua scripts."""
        self._add_script = self.client.register_script(ADD_JOB_SCRIPT)
        self._pop_script = self.client.register_script(POP_JOB_SCRIPT)
        self._complete_script = self.client.register_script(COMPLETE_JOB_SCRIPT)
        self._fail_script = self.client.register_script(FAIL_JOB_SCRIPT)
        self._recover_script = self.client.register_script(RECOVER_STALE_SCRIPT)
        self._extend_script = self.client.register_script(EXTEND_LEASE_SCRIPT)

    async def add(
        self,
        job: QueueJob,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> str:
        """
        Enqueue a job.

        Args:
            priority: Lower runs first (default from settings)
            delay: Seconds to hold the job before it becomes ready

        Returns:
            The job id
        """
        queue_settings = self.settings.queue
        if priority is None:
            priority = queue_settings.default_priority

        job_id = uuid4().hex
        now = self._clock()
        score = priority * PRIORITY_SCALE + now
        ready_at = now + int(delay * 1000) if delay and delay > 0 else 0

        await self._add_script(
            keys=[self.job_prefix + job_id, self.wait_key, self.delayed_key],
            args=[
                job_id,
                job.model_dump_json(),
                priority,
                score,
                ready_at,
                queue_settings.attempts,
                now,
            ],
        )
        logger.debug(f"Queued job {job_id} on {self.name} (priority {priority}, delay {delay or 0}s)")
        return job_id

    async def pop(self) -> Optional[Job]:
        """Lease the next ready job, promoting due delayed jobs first."""
        now = self._clock()
        lease_expiry = now + int(self.settings.queue.stale_job_timeout * 1000)
        raw = await self._pop_script(
            keys=[self.wait_key, self.delayed_key, self.active_key],
            args=[now, lease_expiry, self.job_prefix],
        )
        if not raw:
            return None

        job_id, data, attempts_made, max_attempts = raw
        return Job(
            id=job_id,
            payload=QueueJob.model_validate_json(data),
            attempts_made=int(attempts_made or 0),
            max_attempts=int(max_attempts or 1),
        )

    async def extend_lease(self, job_id: str) -> bool:
        """Renew a held lease for another stale_job_timeout. False if it was lost."""
        lease_expiry = self._clock() + int(self.settings.queue.stale_job_timeout * 1000)
        extended = int(await self._extend_script(
            keys=[self.active_key],
            args=[job_id, lease_expiry],
        ))
        if not extended:
            logger.warning(f"Lease on job {job_id} ({self.name}) already expired")
        return bool(extended)

    async def complete(self, job_id: str, result: Any = None) -> bool:
        """Mark a leased job completed. False if its lease was lost."""
        queue_settings = self.settings.queue
        now = self._clock()
        done = await self._complete_script(
            keys=[self.active_key, self.completed_key],
            args=[
                job_id,
                now,
                self.job_prefix,
                json.dumps(result, default=str),
                now - queue_settings.completed_max_age * 1000,
                queue_settings.completed_max_count,
            ],
        )
        if not done:
            logger.warning(f"Job {job_id} on {self.name} completed after losing its lease")
        return bool(done)

    async def fail(self, job_id: str, error: str) -> Optional[float]:
        """
        Record a failed attempt.

        Returns:
            Seconds until the retry, or None when the job failed permanently
            (or its lease was already lost)
        """
        queue_settings = self.settings.queue
        now = self._clock()
        outcome, value = await self._fail_script(
            keys=[self.active_key, self.delayed_key, self.failed_key],
            args=[
                job_id,
                now,
                self.job_prefix,
                error,
                int(queue_settings.backoff_delay * 1000),
                now - queue_settings.failed_max_age * 1000,
                queue_settings.failed_max_count,
            ],
        )
        outcome = int(outcome)
        if outcome == 1:
            delay = int(value) / 1000
            logger.warning(f"Job {job_id} on {self.name} failed, retrying in {delay}s: {error}")
            return delay
        if outcome == 0:
            logger.error(f"Job {job_id} on {self.name} failed permanently after {value} attempt(s): {error}")
        else:
            logger.warning(f"Job {job_id} on {self.name} failed after losing its lease")
        return None

    async def recover_stale(self) -> int:
        """Return jobs whose lease expired to the wait set."""
        recovered = int(await self._recover_script(
            keys=[self.active_key, self.wait_key],
            args=[self._clock(), self.job_prefix],
        ))
        if recovered:
            logger.warning(f"Recovered {recovered} stale job(s) on {self.name}")
        return recovered

    async def get_job(self, job_id: str) -> Optional[dict[str, str]]:
        data = await self.client.hgetall(self.job_prefix + job_id)
        return data or None

    async def get_stats(self) -> dict[str, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.zcard(self.wait_key)
            pipe.zcard(self.active_key)
            pipe.zcard(self.completed_key)
            pipe.zcard(self.failed_key)
            pipe.zcard(self.delayed_key)
            waiting, active, completed, failed, delayed = await pipe.execute()

        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
            "total": waiting + active + delayed,
        }


class TenantJobQueue:
    """
    Workflow queue partitioned by organization.

    Partitions are created on first use and each gets its own worker, so one
    organization's backlog never starves another's. Without a Redis client,
    or when Redis fails at enqueue time, workflows run directly in-process.
    """

    def __init__(
        self,
        client: Optional[redis.Redis],
        store: WorkflowStore,
        execute: Callable[..., Awaitable[ExecutionResult]],
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.store = store
        self.execute = execute
        self.settings = settings or get_settings()

        self._queues: dict[str, JobQueue] = {}
        self._workers: dict[str, PartitionWorker] = {}
        self._running = False
        self._registry_key = f"{self.settings.queue.key_prefix}partitions"
        self._discovery_task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def get_queue(self, organization_id: Optional[str]) -> JobQueue:
        """Partition of an organization, created lazily."""
        return await self._get_queue_by_name(partition_name(organization_id))

    async def _get_queue_by_name(self, name: str) -> JobQueue:
        queue = self._queues.get(name)
        if queue is not None:
            return queue
        if self.client is None:
            raise InfrastructureError("No queue backend configured")

        queue = JobQueue(self.client, name, self.settings)
        await queue.init()
        await self.client.sadd(self._registry_key, name)
        self._queues[name] = queue
        logger.info(f"Created queue partition {name}")

        if self._running:
            await self._start_worker(queue)
        return queue

    async def enqueue(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: Union[TriggerType, str] = TriggerType.MANUAL,
        trigger_data: Optional[dict[str, Any]] = None,
        priority: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> EnqueueResult:
        """
        Queue a workflow execution on its organization's partition.

        Falls back to direct execution when no backend is configured or the
        backend fails.

        Raises:
            WorkflowNotFoundError: The workflow does not exist
        """
        trigger_value = trigger_type.value if isinstance(trigger_type, TriggerType) else trigger_type
        organization_id = await self.store.get_organization_id(workflow_id)

        if self.client is None:
            logger.warning(
                f"No queue backend configured, executing workflow {workflow_id} directly"
            )
            return await self._execute_directly(workflow_id, user_id, trigger_value, trigger_data)

        job = QueueJob(
            workflow_id=workflow_id,
            user_id=user_id,
            organization_id=organization_id,
            trigger_type=trigger_value,
            trigger_data=trigger_data,
        )
        try:
            queue = await self.get_queue(organization_id)
            job_id = await queue.add(job, priority=priority, delay=delay)
        except (RedisError, OSError) as e:
            error = InfrastructureError(f"Queue backend unavailable: {e}")
            logger.error(f"{error}; executing workflow {workflow_id} directly")
            return await self._execute_directly(workflow_id, user_id, trigger_value, trigger_data)

        logger.info(f"Queued workflow {workflow_id} as job {job_id} on {queue.name}")
        return EnqueueResult(job_id=job_id, queued=True)

    async def _execute_directly(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: str,
        trigger_data: Optional[dict[str, Any]],
    ) -> EnqueueResult:
        result = await self.execute(workflow_id, user_id, trigger_type, trigger_data)
        return EnqueueResult(job_id=DIRECT_EXECUTION_JOB_ID, queued=False, result=result)

    async def process_job(self, job: QueueJob) -> ExecutionResult:
        """
        Run a queued workflow.

        Raises:
            RetryableJobError: The run failed and the queue should retry it
        """
        result = await self.execute(
            job.workflow_id, job.user_id, job.trigger_type, job.trigger_data
        )
        if not result.success:
            raise RetryableJobError(result.error, result.error_step)
        return result

    # ==================== Workers ====================

    async def start(self) -> None:
        """Start workers for every partition known to the backend."""
        if self._running or self.client is None:
            return
        self._running = True

        await self.discover_partitions()
        for queue in list(self._queues.values()):
            if queue.name not in self._workers:
                await self._start_worker(queue)
        self._discovery_task = asyncio.create_task(self._discovery_loop())

        logger.info(f"Job queue started with {len(self._workers)} partition worker(s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._discovery_task is not None:
            self._discovery_task.cancel()
            await asyncio.gather(self._discovery_task, return_exceptions=True)
            self._discovery_task = None

        for worker in list(self._workers.values()):
            await worker.stop()
        self._workers.clear()
        logger.info("Job queue stopped")

    async def discover_partitions(self) -> int:
        """Pick up partitions created by other processes. Returns how many were new."""
        if self.client is None:
            return 0
        names = await self.client.smembers(self._registry_key)
        new = [name for name in names if name not in self._queues]
        for name in sorted(new):
            await self._get_queue_by_name(name)
        return len(new)

    async def _discovery_loop(self) -> None:
        interval = self.settings.queue.stale_check_interval

        while self._running:
            try:
                await asyncio.sleep(interval)
                found = await self.discover_partitions()
                if found:
                    logger.info(f"Discovered {found} new queue partition(s)")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error discovering queue partitions: {e}")

    async def _start_worker(self, queue: JobQueue) -> None:
        worker = PartitionWorker(
            queue,
            self.process_job,
            concurrency=self.settings.queue_concurrency,
            max_jobs_per_minute=self.settings.queue.max_jobs_per_minute,
            settings=self.settings,
        )
        self._workers[queue.name] = worker
        await worker.start()

    # ==================== Stats ====================

    async def get_queue_stats(self, organization_id: Optional[str]) -> Optional[dict[str, Any]]:
        """Counts for one partition, or None when it does not exist."""
        queue = self._queues.get(partition_name(organization_id))
        if queue is None:
            return None
        return {"queue": queue.name, **await queue.get_stats()}

    async def get_all_stats(self) -> dict[str, Any]:
        """Counts summed over every known partition, plus a per-organization breakdown."""
        totals = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0, "total": 0}
        organizations = []

        for name, queue in sorted(self._queues.items()):
            stats = await queue.get_stats()
            for key in totals:
                totals[key] += stats[key]
            organizations.append({
                "organizationId": name.split(":", 1)[1],
                "waiting": stats["waiting"],
                "active": stats["active"],
            })

        return {**totals, "queues": len(self._queues), "organizations": organizations}
