"""
Partition worker for the workflow job queue.

Each queue partition gets one worker with its own task pool:
- A semaphore caps concurrently running jobs (QUEUE_CONCURRENCY)
- A reservoir limiter caps jobs started per minute (QUEUE_MAX_JOBS_PER_MINUTE)
- Backpressure when the pool is full (the loop blocks on the semaphore)
- A periodic sweep returns jobs of dead workers to the queue
- A heartbeat renews the lease of each running job
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import redis.exceptions

from automation_engine.config import Settings, get_settings
from automation_engine.core.errors import RetryableJobError
from automation_engine.core.models import QueueJob
from automation_engine.resilience.rate_limiter import RateLimiter

if TYPE_CHECKING:
    from automation_engine.messaging.queue import Job, JobQueue

logger = logging.getLogger(__name__)

JobProcessor = Callable[[QueueJob], Awaitable[Any]]


class PartitionWorker:
    """
    Consumes one partition of the job queue.

    Jobs whose processor raises are handed back to the queue, which retries
    them with exponential backoff until their attempts run out.
    """

    def __init__(
        self,
        queue: "JobQueue",
        process: JobProcessor,
        concurrency: int,
        max_jobs_per_minute: int,
        settings: Optional[Settings] = None,
    ):
        self.queue = queue
        self.process = process
        self.concurrency = concurrency
        self.settings = settings or get_settings()

        self.limiter = RateLimiter(
            f"queue:{queue.name}",
            reservoir=max_jobs_per_minute,
            reservoir_refresh_amount=max_jobs_per_minute,
            reservoir_refresh_interval=60.0,
            on_failed=None,
        )

        self._running = False
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: list[asyncio.Task] = []
        self._processing_tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start consuming the partition."""
        if self._running:
            return

        self._running = True
        self._semaphore = asyncio.Semaphore(self.concurrency)

        logger.info(
            f"Starting worker for {self.queue.name} "
            f"(concurrency: {self.concurrency}, "
            f"max jobs/min: {self.limiter.reservoir_refresh_amount})"
        )

        self._tasks.append(asyncio.create_task(self._consume_loop()))
        self._tasks.append(asyncio.create_task(self._recover_stale_jobs()))

    async def stop(self) -> None:
        """Stop consuming and wait for in-flight jobs."""
        if not self._running:
            return

        self._running = False
        logger.info(f"Stopping worker for {self.queue.name}")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._processing_tasks:
            logger.info(f"Waiting for {len(self._processing_tasks)} in-flight job(s) to complete")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._processing_tasks, return_exceptions=True),
                    timeout=self.settings.worker.graceful_shutdown_timeout,
                )
            except asyncio.TimeoutError:
                # Leases expire and the jobs are recovered by another worker
                logger.warning("Graceful shutdown timed out, cancelling remaining jobs")
                for task in self._processing_tasks:
                    task.cancel()
                await asyncio.gather(*self._processing_tasks, return_exceptions=True)

        self._processing_tasks.clear()

    @property
    def in_flight(self) -> int:
        return len(self._processing_tasks)

    async def _consume_loop(self) -> None:
        poll_interval = self.settings.queue.poll_interval

        while self._running:
            acquired = False
            token = False
            try:
                await self._semaphore.acquire()
                acquired = True

                if not self._running:
                    break

                if not self.limiter.try_acquire():
                    wait = self.limiter.time_until_refill() or poll_interval
                    logger.debug(f"{self.queue.name} hit its rate limit, waiting {wait:.1f}s")
                    self._semaphore.release()
                    acquired = False
                    await asyncio.sleep(wait)
                    continue
                token = True

                job = await self.queue.pop()
                if job is None:
                    # Nothing ran, so the token goes back
                    self.limiter.refund()
                    token = False
                    self._semaphore.release()
                    acquired = False
                    await asyncio.sleep(poll_interval)
                    continue

                # Spawn processing task (semaphore already acquired)
                task = asyncio.create_task(self._process_with_semaphore(job))
                acquired = False
                token = False
                self._processing_tasks.add(task)
                task.add_done_callback(self._processing_tasks.discard)

            except asyncio.CancelledError:
                logger.debug(f"Consume loop for {self.queue.name} cancelled")
                if token:
                    self.limiter.refund()
                if acquired:
                    self._semaphore.release()
                break
            except redis.exceptions.ConnectionError as e:
                logger.warning(f"Redis connection error on {self.queue.name}: {e}")
                if token:
                    self.limiter.refund()
                if acquired:
                    self._semaphore.release()
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"Error in consume loop for {self.queue.name}: {e}", exc_info=True)
                if token:
                    self.limiter.refund()
                if acquired:
                    self._semaphore.release()
                await asyncio.sleep(1)

    async def _process_with_semaphore(self, job: "Job") -> None:
        """Process a job and release its pool slot when done."""
        try:
            await self._process(job)
        finally:
            self._semaphore.release()

    async def _process(self, job: "Job") -> None:
        payload = job.payload
        logger.info(
            f"Processing job {job.id} (workflow {payload.workflow_id}, "
            f"attempt {job.attempts_made + 1}/{job.max_attempts})"
        )

        try:
            result = await self._run_holding_lease(job)
        except RetryableJobError as e:
            logger.error(f"Job {job.id} failed: {e}")
            await self.queue.fail(job.id, str(e))
            return
        except Exception as e:
            logger.error(f"Error processing job {job.id}: {e}", exc_info=True)
            await self.queue.fail(job.id, str(e))
            return

        output = result.model_dump(mode="json") if hasattr(result, "model_dump") else result
        await self.queue.complete(job.id, output)
        logger.debug(f"Job {job.id} completed")

    async def _run_holding_lease(self, job: "Job") -> Any:
        """Run the processor while renewing the job's lease in the background."""
        heartbeat = asyncio.create_task(self._renew_lease(job))
        try:
            return await self.process(job.payload)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _renew_lease(self, job: "Job") -> None:
        # Renew well before the lease runs out so a slow run is never recovered
        interval = self.settings.queue.stale_job_timeout / 3

        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.extend_lease(job.id):
                    return
            except redis.exceptions.RedisError as e:
                logger.warning(f"Failed to renew lease on job {job.id}: {e}")

    async def _recover_stale_jobs(self) -> None:
        """Periodically return jobs of dead workers to the queue."""
        interval = self.settings.queue.stale_check_interval

        while self._running:
            try:
                await self.queue.recover_stale()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error recovering stale jobs on {self.queue.name}: {e}")
                await asyncio.sleep(5)
