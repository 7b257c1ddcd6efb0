"""
Worker pool - N consumer tasks pulling jobs from the DB-backed queue.

Each consumer leases one job at a time, runs the topic's processor under a
timeout shorter than the lease, and then acks or nacks. Retry timing belongs
to the queue; the processor's on_failure only records history.

Uses BRPOP on the per-topic Redis notification keys for near-instant wake on
new jobs, with a poll_interval timeout falling back to a DB poll as safety net.
"""
import asyncio
import logging
import socket
import traceback
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from payhook.services.job_queue import LEASE_EXPIRED_ERROR, NackOutcome
from payhook.utils.logging import bind_log_context, generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

HEARTBEAT_KEY_PREFIX = "payhook:worker_health:"
ERROR_BACKOFF_SECONDS = 5


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class WorkerPool:
    def __init__(
        self,
        queue,
        processors: dict,
        concurrency: int = 5,
        worker_id: Optional[str] = None,
        poll_interval: int = 30,
        shutdown_timeout: float = 30.0,
        processing_timeout: Optional[float] = None,
        on_crash: Optional[Callable[[BaseException], None]] = None,
    ):
        """
        Args:
            queue: JobQueue
            processors: topic -> processor with async process(job) and
                async on_failure(job, error, error_stack, outcome)
            concurrency: number of consumer tasks
            processing_timeout: per-job limit, defaults to 80% of the lease
            on_crash: called when a consumer task dies unexpectedly
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._queue = queue
        self._processors = processors
        self.topics = list(processors)
        self.concurrency = concurrency
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval = poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.processing_timeout = processing_timeout or queue.lease_seconds * 0.8
        self._on_crash = on_crash
        self._tasks: list[asyncio.Task] = []
        self._busy: set[asyncio.Task] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    def start(self) -> None:
        if self._tasks:
            return
        for i in range(self.concurrency):
            task = asyncio.create_task(self._consume(), name=f"{self.worker_id}:consumer-{i}")
            task.add_done_callback(self._consumer_done)
            self._tasks.append(task)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(
            "Worker pool started: id=%s consumers=%d topics=%s",
            self.worker_id, self.concurrency, ",".join(self.topics),
            extra={"worker_id": self.worker_id},
        )

    def _consumer_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._stopping:
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(
            "Consumer %s crashed: %s", task.get_name(), str(exc),
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"worker_id": self.worker_id},
        )
        if self._on_crash is not None:
            self._on_crash(exc)

    # ------------------------------------------------------------------
    # Consumer loop
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        current = asyncio.current_task()
        while not self._stopping:
            self._busy.add(current)
            try:
                job = await self._queue.dequeue(self.topics, self.worker_id)
                if job is not None:
                    await self.run_job(job)
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Consumer cycle error: %s", str(e),
                    extra={"worker_id": self.worker_id},
                )
                self._busy.discard(current)
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
                continue
            finally:
                self._busy.discard(current)

            if self._stopping:
                break
            await self._queue.wait_for_jobs(self.topics, self.poll_interval)

    async def run_job(self, job) -> None:
        """Process one leased job, then ack or nack it."""
        processor = self._processors[job.topic]
        set_correlation_id(generate_correlation_id())
        bind_log_context(reset=True, job_id=str(job.id), topic=job.topic, worker_id=self.worker_id)

        try:
            await asyncio.wait_for(processor.process(job), timeout=self.processing_timeout)
        except asyncio.CancelledError:
            # Shutdown interrupted the job: hand it back without burning an attempt
            try:
                await self._queue.release(job)
            except Exception as e:
                logger.warning("Release failed for job %s: %s", str(job.id)[:8], str(e))
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                error = f"Job timed out after {self.processing_timeout:.0f}s"
            else:
                error = str(e) or type(e).__name__
            error_stack = traceback.format_exc()
            logger.warning(
                "Job failed: id=%s topic=%s attempt=%d/%d error=%s",
                str(job.id)[:8], job.topic, job.attempts, job.max_attempts, error[:200],
            )
            outcome = await self._queue.nack(job, error)
            if outcome.lease_lost:
                return
            try:
                await processor.on_failure(job, error, error_stack, outcome)
            except Exception as hook_error:
                logger.error(
                    "Failure hook for job %s raised: %s", str(job.id)[:8], str(hook_error),
                )
            return

        await self._queue.ack(job)
        logger.debug("Job done: id=%s topic=%s", str(job.id)[:8], job.topic)

    # ------------------------------------------------------------------
    # Expired leases
    # ------------------------------------------------------------------

    async def reap_expired(self) -> int:
        """
        Dead-letter jobs whose final attempt lost its lease (worker crashed or
        hung) and run the processor's failure hook for each, as a nack would.
        """
        try:
            jobs = await self._queue.reap_expired_leases(self.topics)
        except Exception as e:
            logger.warning("Lease reaping failed: %s", str(e), extra={"worker_id": self.worker_id})
            return 0

        for job in jobs:
            set_correlation_id(generate_correlation_id())
            bind_log_context(reset=True, job_id=str(job.id), topic=job.topic, worker_id=self.worker_id)
            outcome = NackOutcome(dead=True, attempts=job.attempts, max_attempts=job.max_attempts)
            try:
                await self._processors[job.topic].on_failure(job, LEASE_EXPIRED_ERROR, None, outcome)
            except Exception as hook_error:
                logger.error(
                    "Failure hook for expired job %s raised: %s", str(job.id)[:8], str(hook_error),
                )
        return len(jobs)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat(self) -> None:
        """Store heartbeat timestamp in Redis."""
        try:
            from payhook.utils.redis import get_redis
            redis = await get_redis()
            await redis.set(
                f"{HEARTBEAT_KEY_PREFIX}{self.worker_id}",
                datetime.now(timezone.utc).isoformat(),
                ex=self.poll_interval * 4,
            )
        except Exception as e:
            logger.debug("Heartbeat write failed: %s", str(e))

    async def _heartbeat_loop(self) -> None:
        while not self._stopping:
            await self._heartbeat()
            await self.reap_expired()
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """
        Stop dequeuing, give in-flight jobs shutdown_timeout seconds to finish,
        then cancel them (their jobs are released back to the queue).
        """
        if self._stopping:
            return
        self._stopping = True
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()

        # Idle consumers are only waiting for a wake-up
        for task in self._tasks:
            if task not in self._busy:
                task.cancel()

        if self._tasks:
            logger.info(
                "Worker pool stopping: %d jobs in flight", len(self._busy),
                extra={"worker_id": self.worker_id},
            )
            done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled %d jobs still running after %.0fs", len(pending), self.shutdown_timeout)
                await asyncio.gather(*pending, return_exceptions=True)

        if self._heartbeat_task is not None:
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
        logger.info("Worker pool stopped: id=%s", self.worker_id, extra={"worker_id": self.worker_id})
