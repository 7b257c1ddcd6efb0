"""
Durable job queue on the relational store.

Jobs live in the jobs table; Redis is only a wake-up signal. Enqueue pushes
to payhook:queue_notify:<topic> so idle workers blocked in BRPOP wake
immediately, with a DB poll as the safety net when Redis is unavailable.

Each job is leased to at most one worker by a conditional UPDATE. A lease
that expires (worker crash, hang) makes the job claimable again. The queue
is the single retry authority: nack decides between backoff and dead.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from payhook.models.job import Job

logger = logging.getLogger(__name__)

STRIPE_WEBHOOKS_TOPIC = "stripe-webhooks"
CONNECT_WEBHOOKS_TOPIC = "connect-webhooks"
WEBHOOK_TOPICS = (STRIPE_WEBHOOKS_TOPIC, CONNECT_WEBHOOKS_TOPIC)
LISTENER_TOPICS = ("events", "emails", "analytics", "usage")

QUEUE_NOTIFY_PREFIX = "payhook:queue_notify:"
CLAIM_CANDIDATES = 5
NOTIFY_MAX = 1000  # one wake-up per job; stale ones only cause an empty poll
DEFAULT_LEASE_SECONDS = 300
LEASE_EXPIRED_ERROR = "Lease expired on final attempt"


def notify_key(topic: str) -> str:
    return f"{QUEUE_NOTIFY_PREFIX}{topic}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    """Per-topic retry budget: delay after the Nth failed attempt is unit * base ** N."""

    max_attempts: int
    backoff_base: int = 2
    backoff_unit_seconds: int = 1

    def delay_for(self, attempt: int) -> int:
        return self.backoff_unit_seconds * (self.backoff_base ** attempt)


@dataclass(frozen=True)
class NackOutcome:
    """What the queue decided after a failed attempt."""

    dead: bool
    attempts: int
    max_attempts: int
    delay_seconds: int = 0
    next_attempt_at: Optional[datetime] = None
    lease_lost: bool = False


class JobQueue:
    def __init__(
        self,
        session_factory,
        policies: Optional[dict[str, RetryPolicy]] = None,
        default_policy: Optional[RetryPolicy] = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ):
        self._session_factory = session_factory
        self._policies = dict(policies or {})
        self._default_policy = default_policy or RetryPolicy(max_attempts=3)
        self.lease_seconds = lease_seconds

    @classmethod
    def from_settings(cls, session_factory, settings) -> "JobQueue":
        """Webhook topics: base-5 minute backoff. Listener topics: base-2 second backoff."""
        webhook_policy = RetryPolicy(
            max_attempts=settings.webhook_max_retries + 1,
            backoff_base=settings.webhook_backoff_base,
            backoff_unit_seconds=settings.webhook_backoff_unit_seconds,
        )
        listener_policy = RetryPolicy(
            max_attempts=settings.listener_max_attempts,
            backoff_base=2,
            backoff_unit_seconds=1,
        )
        policies = {topic: webhook_policy for topic in WEBHOOK_TOPICS}
        policies.update({topic: listener_policy for topic in LISTENER_TOPICS})
        return cls(
            session_factory,
            policies=policies,
            default_policy=listener_policy,
            lease_seconds=settings.job_lease_seconds,
        )

    def policy_for(self, topic: str) -> RetryPolicy:
        return self._policies.get(topic, self._default_policy)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        topic: str,
        payload: dict,
        dedup_key: Optional[str] = None,
        delay_seconds: int = 0,
        max_attempts: Optional[int] = None,
    ) -> str:
        """
        Enqueue a job and wake a worker.

        Args:
            topic: Named queue (stripe-webhooks, emails, ...)
            payload: JSON-serializable job data
            dedup_key: At most one job per (topic, dedup_key); the existing id is returned
            delay_seconds: Delay before the job becomes claimable
            max_attempts: Override the topic's retry budget

        Returns:
            Job ID as string
        """
        now = _utcnow()
        job = Job(
            topic=topic,
            payload=payload,
            dedup_key=dedup_key,
            status="pending",
            attempts=0,
            max_attempts=max_attempts or self.policy_for(topic).max_attempts,
            available_at=now + timedelta(seconds=delay_seconds),
            created_at=now,
        )

        async with self._session_factory() as db:
            if dedup_key:
                existing_id = await self._find_id(db, topic, dedup_key)
                if existing_id:
                    logger.info(
                        "Job already queued: topic=%s dedup_key=%s id=%s",
                        topic, dedup_key, str(existing_id)[:8],
                    )
                    return str(existing_id)

            db.add(job)
            try:
                await db.commit()
            except IntegrityError:
                # Concurrent enqueue with the same dedup key won the insert
                await db.rollback()
                if not dedup_key:
                    raise
                existing_id = await self._find_id(db, topic, dedup_key)
                if existing_id is None:
                    raise
                return str(existing_id)
            job_id = str(job.id)

        logger.info(
            "Job enqueued: topic=%s delay=%ds id=%s",
            topic, delay_seconds, job_id[:8],
            extra={"job_id": job_id, "topic": topic},
        )

        if delay_seconds == 0:
            await self._notify(topic, job_id)

        return job_id

    async def _find_id(self, db, topic: str, dedup_key: str) -> Optional[uuid.UUID]:
        result = await db.execute(
            select(Job.id).where(and_(Job.topic == topic, Job.dedup_key == dedup_key))
        )
        return result.scalar_one_or_none()

    async def _notify(self, topic: str, job_id: str) -> None:
        """Wake a worker blocked in BRPOP (best-effort)."""
        try:
            from payhook.utils.redis import get_redis
            redis = await get_redis()
            await redis.lpush(notify_key(topic), job_id)
            await redis.ltrim(notify_key(topic), 0, NOTIFY_MAX - 1)
        except Exception as e:
            logger.debug("Failed to notify workers for %s: %s", topic, str(e))

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def dequeue(
        self,
        topics: Sequence[str],
        worker_id: str,
        lease_seconds: Optional[int] = None,
    ) -> Optional[Job]:
        """
        Lease the oldest claimable job on any of the topics.

        Claimable means pending and due, or leased with an expired lease and
        attempts left. Claiming increments attempts.
        """
        now = _utcnow()
        lease = lease_seconds or self.lease_seconds

        async with self._session_factory() as db:
            result = await db.execute(
                select(Job.id, Job.status, Job.attempts)
                .where(
                    and_(
                        Job.topic.in_(list(topics)),
                        or_(
                            and_(Job.status == "pending", Job.available_at <= now),
                            and_(
                                Job.status == "leased",
                                Job.lease_expires_at <= now,
                                Job.attempts < Job.max_attempts,
                            ),
                        ),
                    )
                )
                .order_by(Job.available_at, Job.created_at)
                .limit(CLAIM_CANDIDATES)
            )
            candidates = result.all()

            for job_id, status, attempts in candidates:
                token = uuid.uuid4().hex
                claimed = await db.execute(
                    update(Job)
                    .where(
                        and_(
                            Job.id == job_id,
                            Job.status == status,
                            Job.attempts == attempts,
                        )
                    )
                    .values(
                        status="leased",
                        attempts=Job.attempts + 1,
                        lease_token=token,
                        leased_by=worker_id,
                        lease_expires_at=now + timedelta(seconds=lease),
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    # Another worker got there first
                    continue

                await db.commit()
                job = (
                    await db.execute(select(Job).where(Job.id == job_id))
                ).scalar_one()
                if status == "leased":
                    logger.warning(
                        "Reclaimed job with expired lease: id=%s topic=%s attempt=%d",
                        str(job_id)[:8], job.topic, job.attempts,
                    )
                return job

            await db.commit()
        return None

    async def reap_expired_leases(self, topics: Sequence[str]) -> list[Job]:
        """
        Move expired leases that were on their last attempt to dead.

        Returns the jobs this call moved, so the caller can run the same
        failure handling a nack on the final attempt would have run.
        """
        now = _utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                select(Job.id, Job.lease_token).where(
                    and_(
                        Job.topic.in_(list(topics)),
                        Job.status == "leased",
                        Job.lease_expires_at <= now,
                        Job.attempts >= Job.max_attempts,
                    )
                )
            )
            reaped_ids = []
            for job_id, token in result.all():
                moved = await db.execute(
                    update(Job)
                    .where(
                        and_(
                            Job.id == job_id,
                            Job.status == "leased",
                            Job.lease_token == token,
                        )
                    )
                    .values(
                        status="dead",
                        dead_at=now,
                        lease_token=None,
                        lease_expires_at=None,
                        last_error=func.coalesce(Job.last_error, LEASE_EXPIRED_ERROR),
                    )
                    .execution_options(synchronize_session=False)
                )
                if moved.rowcount == 1:
                    reaped_ids.append(job_id)
            await db.commit()

            if not reaped_ids:
                return []
            jobs = list(
                (await db.execute(select(Job).where(Job.id.in_(reaped_ids)))).scalars().all()
            )

        logger.error(
            "Moved %d jobs with expired leases to dead (no attempts left)", len(jobs),
        )
        return jobs

    async def ack(self, job: Job) -> bool:
        """Finish a job. Returns False if the lease was lost to another worker."""
        async with self._session_factory() as db:
            result = await db.execute(
                delete(Job)
                .where(and_(Job.id == job.id, Job.lease_token == job.lease_token))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.warning(
                "Ack ignored, lease no longer held: id=%s topic=%s",
                str(job.id)[:8], job.topic,
            )
            return False
        return True

    async def nack(
        self,
        job: Job,
        error: str,
        delay_seconds: Optional[int] = None,
    ) -> NackOutcome:
        """Record a failed attempt: reschedule with backoff, or move to dead."""
        now = _utcnow()
        policy = self.policy_for(job.topic)
        dead = job.attempts >= job.max_attempts

        if dead:
            values = {
                "status": "dead",
                "dead_at": now,
                "last_error": error,
                "lease_token": None,
                "lease_expires_at": None,
            }
            delay = 0
            next_attempt_at = None
        else:
            delay = delay_seconds if delay_seconds is not None else policy.delay_for(job.attempts)
            next_attempt_at = now + timedelta(seconds=delay)
            values = {
                "status": "pending",
                "available_at": next_attempt_at,
                "last_error": error,
                "lease_token": None,
                "leased_by": None,
                "lease_expires_at": None,
            }

        async with self._session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(and_(Job.id == job.id, Job.lease_token == job.lease_token))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.warning(
                "Nack ignored, lease no longer held: id=%s topic=%s",
                str(job.id)[:8], job.topic,
            )
            return NackOutcome(
                dead=False,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                lease_lost=True,
            )

        if dead:
            logger.error(
                "Job dead after %d attempts: id=%s topic=%s error=%s",
                job.attempts, str(job.id)[:8], job.topic, error[:200],
                extra={"job_id": str(job.id), "topic": job.topic},
            )
        else:
            logger.warning(
                "Job retry %d/%d: id=%s topic=%s backoff=%ds",
                job.attempts, job.max_attempts, str(job.id)[:8], job.topic, delay,
                extra={"job_id": str(job.id), "topic": job.topic},
            )

        return NackOutcome(
            dead=dead,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            delay_seconds=delay,
            next_attempt_at=next_attempt_at,
        )

    async def release(self, job: Job) -> bool:
        """Hand a job back without spending an attempt (worker shutting down)."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(and_(Job.id == job.id, Job.lease_token == job.lease_token))
                .values(
                    status="pending",
                    attempts=Job.attempts - 1,
                    available_at=_utcnow(),
                    lease_token=None,
                    leased_by=None,
                    lease_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Operator side
    # ------------------------------------------------------------------

    async def get_by_dedup_key(self, topic: str, dedup_key: str) -> Optional[Job]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Job).where(and_(Job.topic == topic, Job.dedup_key == dedup_key))
            )
            return result.scalar_one_or_none()

    async def retry_dead(self, topic: str, dedup_key: str) -> bool:
        """Reset a dead job to pending with a fresh attempt budget."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(
                    and_(
                        Job.topic == topic,
                        Job.dedup_key == dedup_key,
                        Job.status == "dead",
                    )
                )
                .values(
                    status="pending",
                    attempts=0,
                    available_at=_utcnow(),
                    dead_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            return False

        logger.info("Dead job requeued: topic=%s dedup_key=%s", topic, dedup_key)
        await self._notify(topic, dedup_key)
        return True

    async def stats(self, topic: str) -> dict:
        """Job counts per status for one topic."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Job.status, func.count(Job.id))
                .where(Job.topic == topic)
                .group_by(Job.status)
            )
            counts = {status: count for status, count in result.all()}

        return {
            "topic": topic,
            "pending": counts.get("pending", 0),
            "leased": counts.get("leased", 0),
            "dead": counts.get("dead", 0),
        }

    async def wait_for_jobs(self, topics: Sequence[str], timeout: int) -> bool:
        """
        Block until a notification arrives on any topic or the timeout expires.
        Returns True if woken by a notification.
        """
        keys = [notify_key(t) for t in topics]
        try:
            from payhook.utils.redis import get_redis
            redis = await get_redis()
            result = await redis.brpop(keys, timeout=timeout)
            return bool(result)
        except Exception as e:
            logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
            await asyncio.sleep(timeout)
            return False
