from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

ENRICHMENT_QUEUE = "enrichment"
MATCHMAKING_QUEUE = "matchmaking"
WEBHOOK_QUEUE = "webhook"
QUEUE_NAMES = (ENRICHMENT_QUEUE, MATCHMAKING_QUEUE, WEBHOOK_QUEUE)


@dataclass(slots=True)
class EnqueueOptions:
    attempts: int = 1
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    delay_seconds: float = 0.0


@dataclass(slots=True)
class Job:
    id: str
    queue_name: str
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int
    status: str
    scheduled_at: datetime | None = None
    last_error: str | None = None
    remove_on_complete: bool = True
    remove_on_fail: bool = False

    @property
    def attempt(self) -> int:
        """1-based number of the current attempt; counted when the job is claimed."""
        return max(1, self.attempts_made)

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Job:
        return cls(
            id=str(row["id"]),
            queue_name=row["queue_name"],
            payload=dict(row.get("payload") or {}),
            attempts_made=int(row.get("attempts_made") or 0),
            max_attempts=int(row.get("max_attempts") or 1),
            status=row["status"],
            scheduled_at=row.get("scheduled_at"),
            last_error=row.get("last_error"),
            remove_on_complete=bool(row.get("remove_on_complete", True)),
            remove_on_fail=bool(row.get("remove_on_fail", False)),
        )


@dataclass(slots=True)
class ReapResult:
    requeued: int = 0
    failed: list[Job] = field(default_factory=list)


def compute_retry_delay_seconds(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter_ratio: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff for the retry that follows ``attempt`` (1-based)."""
    exponent = max(0, attempt - 1)
    delay = min(base_seconds * (2**exponent), max_seconds)
    if delay <= 0:
        return 0.0
    if jitter_ratio > 0:
        delay += delay * (rng or random).uniform(0.0, jitter_ratio)
    return delay


class JobQueue:
    """Named, durable queues on top of the repository's job table.

    Delivery is at-least-once: a claimed job holds a lease, and a job whose
    lease expires before completion is put back by ``reap_expired``, or failed
    once its attempts are used up.
    """

    def __init__(
        self,
        repository: Any,
        *,
        lease_seconds: int = 120,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 600.0,
        retry_jitter_ratio: float = 0.25,
        defaults: dict[str, EnqueueOptions] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.lease_seconds = lease_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.retry_jitter_ratio = retry_jitter_ratio
        self.defaults = dict(defaults or {})
        self._rng = rng or random.Random()

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        options: EnqueueOptions | None = None,
    ) -> Job:
        if queue_name not in QUEUE_NAMES:
            raise ValueError(f"unknown queue: {queue_name}")
        options = options or self.defaults.get(queue_name) or EnqueueOptions()
        run_at = datetime.now(timezone.utc) + timedelta(seconds=max(0.0, options.delay_seconds))
        row = await self.repository.insert_job(
            queue_name=queue_name,
            payload=payload,
            max_attempts=max(1, options.attempts),
            run_at=run_at,
            remove_on_complete=options.remove_on_complete,
            remove_on_fail=options.remove_on_fail,
        )
        job = Job.from_row(row)
        logger.debug("job enqueued component=queue queue=%s job_id=%s", queue_name, job.id)
        return job

    async def claim(self, queue_name: str) -> Job | None:
        row = await self.repository.claim_next_job(queue_name=queue_name, lease_seconds=self.lease_seconds)
        return Job.from_row(row) if row is not None else None

    async def complete(self, job: Job) -> Job | None:
        row = await self.repository.complete_job(job_id=job.id, remove=job.remove_on_complete)
        return Job.from_row(row) if row is not None else None

    async def fail(self, job: Job, error: BaseException | str) -> Job | None:
        """Record a failed attempt and schedule the next one unless attempts are exhausted.

        Returns the updated job: ``status == "queued"`` when a retry was scheduled,
        ``"failed"`` when the job is terminal. Returns ``None`` if the job was no
        longer active (for example after its lease was reaped).
        """
        message = error if isinstance(error, str) else (str(error) or type(error).__name__)
        retry_at: datetime | None = None
        if not job.is_final_attempt:
            delay = self.compute_retry_delay_seconds(job.attempt)
            retry_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        row = await self.repository.fail_job(
            job_id=job.id,
            error=message,
            retry_at=retry_at,
            remove=job.remove_on_fail,
        )
        return Job.from_row(row) if row is not None else None

    async def remove(self, job_id: str) -> bool:
        return await self.repository.remove_job(job_id)

    async def get_job(self, job_id: str) -> Job | None:
        row = await self.repository.get_job(job_id)
        return Job.from_row(row) if row is not None else None

    async def reap_expired(self, *, limit: int = 100) -> ReapResult:
        """Put back jobs whose lease ran out.

        A reaped job has already spent the attempt it was claimed with, so a job
        on its last attempt is failed with ``lease_expired`` instead of requeued.
        """
        rows = await self.repository.requeue_expired_jobs(limit=limit)
        result = ReapResult()
        for row in rows:
            job = Job.from_row(row)
            if job.status == "failed":
                result.failed.append(job)
            else:
                result.requeued += 1
        return result

    async def counts(self) -> dict[str, dict[str, int]]:
        return await self.repository.count_jobs_by_status()

    def compute_retry_delay_seconds(self, attempt: int) -> float:
        return compute_retry_delay_seconds(
            attempt,
            base_seconds=self.retry_base_seconds,
            max_seconds=self.retry_max_seconds,
            jitter_ratio=self.retry_jitter_ratio,
            rng=self._rng,
        )
