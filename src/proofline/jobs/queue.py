"""
Durable job queue backed by SQLite.

Two named queues carry the pipeline's closed set of job types:

    evidence-collection: collect-aws, collect-github, collect-okta
    compliance-check:    run-check, schedule-checks

Delivery is at-least-once. A worker claims a job atomically (BEGIN
IMMEDIATE, WAITING -> ACTIVE); completing or failing it is a separate write,
so a crash between claim and completion leaves an ACTIVE job that
requeue_stale() puts back.

Outer Retry Policy:
    A failed job is retried up to max_attempts times in total (default 3)
    with exponential backoff base_ms * 2**(attempt - 1). Errors carrying
    permanent = True fail the job on the first attempt. Exhausted jobs are
    marked FAILED and kept; nothing re-enqueues them automatically.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from proofline.storage.database import Database

logger = logging.getLogger(__name__)

EVIDENCE_COLLECTION_QUEUE = "evidence-collection"
COMPLIANCE_CHECK_QUEUE = "compliance-check"

COLLECT_AWS = "collect-aws"
COLLECT_GITHUB = "collect-github"
COLLECT_OKTA = "collect-okta"
RUN_CHECK = "run-check"
SCHEDULE_CHECKS = "schedule-checks"

JOB_TYPE_QUEUES: dict[str, str] = {
    COLLECT_AWS: EVIDENCE_COLLECTION_QUEUE,
    COLLECT_GITHUB: EVIDENCE_COLLECTION_QUEUE,
    COLLECT_OKTA: EVIDENCE_COLLECTION_QUEUE,
    RUN_CHECK: COMPLIANCE_CHECK_QUEUE,
    SCHEDULE_CHECKS: COMPLIANCE_CHECK_QUEUE,
}

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_MS = 1000


class JobQueueError(Exception):
    """Base exception for job queue errors."""

    pass


class UnknownJobTypeError(JobQueueError):
    """Raised for a job type outside the closed set."""

    permanent = True


class JobStatus(Enum):
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def collection_job_type(platform: str) -> str:
    """
    Job type for collecting evidence from a platform.

    Raises:
        UnknownJobTypeError: If the platform has no collection job type.
    """
    job_type = f"collect-{platform}"
    if JOB_TYPE_QUEUES.get(job_type) != EVIDENCE_COLLECTION_QUEUE:
        raise UnknownJobTypeError(f"No collection job type for platform '{platform}'")
    return job_type


def is_permanent(error: BaseException) -> bool:
    """True if the error is marked as not worth retrying."""
    return bool(getattr(error, "permanent", False))


@dataclass
class Job:
    """
    A queued unit of work.

    Attributes:
        id: Unique identifier; collection jobs pass it to the ledger for
            idempotent appends.
        queue: Queue name.
        job_type: One of the JOB_TYPE_QUEUES keys.
        payload: Job data as a JSON-compatible dict.
        status: WAITING, ACTIVE, COMPLETED or FAILED.
        attempts: Number of times the job has been claimed.
        max_attempts: Attempts allowed before the job is FAILED.
        available_at: Epoch seconds before which the job is not claimable.
        last_error: Message of the most recent failure.
        result: Handler return value once COMPLETED.
    """

    id: str
    queue: str
    job_type: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    available_at: float
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None
    result: dict[str, Any] | None = None

    @classmethod
    def from_row(cls, row: Any) -> Job:
        return cls(
            id=row["id"],
            queue=row["queue"],
            job_type=row["job_type"],
            payload=json.loads(row["payload_json"]),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            available_at=row["available_at"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            last_error=row["last_error"],
            result=json.loads(row["result_json"]) if row["result_json"] else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "job_type": self.job_type,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "result": self.result,
        }


class JobQueue:
    """
    SQLite job queue.

    Example:
        queue = JobQueue(db)
        queue.enqueue(RUN_CHECK, {"customer_id": "c1", "control_id": "CC6.1.2"})
        job = queue.claim(COMPLIANCE_CHECK_QUEUE)
        queue.complete(job, {"status": "PASS"})
    """

    def __init__(
        self,
        database: Database,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.database = database
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        job_id: str | None = None,
        delay_ms: int = 0,
    ) -> Job:
        """
        Add a job to the queue its type belongs to.

        Raises:
            UnknownJobTypeError: If job_type is not in the closed set.
        """
        queue = JOB_TYPE_QUEUES.get(job_type)
        if queue is None:
            raise UnknownJobTypeError(f"Unknown job type: {job_type}")

        now = self._now()
        job = Job(
            id=job_id or str(uuid.uuid4()),
            queue=queue,
            job_type=job_type,
            payload=payload,
            status=JobStatus.WAITING,
            attempts=0,
            max_attempts=self.max_attempts,
            available_at=self._clock() + delay_ms / 1000,
            created_at=now,
            updated_at=now,
        )
        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    id, queue, job_type, payload_json, status, attempts,
                    max_attempts, available_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.queue,
                    job.job_type,
                    json.dumps(job.payload, sort_keys=True, default=str),
                    job.status.value,
                    job.attempts,
                    job.max_attempts,
                    job.available_at,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        logger.info(f"Enqueued {job_type} job {job.id} on {queue}")
        return job

    def claim(self, queue: str) -> Job | None:
        """
        Atomically take the next available job from a queue.

        Returns:
            The claimed job (now ACTIVE, attempts incremented), or None.
        """
        now = self._clock()
        with self.database.transaction(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT * FROM jobs
                WHERE queue = ? AND status = ? AND available_at <= ?
                ORDER BY available_at, created_at, rowid
                LIMIT 1
                """,
                (queue, JobStatus.WAITING.value, now),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE jobs SET status = ?, attempts = attempts + 1, updated_at = ?
                WHERE id = ?
                """,
                (JobStatus.ACTIVE.value, self._now().isoformat(), row["id"]),
            )
            claimed = conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],)).fetchone()
        job = Job.from_row(claimed)
        logger.debug(f"Claimed {job.job_type} job {job.id} (attempt {job.attempts})")
        return job

    def complete(self, job: Job, result: dict[str, Any] | None = None) -> None:
        """Mark a claimed job COMPLETED and store its result."""
        with self.database.transaction() as conn:
            conn.execute(
                """
                UPDATE jobs SET status = ?, result_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    json.dumps(result, default=str) if result is not None else None,
                    self._now().isoformat(),
                    job.id,
                ),
            )
        job.status = JobStatus.COMPLETED
        job.result = result

    def fail(self, job: Job, error: BaseException) -> JobStatus:
        """
        Record a failed attempt.

        Returns:
            WAITING if the job will be retried, FAILED if it is exhausted or
            the error is permanent.
        """
        message = f"{type(error).__name__}: {error}"
        if is_permanent(error) or job.attempts >= job.max_attempts:
            status = JobStatus.FAILED
            available_at = job.available_at
            logger.error(
                f"Job {job.id} ({job.job_type}) failed permanently after "
                f"{job.attempts} attempt(s): {message}"
            )
        else:
            status = JobStatus.WAITING
            delay_ms = self.backoff_base_ms * (2 ** (job.attempts - 1))
            available_at = self._clock() + delay_ms / 1000
            logger.warning(
                f"Job {job.id} ({job.job_type}) attempt {job.attempts}/"
                f"{job.max_attempts} failed, retrying in {delay_ms}ms: {message}"
            )

        with self.database.transaction() as conn:
            conn.execute(
                """
                UPDATE jobs SET status = ?, last_error = ?, available_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    message,
                    available_at,
                    self._now().isoformat(),
                    job.id,
                ),
            )
        job.status = status
        job.last_error = message
        job.available_at = available_at
        return status

    def requeue_stale(self, older_than_seconds: float) -> int:
        """
        Recover ACTIVE jobs abandoned by a crashed worker.

        A job whose last update is older than older_than_seconds goes back to
        WAITING, or to FAILED if its claim already used the last attempt.

        Returns:
            Number of jobs recovered.
        """
        now = self._now()
        cutoff = datetime.fromtimestamp(self._clock() - older_than_seconds, UTC)
        with self.database.transaction(immediate=True) as conn:
            exhausted = conn.execute(
                """
                UPDATE jobs SET status = ?, last_error = ?, updated_at = ?
                WHERE status = ? AND updated_at < ? AND attempts >= max_attempts
                """,
                (
                    JobStatus.FAILED.value,
                    "Abandoned by worker after final attempt",
                    now.isoformat(),
                    JobStatus.ACTIVE.value,
                    cutoff.isoformat(),
                ),
            ).rowcount
            requeued = conn.execute(
                """
                UPDATE jobs SET status = ?, available_at = ?, updated_at = ?
                WHERE status = ? AND updated_at < ?
                """,
                (
                    JobStatus.WAITING.value,
                    self._clock(),
                    now.isoformat(),
                    JobStatus.ACTIVE.value,
                    cutoff.isoformat(),
                ),
            ).rowcount
        if requeued or exhausted:
            logger.warning(
                f"Recovered stale active jobs: {requeued} requeued, {exhausted} failed"
            )
        return requeued + exhausted

    def get(self, job_id: str) -> Job | None:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return Job.from_row(row) if row else None

    def list_jobs(
        self,
        queue: str | None = None,
        status: JobStatus | None = None,
        job_type: str | None = None,
    ) -> list[Job]:
        """List jobs oldest first, optionally filtered."""
        query = "SELECT * FROM jobs WHERE 1=1"
        params: list[str] = []
        if queue is not None:
            query += " AND queue = ?"
            params.append(queue)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if job_type is not None:
            query += " AND job_type = ?"
            params.append(job_type)
        query += " ORDER BY created_at, rowid"
        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Job.from_row(row) for row in rows]

    def counts(self) -> dict[str, dict[str, int]]:
        """Job counts per queue and status."""
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT queue, status, COUNT(*) AS n FROM jobs GROUP BY queue, status"
            ).fetchall()
        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["queue"], {})[row["status"]] = row["n"]
        return counts
