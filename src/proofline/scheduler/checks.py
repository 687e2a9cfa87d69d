"""
Scheduling of compliance checks.

Two levels of fan-out:

    CheckScheduler (background thread): every interval, enqueues one
        schedule-checks job per customer with an active integration.
    schedule_checks (schedule-checks job): for one customer, enqueues a
        run-check job for every control that has never been checked or
        whose next_check_at has passed.

The scheduler never evaluates evidence itself.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from proofline.jobs.queue import RUN_CHECK, SCHEDULE_CHECKS, Job, JobQueue
from proofline.storage.repository import ComplianceRepository

logger = logging.getLogger(__name__)


class SchedulerError(Exception):
    """Base exception for scheduler errors."""

    pass


class SchedulerAlreadyRunningError(SchedulerError):
    """Raised when the scheduler thread is already running."""

    pass


class ScheduleInterval(Enum):
    """Supported schedule intervals."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def seconds(self) -> int:
        """Get interval duration in seconds."""
        if self == ScheduleInterval.HOURLY:
            return 3600
        elif self == ScheduleInterval.DAILY:
            return 86400
        elif self == ScheduleInterval.WEEKLY:
            return 604800
        return 86400

    @classmethod
    def from_string(cls, value: str) -> ScheduleInterval:
        """Parse interval from string."""
        value = value.lower().strip()
        for interval in cls:
            if interval.value == value:
                return interval
        raise ValueError(f"Invalid interval: {value}. Must be hourly, daily, or weekly.")


@dataclass
class ScheduleRun:
    """Record of a single scheduler pass."""

    started_at: datetime
    customers: list[str] = field(default_factory=list)
    job_ids: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "customers": self.customers,
            "job_ids": self.job_ids,
            "error": self.error,
        }


def schedule_checks(
    repository: ComplianceRepository,
    queue: JobQueue,
    customer_id: str,
    now: datetime | None = None,
) -> list[Job]:
    """
    Enqueue run-check jobs for a customer's due controls.

    A control is due when the customer has no check for it yet, or when the
    latest check's next_check_at is at or before now.

    Returns:
        The enqueued jobs.
    """
    now = now or datetime.now(UTC)
    jobs = []
    for control in repository.list_controls():
        latest = repository.get_latest_check(customer_id, control.id)
        if latest is not None and latest.next_check_at > now:
            continue
        jobs.append(
            queue.enqueue(RUN_CHECK, {"customer_id": customer_id, "control_id": control.id})
        )

    logger.info(f"Scheduled {len(jobs)} compliance checks for customer {customer_id}")
    return jobs


class CheckScheduler:
    """
    Periodic fan-out of schedule-checks jobs.

    The loop wakes every tick_seconds and runs a pass once the interval has
    elapsed; the first pass runs as soon as the thread starts.

    Example:
        scheduler = CheckScheduler(repo, queue, ScheduleInterval.DAILY)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        repository: ComplianceRepository,
        queue: JobQueue,
        interval: ScheduleInterval = ScheduleInterval.DAILY,
        tick_seconds: float = 60,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.interval = interval
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self._scheduler_thread: threading.Thread | None = None
        self.next_run: datetime | None = None
        self.last_run: ScheduleRun | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler_thread is not None and self._scheduler_thread.is_alive()

    def handle_job(self, job: Job) -> dict[str, Any]:
        """Job queue entry point for schedule-checks jobs."""
        customer_id = job.payload["customer_id"]
        jobs = schedule_checks(self.repository, self.queue, customer_id, now=self._clock())
        return {"customer_id": customer_id, "scheduled": [j.id for j in jobs]}

    def run_once(self) -> ScheduleRun:
        """Enqueue one schedule-checks job per active customer."""
        run = ScheduleRun(started_at=self._clock())
        for customer_id in self.repository.list_customers():
            job = self.queue.enqueue(SCHEDULE_CHECKS, {"customer_id": customer_id})
            run.customers.append(customer_id)
            run.job_ids.append(job.id)
        logger.info(f"Scheduler pass enqueued checks for {len(run.customers)} customers")
        self.last_run = run
        return run

    def start(self, foreground: bool = False) -> None:
        """
        Start the scheduler loop.

        Args:
            foreground: If True, run in the calling thread (blocking).

        Raises:
            SchedulerAlreadyRunningError: If the loop is already running.
        """
        if self.is_running:
            raise SchedulerAlreadyRunningError("Scheduler is already running")

        self._stop_event.clear()
        self.next_run = self._clock()

        if foreground:
            self._run_scheduler_loop()
            return

        self._scheduler_thread = threading.Thread(
            target=self._run_scheduler_loop,
            name="proofline-scheduler",
            daemon=True,
        )
        self._scheduler_thread.start()
        logger.info(f"Scheduler started ({self.interval.value})")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the scheduler loop."""
        self._stop_event.set()
        if self._scheduler_thread is not None:
            self._scheduler_thread.join(timeout)
            self._scheduler_thread = None
        logger.info("Scheduler stopped")

    def _run_scheduler_loop(self) -> None:
        logger.debug("Scheduler loop started")

        while not self._stop_event.is_set():
            try:
                now = self._clock()
                if self.next_run is None or now >= self.next_run:
                    self.run_once()
                    self.next_run = now + timedelta(seconds=self.interval.seconds)
                    logger.info(f"Next scheduler pass at {self.next_run.isoformat()}")

                self._stop_event.wait(self.tick_seconds)

            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
                if self.last_run is not None:
                    self.last_run.error = str(e)
                # Wait before retrying
                self._stop_event.wait(self.tick_seconds * 5)

        logger.debug("Scheduler loop stopped")
