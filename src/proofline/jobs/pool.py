"""
Threaded worker pool for the job queue.

Each queue gets a configurable number of worker threads. A worker claims a
job, dispatches it to the handler registered for its job type, and records
the outcome with the queue's outer retry policy. Workers poll with
threading.Event.wait so stop() interrupts an idle worker immediately. A reaper
thread periodically returns jobs left ACTIVE by a crashed process to the
queue.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from proofline.jobs.queue import Job, JobQueue, JobStatus, UnknownJobTypeError

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], dict[str, Any] | None]

DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 900.0


class WorkerPool:
    """
    Runs job handlers on background threads.

    Example:
        pool = WorkerPool(queue, {RUN_CHECK: check_worker.handle_job},
                          concurrency={COMPLIANCE_CHECK_QUEUE: 2})
        pool.start()
        ...
        pool.stop()

    Attributes:
        queue: Job queue to claim from.
        handlers: Mapping of job type to handler.
        concurrency: Mapping of queue name to worker thread count.
        poll_interval: Seconds an idle worker waits before claiming again.
        visibility_timeout: Seconds an ACTIVE job may go without an update
            before it is treated as abandoned and recovered. None disables
            recovery.
        reap_interval: Seconds between stale-job sweeps while running.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, JobHandler],
        concurrency: dict[str, int],
        poll_interval: float = 1.0,
        visibility_timeout: float | None = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
        reap_interval: float = 60.0,
    ) -> None:
        self.queue = queue
        self.handlers = dict(handlers)
        self.concurrency = dict(concurrency)
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self.reap_interval = reap_interval
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Start worker threads for every queue with a positive concurrency."""
        if self.is_running:
            logger.warning("Worker pool already running")
            return

        self._stop_event.clear()
        self._threads = []
        self.recover_stale()
        for queue_name, count in self.concurrency.items():
            for index in range(count):
                thread = threading.Thread(
                    target=self._run_worker_loop,
                    args=(queue_name,),
                    name=f"proofline-{queue_name}-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
            logger.info(f"Started {count} worker(s) on {queue_name}")

        if self.visibility_timeout is not None:
            reaper = threading.Thread(
                target=self._run_reaper_loop, name="proofline-reaper", daemon=True
            )
            reaper.start()
            self._threads.append(reaper)

    def stop(self, timeout: float = 30.0) -> None:
        """Signal workers to stop and wait for in-flight jobs to finish."""
        self._stop_event.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        still_running = [t.name for t in self._threads if t.is_alive()]
        if still_running:
            logger.warning(f"Workers did not stop in time: {', '.join(still_running)}")
        self._threads = []
        logger.info("Worker pool stopped")

    def wait(self) -> None:
        """Block until stop() is called from another thread or a signal handler."""
        while not self._stop_event.wait(1.0):
            pass

    def run_once(self, queue_name: str) -> Job | None:
        """
        Claim and process at most one job synchronously.

        Returns:
            The processed job, or None if the queue had nothing available.
        """
        job = self.queue.claim(queue_name)
        if job is None:
            return None
        self._process(job)
        return job

    def drain(self, queue_names: list[str], max_jobs: int = 1000) -> int:
        """
        Process available jobs on the given queues until none remain.

        Jobs waiting out a retry backoff are not available and are left.

        Returns:
            Number of jobs processed.
        """
        self.recover_stale()
        processed = 0
        while processed < max_jobs:
            progressed = False
            for queue_name in queue_names:
                if self.run_once(queue_name) is not None:
                    processed += 1
                    progressed = True
            if not progressed:
                break
        return processed

    def recover_stale(self) -> int:
        """Return jobs abandoned by a crashed worker to the queue."""
        if self.visibility_timeout is None:
            return 0
        return self.queue.requeue_stale(self.visibility_timeout)

    def _run_reaper_loop(self) -> None:
        while not self._stop_event.wait(self.reap_interval):
            try:
                self.recover_stale()
            except Exception as e:
                logger.error(f"Failed to recover stale jobs: {e}")

    def _run_worker_loop(self, queue_name: str) -> None:
        logger.debug(f"Worker {threading.current_thread().name} started")
        while not self._stop_event.is_set():
            try:
                job = self.queue.claim(queue_name)
            except Exception as e:
                logger.error(f"Failed to claim job from {queue_name}: {e}")
                self._stop_event.wait(self.poll_interval * 5)
                continue

            if job is None:
                self._stop_event.wait(self.poll_interval)
                continue

            self._process(job)
        logger.debug(f"Worker {threading.current_thread().name} exiting")

    def _process(self, job: Job) -> None:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            self.queue.fail(job, UnknownJobTypeError(f"No handler for job type {job.job_type}"))
            return

        start_time = time.time()
        try:
            result = handler(job)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            status = self.queue.fail(job, e)
            if status == JobStatus.FAILED:
                logger.error(
                    f"Job {job.id} ({job.job_type}) failed after {duration_ms:.0f}ms: {e}"
                )
            return

        duration_ms = (time.time() - start_time) * 1000
        self.queue.complete(job, result)
        logger.info(f"Job {job.id} ({job.job_type}) completed in {duration_ms:.0f}ms")
