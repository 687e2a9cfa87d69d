"""
Tests for check scheduling: due-control selection and the scheduler loop.
"""

from __future__ import annotations

import shutil
import tempfile
import time
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path

from proofline.jobs import COMPLIANCE_CHECK_QUEUE, RUN_CHECK, SCHEDULE_CHECKS, JobQueue
from proofline.scheduler import (
    CheckScheduler,
    ScheduleInterval,
    SchedulerAlreadyRunningError,
    schedule_checks,
)
from proofline.storage import (
    CheckStatus,
    ComplianceCheck,
    ComplianceRepository,
    Control,
    Database,
    EvidenceLedger,
    Frequency,
    Integration,
    IntegrationStatus,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class TestScheduleInterval(unittest.TestCase):
    def test_seconds(self) -> None:
        self.assertEqual(ScheduleInterval.HOURLY.seconds, 3600)
        self.assertEqual(ScheduleInterval.DAILY.seconds, 86400)
        self.assertEqual(ScheduleInterval.WEEKLY.seconds, 604800)

    def test_from_string(self) -> None:
        self.assertEqual(ScheduleInterval.from_string(" Weekly "), ScheduleInterval.WEEKLY)
        with self.assertRaises(ValueError):
            ScheduleInterval.from_string("monthly")


class SchedulerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.database = Database(Path(self.temp_dir) / "proofline.db")
        self.repository = ComplianceRepository(self.database)
        self.repository.upsert_controls(
            [
                Control("CC6.1.2", "MFA", Frequency.DAILY, "aws"),
                Control("CC6.7.1", "Encryption", Frequency.DAILY, "aws"),
                Control("CC8.1.1", "Branch Protection", Frequency.DAILY, "github"),
            ]
        )
        self.ledger = EvidenceLedger(self.database)
        self.queue = JobQueue(self.database)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def record_check(self, control_id: str, next_check_at: datetime) -> None:
        evidence = self.ledger.store_evidence(
            "cust-1", control_id, None, {"type": "T", "status": "PASS", "data": {}}
        )
        self.repository.save_check(
            ComplianceCheck.create(
                "cust-1",
                control_id,
                evidence.id,
                CheckStatus.PASS,
                next_check_at - timedelta(days=1),
                next_check_at,
            )
        )

    def add_customer(self, customer_id: str, status: IntegrationStatus = IntegrationStatus.ACTIVE) -> None:
        self.repository.save_integration(Integration.create(customer_id, "aws", "token", status))


class TestScheduleChecks(SchedulerTestCase):
    """Tests for selecting due controls."""

    def test_never_checked_controls_are_due(self) -> None:
        jobs = schedule_checks(self.repository, self.queue, "cust-1", now=NOW)

        self.assertEqual(
            [job.payload["control_id"] for job in jobs], ["CC6.1.2", "CC6.7.1", "CC8.1.1"]
        )
        self.assertTrue(all(job.job_type == RUN_CHECK for job in jobs))
        self.assertEqual(jobs[0].payload["customer_id"], "cust-1")

    def test_not_yet_due_control_skipped(self) -> None:
        self.record_check("CC6.1.2", NOW + timedelta(hours=1))
        self.record_check("CC6.7.1", NOW - timedelta(hours=1))
        self.record_check("CC8.1.1", NOW)

        jobs = schedule_checks(self.repository, self.queue, "cust-1", now=NOW)

        self.assertEqual([job.payload["control_id"] for job in jobs], ["CC6.7.1", "CC8.1.1"])

    def test_due_dates_are_per_customer(self) -> None:
        self.record_check("CC6.1.2", NOW + timedelta(days=1))

        jobs = schedule_checks(self.repository, self.queue, "cust-2", now=NOW)

        self.assertEqual(len(jobs), 3)


class TestCheckScheduler(SchedulerTestCase):
    """Tests for the customer fan-out and the scheduler thread."""

    def test_run_once_enqueues_per_active_customer(self) -> None:
        self.add_customer("cust-1")
        self.add_customer("cust-2")
        self.add_customer("cust-3", IntegrationStatus.INACTIVE)
        scheduler = CheckScheduler(self.repository, self.queue, clock=lambda: NOW)

        run = scheduler.run_once()

        self.assertEqual(run.customers, ["cust-1", "cust-2"])
        jobs = self.queue.list_jobs(job_type=SCHEDULE_CHECKS)
        self.assertEqual([job.id for job in jobs], run.job_ids)
        self.assertEqual(jobs[0].payload, {"customer_id": "cust-1"})
        self.assertIs(scheduler.last_run, run)
        self.assertEqual(run.to_dict()["started_at"], NOW.isoformat())

    def test_handle_job_schedules_customer(self) -> None:
        scheduler = CheckScheduler(self.repository, self.queue, clock=lambda: NOW)
        job = self.queue.enqueue(SCHEDULE_CHECKS, {"customer_id": "cust-1"})

        result = scheduler.handle_job(job)

        self.assertEqual(result["customer_id"], "cust-1")
        self.assertEqual(len(result["scheduled"]), 3)
        self.assertEqual(len(self.queue.list_jobs(job_type=RUN_CHECK)), 3)

    def test_thread_runs_first_pass_immediately(self) -> None:
        self.add_customer("cust-1")
        scheduler = CheckScheduler(
            self.repository, self.queue, ScheduleInterval.HOURLY, tick_seconds=0.05
        )

        scheduler.start()
        try:
            self.assertTrue(scheduler.is_running)
            with self.assertRaises(SchedulerAlreadyRunningError):
                scheduler.start()

            deadline = time.monotonic() + 5
            while scheduler.last_run is None and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            scheduler.stop(timeout=5)

        self.assertFalse(scheduler.is_running)
        self.assertEqual(len(self.queue.list_jobs(queue=COMPLIANCE_CHECK_QUEUE)), 1)
        assert scheduler.next_run is not None and scheduler.last_run is not None
        self.assertGreater(scheduler.next_run, scheduler.last_run.started_at)


if __name__ == "__main__":
    unittest.main()
