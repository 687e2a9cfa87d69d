"""
Scheduler for periodic compliance checks.

Usage:
    from proofline.scheduler import CheckScheduler, ScheduleInterval

    scheduler = CheckScheduler(repository, queue, ScheduleInterval.DAILY)
    scheduler.start()

    # Or a single fan-out, e.g. from cron
    scheduler.run_once()
"""

from proofline.scheduler.checks import (
    CheckScheduler,
    ScheduleInterval,
    ScheduleRun,
    SchedulerAlreadyRunningError,
    SchedulerError,
    schedule_checks,
)

__all__ = [
    "CheckScheduler",
    "ScheduleInterval",
    "ScheduleRun",
    "SchedulerAlreadyRunningError",
    "SchedulerError",
    "schedule_checks",
]
