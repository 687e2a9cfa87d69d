"""
Durable job queue and the worker pool that drains it.
"""

from proofline.jobs.pool import JobHandler, WorkerPool
from proofline.jobs.queue import (
    COLLECT_AWS,
    COLLECT_GITHUB,
    COLLECT_OKTA,
    COMPLIANCE_CHECK_QUEUE,
    EVIDENCE_COLLECTION_QUEUE,
    JOB_TYPE_QUEUES,
    RUN_CHECK,
    SCHEDULE_CHECKS,
    Job,
    JobQueue,
    JobQueueError,
    JobStatus,
    UnknownJobTypeError,
    collection_job_type,
    is_permanent,
)

__all__ = [
    "COLLECT_AWS",
    "COLLECT_GITHUB",
    "COLLECT_OKTA",
    "COMPLIANCE_CHECK_QUEUE",
    "EVIDENCE_COLLECTION_QUEUE",
    "JOB_TYPE_QUEUES",
    "RUN_CHECK",
    "SCHEDULE_CHECKS",
    "Job",
    "JobHandler",
    "JobQueue",
    "JobQueueError",
    "JobStatus",
    "UnknownJobTypeError",
    "WorkerPool",
    "collection_job_type",
    "is_permanent",
]
