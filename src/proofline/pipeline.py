"""
Wiring of the collect -> evaluate -> remediate pipeline.

build_pipeline() turns Settings into a ready set of components: database,
ledger, repository, job queue, workers, scheduler, remediation coordinator
and the worker pool with a handler for every job type. The CLI and the
tests both go through it, so there is one place where the pieces meet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from proofline.collectors.base import BaseCollector, CollectorRegistry
from proofline.config.credentials import ConfigCipher
from proofline.config.settings import Settings
from proofline.controls.catalog import collector_platforms, validate_catalog
from proofline.health import BreakerOwner, IntegrationHealthMonitor
from proofline.integrations.jira import JiraTicketing
from proofline.integrations.slack import SlackNotifier
from proofline.jobs.pool import WorkerPool
from proofline.jobs.queue import (
    COLLECT_AWS,
    COLLECT_GITHUB,
    COLLECT_OKTA,
    COMPLIANCE_CHECK_QUEUE,
    EVIDENCE_COLLECTION_QUEUE,
    RUN_CHECK,
    SCHEDULE_CHECKS,
    JobQueue,
)
from proofline.remediation.coordinator import Notifier, RemediationCoordinator, Ticketing
from proofline.resilience import (
    BreakerStateStore,
    CircuitBreaker,
    RetryPolicy,
    SqliteBreakerStore,
)
from proofline.scheduler.checks import CheckScheduler, ScheduleInterval
from proofline.storage.blob_store import BlobStore, create_blob_store
from proofline.storage.database import Database
from proofline.storage.ledger import EvidenceLedger
from proofline.storage.repository import ComplianceRepository
from proofline.workers.compliance_check import ComplianceCheckWorker
from proofline.workers.evidence_collection import CollectorFactory, EvidenceCollectionWorker

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """All pipeline components built from one Settings instance."""

    settings: Settings
    database: Database
    repository: ComplianceRepository
    ledger: EvidenceLedger
    queue: JobQueue
    cipher: ConfigCipher
    notifier: Notifier
    ticketing: Ticketing
    coordinator: RemediationCoordinator
    collection_worker: EvidenceCollectionWorker
    check_worker: ComplianceCheckWorker
    scheduler: CheckScheduler
    pool: WorkerPool

    def health_monitor(self) -> IntegrationHealthMonitor:
        """
        Monitor over the collector, notifier and ticketing breakers.

        Breaker state is per process unless shared_breaker_state is enabled.
        """
        owners: dict[str, BreakerOwner] = {
            platform: self.collection_worker.get_collector(platform)
            for platform in collector_platforms()
        }
        for owner in (self.notifier, self.ticketing):
            name = getattr(owner, "platform", None)
            if name and hasattr(owner, "get_circuit_breaker_status"):
                owners[name] = owner
        notifier = self.notifier if hasattr(self.notifier, "send_health_warning") else None
        return IntegrationHealthMonitor(owners, notifier=notifier)


def build_pipeline(
    settings: Settings,
    cipher: ConfigCipher,
    collector_factory: CollectorFactory | None = None,
    notifier: Notifier | None = None,
    ticketing: Ticketing | None = None,
    blob_store: BlobStore | None = None,
    db_path: Path | None = None,
) -> Pipeline:
    """
    Build the pipeline.

    Args:
        settings: Loaded configuration.
        cipher: Cipher for integration configs.
        collector_factory: Platform -> collector; defaults to the registry
            with breakers configured from settings.
        notifier: Alert channel; defaults to SlackNotifier.
        ticketing: Ticketing system; defaults to JiraTicketing.
        blob_store: Offload storage; defaults to the configured backend.
        db_path: Database path; defaults to settings.db_path.

    Raises:
        CatalogError: If the control catalog references a missing collector
            aspect.
    """
    validate_catalog()

    database = Database(db_path or settings.db_path)
    resilience = settings.resilience
    retry_policy = RetryPolicy(
        max_attempts=resilience.max_attempts,
        base_delay_ms=resilience.base_delay_ms,
    )
    breaker_store: BreakerStateStore | None = None
    if resilience.shared_breaker_state:
        breaker_store = SqliteBreakerStore(database.db_path)

    def breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(
            failure_threshold=resilience.failure_threshold,
            reset_timeout_ms=resilience.reset_timeout_ms,
            name=name,
            store=breaker_store,
        )

    def default_collector_factory(platform: str) -> BaseCollector:
        return CollectorRegistry.create(
            platform,
            retry_policy=retry_policy,
            failure_threshold=resilience.failure_threshold,
            reset_timeout_ms=resilience.reset_timeout_ms,
            breaker_store=breaker_store,
        )

    if blob_store is None:
        blob = settings.blob_storage
        blob_store = create_blob_store(blob.backend, blob.local_dir, blob.bucket, blob.region)

    repository = ComplianceRepository(database)
    ledger = EvidenceLedger(
        database,
        blob_store,
        offload_threshold_bytes=settings.ledger.offload_threshold_bytes,
        blob_breaker=breaker("blob-storage"),
        retry_policy=retry_policy,
    )
    queue = JobQueue(
        database,
        max_attempts=settings.queue.max_attempts,
        backoff_base_ms=settings.queue.backoff_base_ms,
    )

    if notifier is None:
        notifier = SlackNotifier(
            default_webhook_url=settings.notifications.slack_webhook_url,
            circuit_breaker=breaker("notifier:slack"),
            retry_policy=retry_policy,
        )
    if ticketing is None:
        ticketing = JiraTicketing(
            circuit_breaker=breaker("ticketing:jira"),
            retry_policy=retry_policy,
        )

    coordinator = RemediationCoordinator(
        repository,
        cipher,
        notifier,
        ticketing,
        deduplicate_tickets=settings.remediation.deduplicate_tickets,
        default_project_key=settings.remediation.default_project_key,
        resolved_status=settings.remediation.resolved_status,
    )
    collection_worker = EvidenceCollectionWorker(
        repository,
        ledger,
        cipher,
        collector_factory=collector_factory or default_collector_factory,
    )
    check_worker = ComplianceCheckWorker(repository, ledger, queue, coordinator)
    scheduler = CheckScheduler(
        repository,
        queue,
        interval=ScheduleInterval.from_string(settings.scheduler.interval),
    )

    pool = WorkerPool(
        queue,
        handlers={
            COLLECT_AWS: collection_worker.handle_job,
            COLLECT_GITHUB: collection_worker.handle_job,
            COLLECT_OKTA: collection_worker.handle_job,
            RUN_CHECK: check_worker.handle_job,
            SCHEDULE_CHECKS: scheduler.handle_job,
        },
        concurrency={
            EVIDENCE_COLLECTION_QUEUE: settings.workers.evidence_collection,
            COMPLIANCE_CHECK_QUEUE: settings.workers.compliance_check,
        },
        poll_interval=settings.queue.poll_interval_seconds,
        visibility_timeout=settings.queue.visibility_timeout_seconds,
    )

    logger.debug(f"Pipeline built on {database.db_path}")
    return Pipeline(
        settings=settings,
        database=database,
        repository=repository,
        ledger=ledger,
        queue=queue,
        cipher=cipher,
        notifier=notifier,
        ticketing=ticketing,
        coordinator=coordinator,
        collection_worker=collection_worker,
        check_worker=check_worker,
        scheduler=scheduler,
        pool=pool,
    )
