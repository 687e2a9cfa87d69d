"""
Evidence collection worker.

Handles collect-aws, collect-github and collect-okta jobs:

    1. Load the integration and confirm it belongs to the job's customer.
    2. Load the control and resolve which collector aspect covers it.
    3. Decrypt the integration config.
    4. Collect through the platform collector (circuit breaker + retry).
    5. Append the result to the evidence ledger, keyed by the job ID so a
       redelivered job does not append twice.

Errors propagate to the job queue, which applies the outer retry policy.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from proofline.collectors.base import BaseCollector, CollectorRegistry
from proofline.config.credentials import ConfigCipher
from proofline.controls.catalog import MatchKind, collector_platforms, resolve_capability
from proofline.jobs.queue import Job
from proofline.storage.ledger import EvidenceLedger
from proofline.storage.repository import ComplianceRepository
from proofline.workers.errors import ControlNotFoundError, IntegrationNotFoundError

logger = logging.getLogger(__name__)

CollectorFactory = Callable[[str], BaseCollector]


class EvidenceCollectionWorker:
    """
    Collects evidence for one control from one integration.

    One collector instance is kept per platform so its circuit breaker sees
    every call the worker makes to that platform.

    Example:
        worker = EvidenceCollectionWorker(repo, ledger, cipher)
        result = worker.handle({"customer_id": "cust-1",
                                "integration_id": integration.id,
                                "control_id": "CC6.1.2",
                                "job_type": "collect-aws"}, job_id=job.id)
    """

    def __init__(
        self,
        repository: ComplianceRepository,
        ledger: EvidenceLedger,
        cipher: ConfigCipher,
        collector_factory: CollectorFactory | None = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.cipher = cipher
        self._collector_factory = collector_factory or CollectorRegistry.create
        self._collectors: dict[str, BaseCollector] = {}
        self._collectors_lock = threading.Lock()

    def get_collector(self, platform: str) -> BaseCollector:
        with self._collectors_lock:
            if platform not in self._collectors:
                self._collectors[platform] = self._collector_factory(platform)
            return self._collectors[platform]

    @property
    def collectors(self) -> dict[str, BaseCollector]:
        """Collector instances created so far, by platform."""
        with self._collectors_lock:
            return dict(self._collectors)

    def handle_job(self, job: Job) -> dict[str, Any]:
        """Job queue entry point."""
        return self.handle(job.payload, job_id=job.id)

    def handle(self, payload: dict[str, Any], job_id: str | None = None) -> dict[str, Any]:
        """
        Collect and store evidence.

        Args:
            payload: {customer_id, integration_id, control_id, job_type}.
            job_id: Producing job, used for idempotent ledger appends.

        Returns:
            {"evidence_id", "status", "job_id"}.

        Raises:
            IntegrationNotFoundError: If the integration is missing or owned
                by another customer.
            ControlNotFoundError: If the control is not in the catalog.
            CatalogError: If the integration's platform cannot collect.
            CollectorError: If collection fails after retries.
            CircuitOpenError: If the platform's breaker is open.
        """
        customer_id = payload["customer_id"]
        integration_id = payload["integration_id"]
        control_id = payload["control_id"]

        integration = self.repository.get_integration(integration_id)
        if integration is None or integration.customer_id != customer_id:
            raise IntegrationNotFoundError(
                f"Integration {integration_id} not found for customer {customer_id}"
            )

        control = self.repository.get_control(control_id)
        if control is None:
            raise ControlNotFoundError(f"Control not found: {control_id}")

        platform = integration.integration_type
        resolution = resolve_capability(control.id, platform)
        if resolution.match != MatchKind.EXACT:
            logger.debug(
                f"Control {control.id} resolved to {resolution.capability} "
                f"by {resolution.match.value} match"
            )

        config = self.cipher.decrypt_config(integration.encrypted_config)
        collector = self.get_collector(platform)

        logger.info(
            f"Collecting {resolution.capability} evidence for "
            f"{customer_id}/{control.id}"
        )
        evidence = collector.collect(resolution.capability.aspect, config)

        record = self.ledger.store_evidence(
            customer_id=customer_id,
            control_id=control.id,
            integration_id=integration.id,
            payload=evidence.to_payload(),
            job_id=job_id,
        )

        return {
            "evidence_id": record.id,
            "status": record.status,
            "job_id": job_id,
        }

    def health_scores(self, customer_id: str) -> dict[str, float]:
        """
        Health score per collector platform for one customer.

        Integrations whose platform has no collector (jira, slack) are
        skipped. When a customer has several integrations of one platform
        the lowest score is kept.
        """
        scores: dict[str, float] = {}
        for integration in self.repository.list_integrations(customer_id, active_only=True):
            platform = integration.integration_type
            if platform not in collector_platforms():
                continue
            config = self.cipher.decrypt_config(integration.encrypted_config)
            score = self.get_collector(platform).health_score(config)
            scores[platform] = min(score, scores.get(platform, score))
        return scores
