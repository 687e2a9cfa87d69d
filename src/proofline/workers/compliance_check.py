"""
Compliance check worker.

Handles run-check jobs. Evaluates the latest (or a given) evidence record for
a control, persists the verdict with the control's next due date, and hands
FAIL verdicts to the remediation coordinator.

When the control has no evidence yet, the worker enqueues one collection job
for the customer's best matching integration and returns a deferred result
without writing a check. The scheduler picks the control up again on its
next pass, by which time the collected evidence is in the ledger.

Verdict Mapping:
    evidence status "PASS" -> PASS
    evidence status "FAIL" -> FAIL
    anything else          -> WARNING
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from proofline.controls.catalog import collector_platforms, next_check_at
from proofline.jobs.queue import Job, JobQueue, collection_job_type
from proofline.remediation.coordinator import (
    RemediationCoordinator,
    RemediationOutcome,
    StepResult,
)
from proofline.storage.database import EvidenceNotFoundError
from proofline.storage.ledger import EvidenceLedger
from proofline.storage.models import CheckStatus, ComplianceCheck, Control, StoredEvidence
from proofline.storage.repository import ComplianceRepository
from proofline.workers.errors import ControlNotFoundError, NoActiveIntegrationError

logger = logging.getLogger(__name__)


def evaluate_status(evidence_status: str | None) -> CheckStatus:
    """Map an evidence status to a check verdict."""
    if evidence_status == "PASS":
        return CheckStatus.PASS
    if evidence_status == "FAIL":
        return CheckStatus.FAIL
    return CheckStatus.WARNING


@dataclass
class CheckResult:
    """
    Result of a run-check job.

    A deferred result carries the collection job that was enqueued and no
    check; otherwise status and check_id describe the persisted check.
    """

    deferred: bool = False
    status: CheckStatus | None = None
    check_id: str | None = None
    evidence_id: str | None = None
    next_check_at: datetime | None = None
    remediation: RemediationOutcome | None = None
    resolution: list[StepResult] = field(default_factory=list)
    collection_job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deferred": self.deferred,
            "status": self.status.value if self.status else None,
            "check_id": self.check_id,
            "evidence_id": self.evidence_id,
            "next_check_at": self.next_check_at.isoformat() if self.next_check_at else None,
            "remediation": self.remediation.to_dict() if self.remediation else None,
            "resolution": [step.to_dict() for step in self.resolution],
            "collection_job_id": self.collection_job_id,
        }


class ComplianceCheckWorker:
    """
    Evaluates evidence and records compliance checks.

    Example:
        worker = ComplianceCheckWorker(repo, ledger, queue, coordinator)
        result = worker.handle({"customer_id": "cust-1", "control_id": "CC6.1.2"})
        if result.deferred:
            print(f"Collecting evidence in job {result.collection_job_id}")
    """

    def __init__(
        self,
        repository: ComplianceRepository,
        ledger: EvidenceLedger,
        queue: JobQueue,
        coordinator: RemediationCoordinator,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.queue = queue
        self.coordinator = coordinator
        self._clock = clock

    def handle_job(self, job: Job) -> dict[str, Any]:
        """Job queue entry point."""
        return self.handle(job.payload).to_dict()

    def handle(self, payload: dict[str, Any]) -> CheckResult:
        """
        Run one compliance check.

        Args:
            payload: {customer_id, control_id, evidence_id?}.

        Returns:
            CheckResult, deferred if evidence collection was enqueued.

        Raises:
            ControlNotFoundError: If the control is not in the catalog.
            EvidenceNotFoundError: If a given evidence ID does not exist or
                belongs to another customer or control.
            NoActiveIntegrationError: If evidence is missing and no active
                integration can collect it.
        """
        customer_id = payload["customer_id"]
        control_id = payload["control_id"]

        control = self.repository.get_control(control_id)
        if control is None:
            raise ControlNotFoundError(f"Control not found: {control_id}")

        evidence = self._load_evidence(customer_id, control.id, payload.get("evidence_id"))
        if evidence is None:
            return self._defer(customer_id, control)

        status = evaluate_status(evidence.status)
        checked_at = self._clock()
        check = ComplianceCheck.create(
            customer_id=customer_id,
            control_id=control.id,
            evidence_id=evidence.id,
            status=status,
            checked_at=checked_at,
            next_check_at=next_check_at(checked_at, control.frequency),
            error_message=(
                None if status == CheckStatus.PASS
                else f"Evidence reported status {evidence.status}"
            ),
        )
        self.repository.save_check(check)
        logger.info(f"Check {check.id} for {customer_id}/{control.id}: {status.value}")

        remediation = None
        resolution: list[StepResult] = []
        if status == CheckStatus.FAIL:
            remediation = self.coordinator.remediate(customer_id, control, check.id, evidence)
            for step in remediation.steps:
                if step.error:
                    logger.warning(
                        f"Remediation {step.step} for check {check.id} failed: {step.error}"
                    )
                else:
                    logger.info(
                        f"Remediation {step.step} for check {check.id}: {step.kind.value}"
                    )
        elif status == CheckStatus.PASS:
            resolution = self.coordinator.resolve(customer_id, control)
            for step in resolution:
                if step.error:
                    logger.warning(
                        f"Resolving {step.detail.get('issue_key')} for check {check.id} "
                        f"failed: {step.error}"
                    )

        return CheckResult(
            status=status,
            check_id=check.id,
            evidence_id=evidence.id,
            next_check_at=check.next_check_at,
            remediation=remediation,
            resolution=resolution,
        )

    def _load_evidence(
        self, customer_id: str, control_id: str, evidence_id: str | None
    ) -> StoredEvidence | None:
        if evidence_id is None:
            return self.ledger.get_latest_evidence(customer_id, control_id)

        evidence = self.ledger.get_evidence(evidence_id)
        if (
            evidence is None
            or evidence.customer_id != customer_id
            or evidence.control_id != control_id
        ):
            raise EvidenceNotFoundError(
                f"Evidence {evidence_id} not found for {customer_id}/{control_id}"
            )
        return evidence

    def _defer(self, customer_id: str, control: Control) -> CheckResult:
        platforms = collector_platforms()
        preferred = [control.integration_type] if control.integration_type in platforms else []
        preferred += [p for p in platforms if p not in preferred]

        integration = self.repository.find_active_integration(customer_id, preferred)
        if integration is None:
            raise NoActiveIntegrationError(
                f"No active integration can collect evidence for "
                f"{customer_id}/{control.id}"
            )

        job_type = collection_job_type(integration.integration_type)
        job = self.queue.enqueue(
            job_type,
            {
                "customer_id": customer_id,
                "integration_id": integration.id,
                "control_id": control.id,
                "job_type": job_type,
            },
        )
        logger.info(
            f"No evidence for {customer_id}/{control.id}, "
            f"enqueued {job_type} job {job.id}"
        )
        return CheckResult(deferred=True, collection_job_id=job.id)
