"""
Queue consumers for the collect -> evaluate -> remediate pipeline.
"""

from proofline.workers.compliance_check import (
    CheckResult,
    ComplianceCheckWorker,
    evaluate_status,
)
from proofline.workers.errors import (
    ControlNotFoundError,
    IntegrationNotFoundError,
    NoActiveIntegrationError,
    WorkerError,
)
from proofline.workers.evidence_collection import EvidenceCollectionWorker

__all__ = [
    "CheckResult",
    "ComplianceCheckWorker",
    "ControlNotFoundError",
    "EvidenceCollectionWorker",
    "IntegrationNotFoundError",
    "NoActiveIntegrationError",
    "WorkerError",
    "evaluate_status",
]
