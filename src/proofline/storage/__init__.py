"""
Storage layer for Proofline.

Provides the SQLite database, the hash-chained evidence ledger, blob storage
for oversized payloads, and the repository for controls, integrations,
checks and remediation tickets.
"""

from proofline.storage.blob_store import (
    BlobReference,
    BlobStore,
    LocalBlobStore,
    S3BlobStore,
    create_blob_store,
)
from proofline.storage.database import (
    Database,
    EvidenceNotFoundError,
    IntegrityError,
    StorageError,
)
from proofline.storage.ledger import EvidenceLedger, compute_evidence_hash
from proofline.storage.models import (
    ChainVerification,
    CheckStatus,
    ComplianceCheck,
    ComplianceSummary,
    Control,
    Frequency,
    Integration,
    IntegrationStatus,
    RemediationTicket,
    StoredEvidence,
    TicketStatus,
)
from proofline.storage.repository import ComplianceRepository

__all__ = [
    # Database
    "Database",
    "StorageError",
    "IntegrityError",
    "EvidenceNotFoundError",
    # Ledger
    "EvidenceLedger",
    "compute_evidence_hash",
    # Blob storage
    "BlobReference",
    "BlobStore",
    "LocalBlobStore",
    "S3BlobStore",
    "create_blob_store",
    # Repository
    "ComplianceRepository",
    # Models
    "ChainVerification",
    "CheckStatus",
    "ComplianceCheck",
    "ComplianceSummary",
    "Control",
    "Frequency",
    "Integration",
    "IntegrationStatus",
    "RemediationTicket",
    "StoredEvidence",
    "TicketStatus",
]
