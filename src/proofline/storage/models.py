"""
Data models for compliance storage.

This module defines the dataclasses used to represent controls, integrations,
hash-chained evidence, compliance checks and remediation tickets in the
database.

Schema Design Decisions:
    - IDs are UUIDs stored as strings for portability
    - Timestamps are stored as ISO format strings in UTC
    - JSON data is stored as TEXT in SQLite in canonical form
    - Hashes are SHA-256 hex strings for integrity verification
    - Evidence, checks and tickets are never updated except for the
      ticket status transition OPEN -> RESOLVED
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Frequency(Enum):
    """How often a control must be re-checked."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"


class CheckStatus(Enum):
    """Outcome of evaluating evidence against a control."""

    PASS = "PASS"
    FAIL = "FAIL"
    WARNING = "WARNING"


class IntegrationStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class TicketStatus(Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


def _parse_time(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Control:
    """
    A compliance control from the catalog.

    Attributes:
        id: Control identifier (e.g., "CC6.1.2").
        title: Human-readable control title.
        frequency: How often the control is re-checked.
        integration_type: Collector platform that gathers evidence for this
            control, or None for manual controls.
        description: What the control requires.
        category: Grouping within the framework (e.g., "Logical Access").

    Database Table: controls
    """

    id: str
    title: str
    frequency: Frequency
    integration_type: str | None = None
    description: str = ""
    category: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "title": self.title,
            "frequency": self.frequency.value,
            "integration_type": self.integration_type,
            "description": self.description,
            "category": self.category,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Control:
        """Create from a database row."""
        return cls(
            id=row["id"],
            title=row["title"],
            frequency=Frequency(row["frequency"]),
            integration_type=row["integration_type"],
            description=row["description"] or "",
            category=row["category"] or "",
        )


@dataclass
class Integration:
    """
    A customer's connection to an external system.

    The configuration (tokens, keys, URLs) is only held as a Fernet token and
    is decrypted by the workers right before use.

    Attributes:
        id: Unique identifier.
        customer_id: Owning customer.
        integration_type: aws, github, okta, jira or slack.
        encrypted_config: Fernet token of the JSON config.
        status: ACTIVE or INACTIVE.
        created_at: When the integration was added (UTC).

    Database Table: integrations
    """

    id: str
    customer_id: str
    integration_type: str
    encrypted_config: str
    status: IntegrationStatus
    created_at: datetime

    @classmethod
    def create(
        cls,
        customer_id: str,
        integration_type: str,
        encrypted_config: str,
        status: IntegrationStatus = IntegrationStatus.ACTIVE,
    ) -> Integration:
        """Create a new Integration with auto-generated ID and timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            integration_type=integration_type,
            encrypted_config=encrypted_config,
            status=status,
            created_at=datetime.now(UTC),
        )

    @property
    def is_active(self) -> bool:
        return self.status == IntegrationStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting the encrypted config."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "integration_type": self.integration_type,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Integration:
        """Create from a database row."""
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            integration_type=row["integration_type"],
            encrypted_config=row["encrypted_config"],
            status=IntegrationStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


@dataclass
class StoredEvidence:
    """
    One link in a (customer, control) evidence chain.

    Attributes:
        id: Unique identifier.
        customer_id: Owning customer.
        control_id: Control the evidence supports.
        integration_id: Integration the evidence was collected through.
        collected_at: When the evidence was stored (UTC).
        hash: SHA-256 over the canonical {customer_id, control_id, data,
            collected_at} serialization.
        previous_hash: Hash of the prior record in the chain, None for the
            first record.
        data: The inline payload, or an offload descriptor when the payload
            was moved to blob storage.
        offloaded: True when data is an offload descriptor.
        job_id: ID of the collection job that produced the evidence.

    Database Table: evidence
    """

    id: str
    customer_id: str
    control_id: str
    integration_id: str | None
    collected_at: datetime
    hash: str
    previous_hash: str | None
    data: dict[str, Any]
    offloaded: bool = False
    job_id: str | None = None

    @property
    def status(self) -> str | None:
        """The collector status carried by the payload or descriptor."""
        value = self.data.get("status")
        return str(value) if value is not None else None

    @property
    def evidence_type(self) -> str | None:
        value = self.data.get("type")
        return str(value) if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for export."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "control_id": self.control_id,
            "integration_id": self.integration_id,
            "collected_at": self.collected_at.isoformat(),
            "hash": self.hash,
            "previous_hash": self.previous_hash,
            "data": self.data,
            "offloaded": self.offloaded,
            "job_id": self.job_id,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> StoredEvidence:
        """Create from a database row."""
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            control_id=row["control_id"],
            integration_id=row["integration_id"],
            collected_at=datetime.fromisoformat(row["collected_at"]),
            hash=row["hash"],
            previous_hash=row["previous_hash"],
            data=json.loads(row["data_json"]),
            offloaded=bool(row["offloaded"]),
            job_id=row["job_id"],
        )


@dataclass
class ComplianceCheck:
    """
    Result of evaluating one piece of evidence against a control.

    Attributes:
        id: Unique identifier.
        customer_id: Owning customer.
        control_id: Control that was evaluated.
        evidence_id: Evidence the evaluation used.
        status: PASS, FAIL or WARNING.
        checked_at: When the check ran (UTC).
        next_check_at: When the control is next due.
        error_message: Failure detail for FAIL/WARNING checks, if any.

    Database Table: compliance_checks
    """

    id: str
    customer_id: str
    control_id: str
    evidence_id: str
    status: CheckStatus
    checked_at: datetime
    next_check_at: datetime
    error_message: str | None = None

    @classmethod
    def create(
        cls,
        customer_id: str,
        control_id: str,
        evidence_id: str,
        status: CheckStatus,
        checked_at: datetime,
        next_check_at: datetime,
        error_message: str | None = None,
    ) -> ComplianceCheck:
        """Create a new ComplianceCheck with auto-generated ID."""
        return cls(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            control_id=control_id,
            evidence_id=evidence_id,
            status=status,
            checked_at=checked_at,
            next_check_at=next_check_at,
            error_message=error_message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "control_id": self.control_id,
            "evidence_id": self.evidence_id,
            "status": self.status.value,
            "checked_at": self.checked_at.isoformat(),
            "next_check_at": self.next_check_at.isoformat(),
            "error_message": self.error_message,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ComplianceCheck:
        """Create from a database row."""
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            control_id=row["control_id"],
            evidence_id=row["evidence_id"],
            status=CheckStatus(row["status"]),
            checked_at=datetime.fromisoformat(row["checked_at"]),
            next_check_at=datetime.fromisoformat(row["next_check_at"]),
            error_message=row["error_message"],
        )


@dataclass
class ComplianceSummary:
    """
    Latest verdict counts across a customer's controls.

    Only the newest check of each control is counted, so a control that
    failed yesterday and passes today counts once, as passed.
    """

    customer_id: str
    passed: int = 0
    failed: int = 0
    warnings: int = 0

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.warnings

    @property
    def compliance_rate(self) -> float:
        return self.passed / self.total if self.total else 0.0

    @classmethod
    def from_checks(cls, customer_id: str, checks: list[ComplianceCheck]) -> ComplianceSummary:
        """Summarize checks ordered newest first, as list_checks() returns them."""
        summary = cls(customer_id=customer_id)
        seen: set[str] = set()
        for check in checks:
            if check.control_id in seen:
                continue
            seen.add(check.control_id)
            if check.status == CheckStatus.PASS:
                summary.passed += 1
            elif check.status == CheckStatus.FAIL:
                summary.failed += 1
            else:
                summary.warnings += 1
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "total_checks": self.total,
            "passed_checks": self.passed,
            "failed_checks": self.failed,
            "warning_checks": self.warnings,
            "compliance_rate": self.compliance_rate,
        }


@dataclass
class RemediationTicket:
    """
    Link between a failed check and an issue in the ticketing system.

    Several checks may share the same external issue when an open ticket is
    reused for a control that keeps failing.

    Database Table: remediation_tickets
    """

    id: str
    check_id: str
    customer_id: str
    control_id: str
    external_issue_key: str
    external_issue_id: str | None
    url: str | None
    status: TicketStatus
    created_at: datetime
    resolved_at: datetime | None = None

    @classmethod
    def create(
        cls,
        check_id: str,
        customer_id: str,
        control_id: str,
        external_issue_key: str,
        external_issue_id: str | None = None,
        url: str | None = None,
    ) -> RemediationTicket:
        """Create a new OPEN ticket link with auto-generated ID and timestamp."""
        return cls(
            id=str(uuid.uuid4()),
            check_id=check_id,
            customer_id=customer_id,
            control_id=control_id,
            external_issue_key=external_issue_key,
            external_issue_id=external_issue_id,
            url=url,
            status=TicketStatus.OPEN,
            created_at=datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "check_id": self.check_id,
            "customer_id": self.customer_id,
            "control_id": self.control_id,
            "external_issue_key": self.external_issue_key,
            "external_issue_id": self.external_issue_id,
            "url": self.url,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RemediationTicket:
        """Create from a database row."""
        return cls(
            id=row["id"],
            check_id=row["check_id"],
            customer_id=row["customer_id"],
            control_id=row["control_id"],
            external_issue_key=row["external_issue_key"],
            external_issue_id=row["external_issue_id"],
            url=row["url"],
            status=TicketStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            resolved_at=_parse_time(row["resolved_at"]),
        )


@dataclass
class ChainVerification:
    """
    Result of walking one evidence chain.

    Attributes:
        customer_id: Customer the chain belongs to.
        control_id: Control the chain belongs to.
        length: Number of records examined.
        valid: True if every hash and link checks out.
        broken_at: ID of the first record that failed verification.
        reason: Why verification failed.
    """

    customer_id: str
    control_id: str
    length: int = 0
    valid: bool = True
    broken_at: str | None = None
    reason: str | None = None
    checked_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "control_id": self.control_id,
            "length": self.length,
            "valid": self.valid,
            "broken_at": self.broken_at,
            "reason": self.reason,
        }
