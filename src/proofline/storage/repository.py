"""
Persistence for controls, integrations, compliance checks and tickets.

The evidence chain has its own store (EvidenceLedger); everything else the
pipeline reads and writes goes through ComplianceRepository.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from proofline.storage.database import Database
from proofline.storage.models import (
    CheckStatus,
    ComplianceCheck,
    ComplianceSummary,
    Control,
    Integration,
    IntegrationStatus,
    RemediationTicket,
    TicketStatus,
)

logger = logging.getLogger(__name__)


class ComplianceRepository:
    """
    SQLite-backed repository for the pipeline's reference and result data.

    Example:
        repo = ComplianceRepository(Database(settings.db_path))
        repo.upsert_controls(SOC2_CONTROLS)
        control = repo.get_control("CC6.1.2")
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    # -------------------------------------------------------------------------
    # Controls
    # -------------------------------------------------------------------------

    def upsert_controls(self, controls: Iterable[Control]) -> int:
        """
        Insert or replace catalog controls.

        Returns:
            Number of controls written.
        """
        count = 0
        with self.database.transaction() as conn:
            for control in controls:
                conn.execute(
                    """
                    INSERT INTO controls (
                        id, title, frequency, integration_type, description, category
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        frequency = excluded.frequency,
                        integration_type = excluded.integration_type,
                        description = excluded.description,
                        category = excluded.category
                    """,
                    (
                        control.id,
                        control.title,
                        control.frequency.value,
                        control.integration_type,
                        control.description,
                        control.category,
                    ),
                )
                count += 1
        logger.info(f"Loaded {count} controls into the catalog")
        return count

    def get_control(self, control_id: str) -> Control | None:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM controls WHERE id = ?", (control_id,)
            ).fetchone()
        return Control.from_row(row) if row else None

    def list_controls(self) -> list[Control]:
        with self.database.connection() as conn:
            rows = conn.execute("SELECT * FROM controls ORDER BY id").fetchall()
        return [Control.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Integrations
    # -------------------------------------------------------------------------

    def save_integration(self, integration: Integration) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO integrations (
                    id, customer_id, integration_type, encrypted_config,
                    status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    integration.id,
                    integration.customer_id,
                    integration.integration_type,
                    integration.encrypted_config,
                    integration.status.value,
                    integration.created_at.isoformat(),
                ),
            )
        logger.info(
            f"Added {integration.integration_type} integration {integration.id} "
            f"for customer {integration.customer_id}"
        )

    def set_integration_status(self, integration_id: str, status: IntegrationStatus) -> bool:
        """
        Activate or deactivate an integration.

        Returns:
            True if the integration exists.
        """
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "UPDATE integrations SET status = ? WHERE id = ?",
                (status.value, integration_id),
            )
        return cursor.rowcount > 0

    def get_integration(self, integration_id: str) -> Integration | None:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM integrations WHERE id = ?", (integration_id,)
            ).fetchone()
        return Integration.from_row(row) if row else None

    def list_integrations(
        self,
        customer_id: str | None = None,
        active_only: bool = False,
    ) -> list[Integration]:
        """List integrations, oldest first, optionally filtered."""
        query = "SELECT * FROM integrations WHERE 1=1"
        params: list[str] = []
        if customer_id is not None:
            query += " AND customer_id = ?"
            params.append(customer_id)
        if active_only:
            query += " AND status = ?"
            params.append(IntegrationStatus.ACTIVE.value)
        query += " ORDER BY created_at, rowid"
        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Integration.from_row(row) for row in rows]

    def find_active_integration(
        self, customer_id: str, integration_types: Iterable[str]
    ) -> Integration | None:
        """
        Find the customer's oldest active integration of the given types.

        Types are tried in order, so callers can express a preference.
        """
        active = self.list_integrations(customer_id, active_only=True)
        for integration_type in integration_types:
            for integration in active:
                if integration.integration_type == integration_type:
                    return integration
        return None

    def list_customers(self) -> list[str]:
        """Customers with at least one active integration."""
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT customer_id FROM integrations WHERE status = ? "
                "ORDER BY customer_id",
                (IntegrationStatus.ACTIVE.value,),
            ).fetchall()
        return [row["customer_id"] for row in rows]

    # -------------------------------------------------------------------------
    # Compliance Checks
    # -------------------------------------------------------------------------

    def save_check(self, check: ComplianceCheck) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO compliance_checks (
                    id, customer_id, control_id, evidence_id, status,
                    checked_at, next_check_at, error_message
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    check.id,
                    check.customer_id,
                    check.control_id,
                    check.evidence_id,
                    check.status.value,
                    check.checked_at.isoformat(),
                    check.next_check_at.isoformat(),
                    check.error_message,
                ),
            )

    def get_check(self, check_id: str) -> ComplianceCheck | None:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM compliance_checks WHERE id = ?", (check_id,)
            ).fetchone()
        return ComplianceCheck.from_row(row) if row else None

    def get_latest_check(
        self, customer_id: str, control_id: str
    ) -> ComplianceCheck | None:
        with self.database.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM compliance_checks
                WHERE customer_id = ? AND control_id = ?
                ORDER BY checked_at DESC, rowid DESC LIMIT 1
                """,
                (customer_id, control_id),
            ).fetchone()
        return ComplianceCheck.from_row(row) if row else None

    def list_checks(
        self,
        customer_id: str,
        control_id: str | None = None,
        status: CheckStatus | None = None,
    ) -> list[ComplianceCheck]:
        """List checks newest first."""
        query = "SELECT * FROM compliance_checks WHERE customer_id = ?"
        params: list[str] = [customer_id]
        if control_id is not None:
            query += " AND control_id = ?"
            params.append(control_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY checked_at DESC, rowid DESC"
        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [ComplianceCheck.from_row(row) for row in rows]

    def summarize_checks(self, customer_id: str) -> ComplianceSummary:
        """Counts of the latest verdict per control for one customer."""
        return ComplianceSummary.from_checks(customer_id, self.list_checks(customer_id))

    # -------------------------------------------------------------------------
    # Remediation Tickets
    # -------------------------------------------------------------------------

    def save_ticket(self, ticket: RemediationTicket) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO remediation_tickets (
                    id, check_id, customer_id, control_id, external_issue_key,
                    external_issue_id, url, status, created_at, resolved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket.id,
                    ticket.check_id,
                    ticket.customer_id,
                    ticket.control_id,
                    ticket.external_issue_key,
                    ticket.external_issue_id,
                    ticket.url,
                    ticket.status.value,
                    ticket.created_at.isoformat(),
                    ticket.resolved_at.isoformat() if ticket.resolved_at else None,
                ),
            )

    def find_open_ticket(
        self, customer_id: str, control_id: str
    ) -> RemediationTicket | None:
        """Most recent OPEN ticket for a control, if any."""
        with self.database.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM remediation_tickets
                WHERE customer_id = ? AND control_id = ? AND status = ?
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (customer_id, control_id, TicketStatus.OPEN.value),
            ).fetchone()
        return RemediationTicket.from_row(row) if row else None

    def list_tickets(
        self, customer_id: str, control_id: str | None = None
    ) -> list[RemediationTicket]:
        query = "SELECT * FROM remediation_tickets WHERE customer_id = ?"
        params: list[str] = [customer_id]
        if control_id is not None:
            query += " AND control_id = ?"
            params.append(control_id)
        query += " ORDER BY created_at, rowid"
        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [RemediationTicket.from_row(row) for row in rows]

    def resolve_open_tickets(
        self, customer_id: str, control_id: str, issue_key: str | None = None
    ) -> int:
        """
        Mark OPEN tickets for a control as RESOLVED.

        Only the local record changes; RemediationCoordinator.resolve() moves
        the external issue. With issue_key, only links to that issue change.

        Returns:
            Number of tickets resolved.
        """
        query = """
            UPDATE remediation_tickets
            SET status = ?, resolved_at = ?
            WHERE customer_id = ? AND control_id = ? AND status = ?
        """
        params = [
            TicketStatus.RESOLVED.value,
            datetime.now(UTC).isoformat(),
            customer_id,
            control_id,
            TicketStatus.OPEN.value,
        ]
        if issue_key is not None:
            query += " AND external_issue_key = ?"
            params.append(issue_key)
        with self.database.transaction() as conn:
            cursor = conn.execute(query, params)
        if cursor.rowcount:
            logger.info(
                f"Resolved {cursor.rowcount} remediation tickets for "
                f"{customer_id}/{control_id}"
            )
        return cursor.rowcount
