"""
Remediation for failed compliance checks.

On a FAIL verdict the coordinator runs two independent steps:

    alert:  post an error-severity alert to the customer's Slack webhook
            (from an active slack integration) or the configured default.
    ticket: if the customer has an active jira integration, create a
            remediation Task and link it to the check.

Neither step stops the other. Each step's outcome is returned as a
StepResult (SUCCEEDED, SKIPPED or FAILED with the error) so the caller can
decide what to surface; RemediationOutcome.raise_for_failure() turns a
failed step into an exception.

Ticket Deduplication:
    With deduplicate_tickets enabled (default), a control that already has
    an OPEN ticket gets a new link row pointing at the same external issue
    instead of a second issue.

Resolution:
    When the control next passes, resolve() transitions each open external
    issue to resolved_status ("Done" by default) and marks its local links
    RESOLVED. An issue whose transition fails stays OPEN locally so the next
    passing check tries again. Without an active jira integration the links
    are resolved locally only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from proofline.config.credentials import ConfigCipher
from proofline.storage.models import (
    Control,
    RemediationTicket,
    StoredEvidence,
    TicketStatus,
)
from proofline.storage.repository import ComplianceRepository

logger = logging.getLogger(__name__)

ALERT_STEP = "alert"
TICKET_STEP = "ticket"
RESOLVE_STEP = "resolve"


class RemediationError(Exception):
    """Raised by RemediationOutcome.raise_for_failure() for a failed step."""

    def __init__(self, message: str, steps: list[StepResult]) -> None:
        super().__init__(message)
        self.steps = steps


class StepKind(Enum):
    SUCCEEDED = "SUCCEEDED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class StepResult:
    """
    Outcome of one remediation step.

    Attributes:
        step: "alert", "ticket" or "resolve".
        kind: SUCCEEDED, SKIPPED or FAILED.
        detail: Step output (alert status, issue key) or skip reason.
        error: Error message when FAILED.
        exception: The exception behind a FAILED step.
    """

    step: str
    kind: StepKind
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    @classmethod
    def succeeded(cls, step: str, **detail: Any) -> StepResult:
        return cls(step=step, kind=StepKind.SUCCEEDED, detail=detail)

    @classmethod
    def skipped(cls, step: str, reason: str) -> StepResult:
        return cls(step=step, kind=StepKind.SKIPPED, detail={"reason": reason})

    @classmethod
    def failed(cls, step: str, error: BaseException) -> StepResult:
        return cls(
            step=step,
            kind=StepKind.FAILED,
            error=f"{type(error).__name__}: {error}",
            exception=error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "kind": self.kind.value,
            "detail": self.detail,
            "error": self.error,
        }


@dataclass
class RemediationOutcome:
    """Results of both remediation steps for one failed check."""

    alert: StepResult
    ticket: StepResult
    ticket_record: RemediationTicket | None = None

    @property
    def steps(self) -> list[StepResult]:
        return [self.alert, self.ticket]

    @property
    def failures(self) -> list[StepResult]:
        return [step for step in self.steps if step.kind == StepKind.FAILED]

    @property
    def failed(self) -> bool:
        return bool(self.failures)

    def raise_for_failure(self) -> None:
        """
        Raise if any step failed.

        Raises:
            RemediationError: Chained from the first failed step's exception.
        """
        failures = self.failures
        if not failures:
            return
        message = "; ".join(f"{step.step} failed: {step.error}" for step in failures)
        raise RemediationError(message, failures) from failures[0].exception

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert": self.alert.to_dict(),
            "ticket": self.ticket.to_dict(),
            "ticket_id": self.ticket_record.id if self.ticket_record else None,
        }


class Notifier(Protocol):
    def send_alert(
        self,
        title: str,
        message: str,
        severity: str,
        control_id: str | None = None,
        evidence_id: str | None = None,
        webhook_url: str | None = None,
    ) -> dict[str, Any]: ...


class Ticketing(Protocol):
    def create_ticket(
        self,
        control_id: str,
        title: str,
        description: str,
        project_key: str,
        config: dict[str, Any],
        evidence_id: str | None = None,
    ) -> dict[str, str]: ...

    def update_ticket_status(
        self, issue_key: str, status: str, config: dict[str, Any]
    ) -> dict[str, str]: ...


def describe_failure(evidence: StoredEvidence) -> str:
    """One-line failure reason for alerts and tickets."""
    evidence_type = evidence.evidence_type or "Evidence"
    return f"{evidence_type} evidence {evidence.id} reported status {evidence.status}"


class RemediationCoordinator:
    """
    Sends the alert and opens the ticket for a failed check.

    Example:
        coordinator = RemediationCoordinator(repo, cipher, SlackNotifier(), JiraTicketing())
        outcome = coordinator.remediate("cust-1", control, check.id, evidence)
        if outcome.failed:
            logger.warning(outcome.failures)
    """

    def __init__(
        self,
        repository: ComplianceRepository,
        cipher: ConfigCipher,
        notifier: Notifier,
        ticketing: Ticketing,
        deduplicate_tickets: bool = True,
        default_project_key: str = "COMP",
        resolved_status: str = "Done",
    ) -> None:
        self.repository = repository
        self.cipher = cipher
        self.notifier = notifier
        self.ticketing = ticketing
        self.deduplicate_tickets = deduplicate_tickets
        self.default_project_key = default_project_key
        self.resolved_status = resolved_status

    def remediate(
        self,
        customer_id: str,
        control: Control,
        check_id: str,
        evidence: StoredEvidence,
    ) -> RemediationOutcome:
        """
        Run both remediation steps. Never raises for a step failure.

        Args:
            customer_id: Owning customer.
            control: The failed control.
            check_id: ID of the persisted FAIL check.
            evidence: Evidence the check evaluated.

        Returns:
            RemediationOutcome with one StepResult per step.
        """
        reason = describe_failure(evidence)
        alert = self._send_alert(customer_id, control, evidence, reason)
        ticket, ticket_record = self._open_ticket(
            customer_id, control, check_id, evidence, reason
        )
        return RemediationOutcome(alert=alert, ticket=ticket, ticket_record=ticket_record)

    def customer_webhook(self, customer_id: str) -> str | None:
        """Webhook URL of the customer's active slack integration, if any."""
        slack = self.repository.find_active_integration(customer_id, ["slack"])
        if slack is None:
            return None
        return self.cipher.decrypt_config(slack.encrypted_config).get("webhook_url")

    def _send_alert(
        self,
        customer_id: str,
        control: Control,
        evidence: StoredEvidence,
        reason: str,
    ) -> StepResult:
        try:
            webhook_url = self.customer_webhook(customer_id)
            result = self.notifier.send_alert(
                title=f"Control Failed: {control.id}",
                message=f"{control.title}\n{reason}",
                severity="error",
                control_id=control.id,
                evidence_id=evidence.id,
                webhook_url=webhook_url,
            )
        except Exception as e:
            logger.error(f"Failed to send alert for {customer_id}/{control.id}: {e}")
            return StepResult.failed(ALERT_STEP, e)

        if result.get("status") == "SKIPPED":
            return StepResult.skipped(ALERT_STEP, result.get("reason", "skipped"))
        return StepResult.succeeded(ALERT_STEP, **result)

    def _open_ticket(
        self,
        customer_id: str,
        control: Control,
        check_id: str,
        evidence: StoredEvidence,
        reason: str,
    ) -> tuple[StepResult, RemediationTicket | None]:
        try:
            jira = self.repository.find_active_integration(customer_id, ["jira"])
            if jira is None:
                return StepResult.skipped(TICKET_STEP, "no ticketing integration"), None

            if self.deduplicate_tickets:
                existing = self.repository.find_open_ticket(customer_id, control.id)
                if existing is not None:
                    record = RemediationTicket.create(
                        check_id=check_id,
                        customer_id=customer_id,
                        control_id=control.id,
                        external_issue_key=existing.external_issue_key,
                        external_issue_id=existing.external_issue_id,
                        url=existing.url,
                    )
                    self.repository.save_ticket(record)
                    logger.info(
                        f"Linked check {check_id} to open ticket "
                        f"{existing.external_issue_key}"
                    )
                    return (
                        StepResult.succeeded(
                            TICKET_STEP,
                            issue_key=existing.external_issue_key,
                            deduplicated=True,
                        ),
                        record,
                    )

            config = self.cipher.decrypt_config(jira.encrypted_config)
            issue = self.ticketing.create_ticket(
                control_id=control.id,
                title=control.title,
                description=reason,
                project_key=self.default_project_key,
                config=config,
                evidence_id=evidence.id,
            )
            record = RemediationTicket.create(
                check_id=check_id,
                customer_id=customer_id,
                control_id=control.id,
                external_issue_key=issue["issue_key"],
                external_issue_id=issue.get("issue_id"),
                url=issue.get("url"),
            )
            self.repository.save_ticket(record)
        except Exception as e:
            logger.error(f"Failed to open ticket for {customer_id}/{control.id}: {e}")
            return StepResult.failed(TICKET_STEP, e), None

        return (
            StepResult.succeeded(
                TICKET_STEP, issue_key=record.external_issue_key, deduplicated=False
            ),
            record,
        )

    def resolve(self, customer_id: str, control: Control) -> list[StepResult]:
        """
        Close remediation for a control that passes again.

        Returns:
            One "resolve" StepResult per open external issue; empty when the
            control had no open tickets.
        """
        open_keys = sorted(
            {
                ticket.external_issue_key
                for ticket in self.repository.list_tickets(customer_id, control.id)
                if ticket.status == TicketStatus.OPEN
            }
        )
        if not open_keys:
            return []

        try:
            jira = self.repository.find_active_integration(customer_id, ["jira"])
            config = self.cipher.decrypt_config(jira.encrypted_config) if jira else None
        except Exception as e:
            logger.error(f"Failed to load ticketing config for {customer_id}: {e}")
            return [StepResult.failed(RESOLVE_STEP, e)]

        results = []
        for issue_key in open_keys:
            if config is not None:
                try:
                    self.ticketing.update_ticket_status(issue_key, self.resolved_status, config)
                except Exception as e:
                    logger.error(f"Failed to resolve ticket {issue_key}: {e}")
                    failed = StepResult.failed(RESOLVE_STEP, e)
                    failed.detail["issue_key"] = issue_key
                    results.append(failed)
                    continue
            self.repository.resolve_open_tickets(customer_id, control.id, issue_key=issue_key)
            results.append(
                StepResult.succeeded(
                    RESOLVE_STEP, issue_key=issue_key, transitioned=config is not None
                )
            )
        return results
