"""
Slack notifications for compliance alerts.

Alerts, health warnings and the daily compliance summary are posted to an
incoming webhook as a single colored attachment.
A call without a webhook URL (per call or configured default) is skipped and
reported as such rather than treated as an error.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import requests

from proofline.collectors.base import (
    AuthenticationError,
    CollectorConnectionError,
    raise_for_api_status,
)
from proofline.resilience import CircuitBreaker, RetryPolicy, call_with_resilience
from proofline.storage.models import ComplianceSummary

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    "info": "#36a64f",
    "warning": "#ff9900",
    "error": "#ff0000",
}

STATUS_SENT = "SENT"
STATUS_SKIPPED = "SKIPPED"

SUMMARY_TARGET_RATE = 0.9


class SlackNotifier:
    """
    Sends alerts to a Slack incoming webhook.

    Example:
        notifier = SlackNotifier(default_webhook_url=settings.notifications.slack_webhook_url)
        notifier.send_alert("Control Failed: CC6.1.2", "MFA rate 60%", "error",
                            control_id="CC6.1.2", evidence_id=evidence.id)
    """

    platform = "slack"

    def __init__(
        self,
        default_webhook_url: str = "",
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.default_webhook_url = default_webhook_url
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="notifier:slack")
        policy = retry_policy or RetryPolicy()
        self.retry_policy = RetryPolicy(
            max_attempts=policy.max_attempts,
            base_delay_ms=policy.base_delay_ms,
            non_retryable=(*policy.non_retryable, AuthenticationError),
        )
        self._sleep = sleep

    def send_alert(
        self,
        title: str,
        message: str,
        severity: str,
        control_id: str | None = None,
        evidence_id: str | None = None,
        webhook_url: str | None = None,
    ) -> dict[str, Any]:
        """
        Post an alert.

        Args:
            title: Attachment title.
            message: Attachment body.
            severity: "info", "warning" or "error".
            control_id: Included as a field when given.
            evidence_id: Included as a field when given.
            webhook_url: Overrides the default webhook.

        Returns:
            {"status": "SENT", "title", "severity", "timestamp"} or
            {"status": "SKIPPED", "reason"} when no webhook is configured.

        Raises:
            ValueError: If severity is unknown.
            CircuitOpenError: If the Slack breaker is open.
            CollectorError: If the webhook call fails after retries.
        """
        if severity not in SEVERITY_COLORS:
            raise ValueError(
                f"Invalid severity: {severity}. "
                f"Must be one of: {', '.join(SEVERITY_COLORS)}"
            )

        url = webhook_url or self.default_webhook_url
        if not url:
            logger.warning("No Slack webhook URL configured, skipping alert.")
            return {"status": STATUS_SKIPPED, "reason": "no webhook configured"}

        timestamp = datetime.now(UTC).isoformat()
        fields = []
        if control_id:
            fields.append({"title": "Control ID", "value": control_id, "short": True})
        if evidence_id:
            fields.append({"title": "Evidence ID", "value": evidence_id, "short": True})
        fields.append({"title": "Severity", "value": severity.upper(), "short": True})
        fields.append({"title": "Timestamp", "value": timestamp, "short": True})

        payload = {
            "attachments": [
                {
                    "color": SEVERITY_COLORS[severity],
                    "title": title,
                    "text": message,
                    "fields": fields,
                    "footer": "Proofline Compliance",
                }
            ]
        }

        logger.info(f"Sending Slack alert: {title}")
        call_with_resilience(
            self.circuit_breaker,
            lambda: self._post(url, payload),
            self.retry_policy,
            sleep=self._sleep,
        )
        logger.info(f"Slack alert sent: {title}")
        return {
            "status": STATUS_SENT,
            "title": title,
            "severity": severity,
            "timestamp": timestamp,
        }

    def send_health_warning(
        self,
        integration: str,
        state: str,
        issues: list[str],
        webhook_url: str | None = None,
    ) -> dict[str, Any]:
        """Post a warning about a degraded or unhealthy integration."""
        bullet_list = "\n".join(f"- {issue}" for issue in issues)
        return self.send_alert(
            title=f"{integration} Integration Health Warning",
            message=f"Health: {state}\n\nIssues:\n{bullet_list}",
            severity="warning",
            webhook_url=webhook_url,
        )

    def send_daily_summary(
        self, summary: ComplianceSummary, webhook_url: str | None = None
    ) -> dict[str, Any]:
        """
        Post the daily compliance summary.

        Severity is "info" at or above a 90% compliance rate and "warning"
        below it.
        """
        healthy = summary.compliance_rate >= SUMMARY_TARGET_RATE
        emoji = ":white_check_mark:" if healthy else ":warning:"
        logger.info(f"Sending daily compliance summary for {summary.customer_id} to Slack...")
        return self.send_alert(
            title=f"{emoji} Daily Compliance Summary",
            message=(
                f"Compliance Rate: {summary.compliance_rate * 100:.1f}%\n\n"
                f"Total Checks: {summary.total}\n"
                f"Passed: {summary.passed}\n"
                f"Failed: {summary.failed}\n"
                f"Warnings: {summary.warnings}"
            ),
            severity="info" if healthy else "warning",
            webhook_url=webhook_url,
        )

    def _post(self, url: str, payload: dict[str, Any]) -> None:
        start_time = time.time()
        try:
            response = requests.post(url, json=payload, timeout=10)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise CollectorConnectionError(
                f"Failed to reach Slack webhook: {e}", platform=self.platform
            )
        duration_ms = (time.time() - start_time) * 1000
        # The webhook URL is a secret; log only the host
        logger.info(
            f"API call: POST hooks.slack.com -> {response.status_code} ({duration_ms:.0f}ms)"
        )
        raise_for_api_status(response, self.platform)

    def get_circuit_breaker_status(self) -> dict[str, Any]:
        return self.circuit_breaker.status()
