"""
Jira ticketing for failed compliance controls.

Creates one Task per remediation in the configured project using the Jira
Cloud REST API v3 with basic auth (account email + API token), and moves
those issues through the workflow once the control passes again.

Integration config keys:
    - domain: e.g. "acme.atlassian.net"
    - email: account email
    - api_token (or apiToken): API token
    - project_key (optional): overrides the default project
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import requests

from proofline.collectors.base import (
    AuthenticationError,
    CollectorConnectionError,
    CollectorError,
    ConfigurationError,
    raise_for_api_status,
)
from proofline.resilience import CircuitBreaker, RetryPolicy, call_with_resilience

logger = logging.getLogger(__name__)


def _text_paragraph(text: str, strong: bool = False) -> dict[str, Any]:
    node: dict[str, Any] = {"type": "text", "text": text}
    if strong:
        node["marks"] = [{"type": "strong"}]
    return {"type": "paragraph", "content": [node]}


class JiraTicketing:
    """
    Creates remediation tickets in Jira.

    Example:
        jira = JiraTicketing()
        ticket = jira.create_ticket("CC6.1.2", "MFA Enforcement (AWS)",
                                    "MFA rate 60% is below 90%", "COMP",
                                    decrypted_config, evidence_id=evidence.id)
        ticket["issue_key"]  # "COMP-42"
    """

    platform = "jira"

    def __init__(
        self,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="ticketing:jira")
        policy = retry_policy or RetryPolicy()
        self.retry_policy = RetryPolicy(
            max_attempts=policy.max_attempts,
            base_delay_ms=policy.base_delay_ms,
            non_retryable=(*policy.non_retryable, AuthenticationError, ConfigurationError),
        )
        self._sleep = sleep

    def _client_config(self, config: dict[str, Any]) -> tuple[str, str, str]:
        domain = config.get("domain")
        email = config.get("email")
        token = config.get("api_token") or config.get("apiToken")
        if not domain or not email or not token:
            raise ConfigurationError(
                "Integration config missing: domain, email, api_token", self.platform
            )
        domain = str(domain).removeprefix("https://").removeprefix("http://").rstrip("/")
        return domain, email, token

    def _request(
        self,
        method: str,
        domain: str,
        auth: tuple[str, str],
        endpoint: str,
        body: dict[str, Any] | None = None,
    ) -> Any:
        url = f"https://{domain}/rest/api/3{endpoint}"
        start_time = time.time()
        try:
            response = requests.request(
                method,
                url,
                json=body,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=30,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise CollectorConnectionError(
                f"Failed to connect to Jira: {e}", platform=self.platform
            )
        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"API call: {method} {endpoint} -> {response.status_code} ({duration_ms:.0f}ms)"
        )
        raise_for_api_status(response, self.platform)
        return response.json() if response.content else None

    def test_connection(self, config: dict[str, Any]) -> bool:
        """Verify credentials with GET /myself."""
        try:
            domain, email, token = self._client_config(config)
            self._request("GET", domain, (email, token), "/myself")
            return True
        except CollectorError as e:
            logger.error(f"Jira connection check failed: {e}")
            return False

    def create_ticket(
        self,
        control_id: str,
        title: str,
        description: str,
        project_key: str,
        config: dict[str, Any],
        evidence_id: str | None = None,
    ) -> dict[str, str]:
        """
        Create a remediation Task.

        Args:
            control_id: Failed control; added as a label.
            title: Control title, used in the summary.
            description: Failure reason.
            project_key: Jira project key.
            config: Decrypted Jira integration config.
            evidence_id: Evidence behind the failure, quoted in the body.

        Returns:
            {"issue_key", "issue_id", "url"}.

        Raises:
            ConfigurationError: If the config is incomplete.
            CircuitOpenError: If the Jira breaker is open.
            CollectorError: If the API call fails after retries.
        """
        domain, email, token = self._client_config(config)
        project_key = config.get("project_key") or project_key

        content = [
            _text_paragraph(
                f"Compliance control {control_id} has failed and requires remediation.",
                strong=True,
            ),
            _text_paragraph(f"Failure Reason: {description}"),
        ]
        if evidence_id:
            content.append(_text_paragraph(f"Evidence ID: {evidence_id}"))

        body = {
            "fields": {
                "project": {"key": project_key},
                "summary": f"[Compliance] {title} - Failed",
                "description": {"type": "doc", "version": 1, "content": content},
                "issuetype": {"name": "Task"},
                "labels": ["compliance", "automated", control_id],
                "priority": {"name": "High"},
            }
        }

        logger.info(f"Creating Jira remediation ticket for control {control_id}...")
        issue = call_with_resilience(
            self.circuit_breaker,
            lambda: self._request("POST", domain, (email, token), "/issue", body),
            self.retry_policy,
            sleep=self._sleep,
        )
        logger.info(f"Created Jira ticket {issue['key']} for control {control_id}")
        return {
            "issue_key": issue["key"],
            "issue_id": str(issue["id"]),
            "url": f"https://{domain}/browse/{issue['key']}",
        }

    def update_ticket_status(
        self, issue_key: str, status: str, config: dict[str, Any]
    ) -> dict[str, str]:
        """
        Move an issue through the workflow transition named ``status``.

        The transition is matched by name, case-insensitively, against the
        transitions Jira currently offers for the issue.

        Returns:
            {"issue_key", "status"}.

        Raises:
            ConfigurationError: If the config is incomplete or the workflow
                offers no transition with that name.
            CircuitOpenError: If the Jira breaker is open.
            CollectorError: If the API call fails after retries.
        """
        domain, email, token = self._client_config(config)
        auth = (email, token)
        endpoint = f"/issue/{issue_key}/transitions"

        def transition() -> None:
            available = self._request("GET", domain, auth, endpoint) or {}
            match = next(
                (
                    t
                    for t in available.get("transitions", [])
                    if str(t.get("name", "")).lower() == status.lower()
                ),
                None,
            )
            if match is None:
                raise ConfigurationError(
                    f'Transition to status "{status}" not found for {issue_key}',
                    self.platform,
                )
            self._request("POST", domain, auth, endpoint, {"transition": {"id": match["id"]}})

        logger.info(f"Updating Jira ticket {issue_key} status to {status}...")
        call_with_resilience(self.circuit_breaker, transition, self.retry_policy, sleep=self._sleep)
        logger.info(f"Updated Jira ticket {issue_key} to status {status}")
        return {"issue_key": issue_key, "status": status}

    def sync_ticket_status(self, issue_key: str, config: dict[str, Any]) -> dict[str, Any]:
        """
        Read an issue's current workflow status.

        Returns:
            {"issue_key", "issue_id", "status", "summary", "assignee"}.
        """
        domain, email, token = self._client_config(config)
        issue = call_with_resilience(
            self.circuit_breaker,
            lambda: self._request(
                "GET",
                domain,
                (email, token),
                f"/issue/{issue_key}?fields=status,summary,assignee",
            ),
            self.retry_policy,
            sleep=self._sleep,
        )
        fields = issue.get("fields", {})
        assignee = fields.get("assignee") or {}
        status = (fields.get("status") or {}).get("name")
        logger.info(f"Synced Jira ticket {issue_key}: {status}")
        return {
            "issue_key": issue.get("key", issue_key),
            "issue_id": str(issue.get("id", "")),
            "status": status,
            "summary": fields.get("summary"),
            "assignee": assignee.get("displayName"),
        }

    def get_circuit_breaker_status(self) -> dict[str, Any]:
        return self.circuit_breaker.status()
