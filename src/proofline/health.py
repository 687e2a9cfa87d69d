"""
Integration health from circuit breaker state and health scores.

Each outbound integration (collectors, notifier, ticketing) owns a circuit
breaker. The monitor reads those breakers and classifies each integration:

    unhealthy: breaker OPEN, failure_count >= 5, or health score < 0.5
    degraded:  breaker HALF_OPEN, any recent failures, or health score < 0.8
    healthy:   otherwise

A collector's health score (0.0 to 1.0) comes from its own evidence when
the caller supplies one. Otherwise the score is 0.0 for an OPEN breaker and
1.0 for any other state.

Warnings for non-healthy integrations are best effort; each send is
reported individually.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from proofline.resilience import BreakerState

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"

UNHEALTHY_FAILURE_COUNT = 5
HEALTHY_SCORE = 0.8
DEGRADED_SCORE = 0.5


class BreakerOwner(Protocol):
    def get_circuit_breaker_status(self) -> dict[str, Any]: ...


class HealthNotifier(Protocol):
    def send_health_warning(
        self,
        integration: str,
        state: str,
        issues: list[str],
        webhook_url: str | None = None,
    ) -> dict[str, Any]: ...


def breaker_score(state: str) -> float:
    return 0.0 if state == BreakerState.OPEN.value else 1.0


def classify(state: str, failure_count: int, health_score: float = 1.0) -> str:
    """Classify one integration from its breaker and health score."""
    if (
        state == BreakerState.OPEN.value
        or failure_count >= UNHEALTHY_FAILURE_COUNT
        or health_score < DEGRADED_SCORE
    ):
        return UNHEALTHY
    if (
        state == BreakerState.HALF_OPEN.value
        or failure_count > 0
        or health_score < HEALTHY_SCORE
    ):
        return DEGRADED
    return HEALTHY


@dataclass
class IntegrationHealth:
    integration: str
    status: str
    breaker_state: str
    failure_count: int
    health_score: float = 1.0
    last_failure_at: float | None = None

    def issues(self) -> list[str]:
        return [
            f"Status: {self.status}",
            f"Circuit Breaker: {self.breaker_state}",
            f"Health Score: {self.health_score * 100:.0f}%",
            f"Failure Count: {self.failure_count}",
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "integration": self.integration,
            "status": self.status,
            "breaker_state": self.breaker_state,
            "failure_count": self.failure_count,
            "health_score": self.health_score,
            "last_failure_at": self.last_failure_at,
        }


@dataclass
class HealthReport:
    checked_at: datetime
    integrations: list[IntegrationHealth] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for item in self.integrations if item.status == status)

    @property
    def overall_health_score(self) -> float:
        if not self.integrations:
            return 0.0
        return sum(item.health_score for item in self.integrations) / len(self.integrations)

    @property
    def needs_attention(self) -> list[IntegrationHealth]:
        return [item for item in self.integrations if item.status != HEALTHY]

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "healthy": self.count(HEALTHY),
            "degraded": self.count(DEGRADED),
            "unhealthy": self.count(UNHEALTHY),
            "overall_health_score": self.overall_health_score,
            "integrations": [item.to_dict() for item in self.integrations],
        }


class IntegrationHealthMonitor:
    """
    Reports health for a set of named breaker owners.

    Example:
        monitor = IntegrationHealthMonitor({"aws": aws_collector, "slack": notifier},
                                           notifier=notifier)
        report = monitor.check()
        monitor.send_warnings(report)
    """

    def __init__(
        self,
        integrations: Mapping[str, BreakerOwner],
        notifier: HealthNotifier | None = None,
    ) -> None:
        self.integrations = dict(integrations)
        self.notifier = notifier

    def check(self, scores: Mapping[str, float] | None = None) -> HealthReport:
        """
        Build a report for every integration.

        Args:
            scores: Health scores by integration name, e.g. from
                EvidenceCollectionWorker.health_scores(). Integrations
                without one are scored from their breaker state.
        """
        scores = scores or {}
        report = HealthReport(checked_at=datetime.now(UTC))
        for name, owner in sorted(self.integrations.items()):
            status = owner.get_circuit_breaker_status()
            score = scores.get(name, breaker_score(status["state"]))
            report.integrations.append(
                IntegrationHealth(
                    integration=name,
                    status=classify(status["state"], status["failure_count"], score),
                    breaker_state=status["state"],
                    failure_count=status["failure_count"],
                    health_score=score,
                    last_failure_at=status.get("last_failure_at"),
                )
            )

        logger.info(
            f"Integration health check complete: {report.count(HEALTHY)} healthy, "
            f"{report.count(DEGRADED)} degraded, {report.count(UNHEALTHY)} unhealthy"
        )
        return report

    def send_warnings(
        self, report: HealthReport, webhook_url: str | None = None
    ) -> dict[str, str | None]:
        """
        Send a warning per degraded or unhealthy integration.

        Returns:
            Integration name -> None if sent (or skipped), else the error.
        """
        results: dict[str, str | None] = {}
        if self.notifier is None:
            return results

        for item in report.needs_attention:
            try:
                self.notifier.send_health_warning(
                    item.integration, item.status, item.issues(), webhook_url=webhook_url
                )
                results[item.integration] = None
                logger.info(f"Sent health warning for {item.integration}")
            except Exception as e:
                logger.error(f"Failed to send health warning for {item.integration}: {e}")
                results[item.integration] = str(e)
        return results
