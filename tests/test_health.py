"""
Tests for integration health classification and warnings.
"""

from __future__ import annotations

import unittest
from typing import Any
from unittest.mock import MagicMock

from proofline.health import (
    DEGRADED,
    HEALTHY,
    UNHEALTHY,
    IntegrationHealthMonitor,
    breaker_score,
    classify,
)
from proofline.resilience import CircuitBreaker


class FakeOwner:
    def __init__(self, state: str = "CLOSED", failure_count: int = 0) -> None:
        self.state = state
        self.failure_count = failure_count

    def get_circuit_breaker_status(self) -> dict[str, Any]:
        return {
            "name": "fake",
            "state": self.state,
            "failure_count": self.failure_count,
            "last_failure_at": 1_700_000_000.0 if self.failure_count else None,
        }


class BreakerOwner:
    def __init__(self, breaker: CircuitBreaker) -> None:
        self.breaker = breaker

    def get_circuit_breaker_status(self) -> dict[str, Any]:
        return self.breaker.status()


class TestClassify(unittest.TestCase):
    """Tests for classify."""

    def test_healthy(self) -> None:
        self.assertEqual(classify("CLOSED", 0), HEALTHY)

    def test_degraded(self) -> None:
        self.assertEqual(classify("HALF_OPEN", 0), DEGRADED)
        self.assertEqual(classify("CLOSED", 1), DEGRADED)
        self.assertEqual(classify("CLOSED", 4), DEGRADED)

    def test_unhealthy(self) -> None:
        self.assertEqual(classify("OPEN", 0), UNHEALTHY)
        self.assertEqual(classify("CLOSED", 5), UNHEALTHY)
        self.assertEqual(classify("HALF_OPEN", 7), UNHEALTHY)

    def test_health_score_thresholds(self) -> None:
        """Test that a low health score degrades a closed, failure-free breaker."""
        self.assertEqual(classify("CLOSED", 0, 0.8), HEALTHY)
        self.assertEqual(classify("CLOSED", 0, 0.79), DEGRADED)
        self.assertEqual(classify("CLOSED", 0, 0.49), UNHEALTHY)

    def test_breaker_score(self) -> None:
        self.assertEqual(breaker_score("OPEN"), 0.0)
        self.assertEqual(breaker_score("HALF_OPEN"), 1.0)


class TestIntegrationHealthMonitor(unittest.TestCase):
    """Tests for IntegrationHealthMonitor."""

    def setUp(self) -> None:
        self.owners = {
            "okta": FakeOwner("OPEN", 5),
            "aws": FakeOwner(),
            "github": FakeOwner("CLOSED", 2),
        }
        self.notifier = MagicMock()
        self.monitor = IntegrationHealthMonitor(self.owners, notifier=self.notifier)

    def test_check_sorted_and_classified(self) -> None:
        report = self.monitor.check()

        self.assertEqual([i.integration for i in report.integrations], ["aws", "github", "okta"])
        self.assertEqual([i.status for i in report.integrations], [HEALTHY, DEGRADED, UNHEALTHY])
        self.assertEqual([i.integration for i in report.needs_attention], ["github", "okta"])

    def test_report_to_dict(self) -> None:
        data = self.monitor.check().to_dict()

        self.assertEqual((data["healthy"], data["degraded"], data["unhealthy"]), (1, 1, 1))
        okta = data["integrations"][2]
        self.assertEqual(okta["breaker_state"], "OPEN")
        self.assertEqual(okta["failure_count"], 5)
        self.assertEqual(okta["last_failure_at"], 1_700_000_000.0)
        self.assertEqual(okta["health_score"], 0.0)
        self.assertAlmostEqual(data["overall_health_score"], 2 / 3)

    def test_check_with_scores(self) -> None:
        """Test that supplied health scores feed classification and the overall score."""
        report = self.monitor.check({"aws": 0.6, "github": 0.9})

        aws = report.integrations[0]
        self.assertEqual((aws.health_score, aws.status), (0.6, DEGRADED))
        self.assertIn("Health Score: 60%", aws.issues())
        self.assertEqual(report.integrations[2].health_score, 0.0)
        self.assertAlmostEqual(report.overall_health_score, 0.5)

    def test_empty_report_scores_zero(self) -> None:
        self.assertEqual(IntegrationHealthMonitor({}).check().overall_health_score, 0.0)

    def test_reads_real_breaker(self) -> None:
        """Test classification from a breaker that has recorded failures."""
        breaker = CircuitBreaker(failure_threshold=2, name="slack")
        for _ in range(2):
            with self.assertRaises(ConnectionError):
                breaker.execute(self._fail)
        monitor = IntegrationHealthMonitor({"slack": BreakerOwner(breaker)})

        report = monitor.check()

        self.assertEqual(report.integrations[0].status, UNHEALTHY)
        self.assertEqual(report.integrations[0].breaker_state, "OPEN")

    def _fail(self) -> None:
        raise ConnectionError("down")

    def test_send_warnings_for_non_healthy(self) -> None:
        """Test that one warning is sent per degraded or unhealthy integration."""
        report = self.monitor.check()

        results = self.monitor.send_warnings(report, webhook_url="https://hooks.example/ops")

        self.assertEqual(results, {"github": None, "okta": None})
        first = self.notifier.send_health_warning.call_args_list[0]
        self.assertEqual(first.args[:2], ("github", DEGRADED))
        self.assertIn("Failure Count: 2", first.args[2])
        self.assertEqual(first.kwargs["webhook_url"], "https://hooks.example/ops")

    def test_warning_failure_reported_per_integration(self) -> None:
        """Test that a failed warning does not stop the others."""
        self.notifier.send_health_warning.side_effect = [ConnectionError("slack down"), {}]

        results = self.monitor.send_warnings(self.monitor.check())

        self.assertEqual(results, {"github": "slack down", "okta": None})
        self.assertEqual(self.notifier.send_health_warning.call_count, 2)

    def test_no_notifier(self) -> None:
        monitor = IntegrationHealthMonitor(self.owners)

        self.assertEqual(monitor.send_warnings(monitor.check()), {})

    def test_all_healthy_sends_nothing(self) -> None:
        monitor = IntegrationHealthMonitor({"aws": FakeOwner()}, notifier=self.notifier)

        self.assertEqual(monitor.send_warnings(monitor.check()), {})
        self.notifier.send_health_warning.assert_not_called()


if __name__ == "__main__":
    unittest.main()
