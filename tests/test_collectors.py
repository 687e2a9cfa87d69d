"""
Tests for platform collectors.

Uses Python's unittest module with mock API responses.
Tests authentication, rate limiting, error handling, and evidence normalization.
"""

from __future__ import annotations

import unittest
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock, Mock, patch

from botocore.exceptions import ClientError

from proofline.collectors.aws_collector import AwsCollector
from proofline.collectors.base import (
    FAIL,
    PASS,
    WARNING,
    AuthenticationError,
    BaseCollector,
    CollectedEvidence,
    CollectorConnectionError,
    CollectorError,
    CollectorRegistry,
    ConfigurationError,
    RateLimitError,
    UnknownAspectError,
    raise_for_api_status,
    rate_status,
)
from proofline.collectors.github_collector import GitHubCollector
from proofline.collectors.okta_collector import OktaCollector
from proofline.resilience import (
    BreakerState,
    CircuitBreaker,
    CircuitOpenError,
    RetryPolicy,
)


def make_response(
    status_code: int = 200,
    json_data: Any = None,
    headers: dict[str, str] | None = None,
    links: dict[str, Any] | None = None,
) -> Mock:
    """Build a mock requests.Response."""
    response = Mock()
    response.status_code = status_code
    response.json.return_value = json_data if json_data is not None else []
    response.headers = headers or {}
    response.links = links or {}
    response.text = ""
    return response


def client_error(code: str, status: int = 400) -> ClientError:
    """Build a botocore ClientError with the given code."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "Operation",
    )


class TestCollectedEvidence(unittest.TestCase):
    """Tests for the CollectedEvidence dataclass."""

    def test_create_stamps_utc_time(self) -> None:
        """Test create() fills the timestamp."""
        evidence = CollectedEvidence.create("S3_ENCRYPTION", {"total_buckets": 0}, PASS)

        self.assertEqual(evidence.type, "S3_ENCRYPTION")
        self.assertEqual(evidence.status, PASS)
        self.assertEqual(evidence.timestamp.tzinfo, UTC)

    def test_to_payload(self) -> None:
        """Test the payload shape stored by the ledger."""
        timestamp = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)
        evidence = CollectedEvidence("IAM_MFA_ENFORCEMENT", timestamp, {"total_users": 2}, FAIL)

        self.assertEqual(
            evidence.to_payload(),
            {
                "type": "IAM_MFA_ENFORCEMENT",
                "timestamp": "2024-01-15T12:00:00+00:00",
                "data": {"total_users": 2},
                "status": "FAIL",
            },
        )


class TestRateStatus(unittest.TestCase):
    """Tests for threshold comparison."""

    def test_at_threshold_passes(self) -> None:
        self.assertEqual(rate_status(0.9, 0.9), PASS)

    def test_below_threshold_fails(self) -> None:
        self.assertEqual(rate_status(0.89, 0.9), FAIL)

    def test_below_threshold_custom_status(self) -> None:
        self.assertEqual(rate_status(0.5, 0.8, below=WARNING), WARNING)


class TestRaiseForApiStatus(unittest.TestCase):
    """Tests for HTTP status mapping."""

    def test_success_does_not_raise(self) -> None:
        raise_for_api_status(make_response(204), "github")

    def test_rate_limit_with_retry_after(self) -> None:
        """Test 429 becomes RateLimitError with the header value."""
        response = make_response(429, headers={"Retry-After": "12"})
        with self.assertRaises(RateLimitError) as ctx:
            raise_for_api_status(response, "slack")

        self.assertEqual(ctx.exception.retry_after, 12.0)
        self.assertEqual(ctx.exception.platform, "slack")

    def test_rate_limit_with_bad_header(self) -> None:
        response = make_response(429, headers={"Retry-After": "soon"})
        with self.assertRaises(RateLimitError) as ctx:
            raise_for_api_status(response, "slack")

        self.assertIsNone(ctx.exception.retry_after)

    def test_auth_statuses(self) -> None:
        for status in (401, 403):
            with self.assertRaises(AuthenticationError):
                raise_for_api_status(make_response(status), "jira")

    def test_server_error(self) -> None:
        with self.assertRaises(CollectorConnectionError):
            raise_for_api_status(make_response(503), "okta")

    def test_other_client_error(self) -> None:
        """Test 4xx outside the special cases is a plain CollectorError."""
        with self.assertRaises(CollectorError) as ctx:
            raise_for_api_status(make_response(422), "github")

        self.assertNotIsInstance(ctx.exception, AuthenticationError)
        self.assertIn("422", str(ctx.exception))


class StubCollector(BaseCollector):
    """Collector with scripted aspects for testing the base class."""

    platform = "stub"
    aspects = ("widgets", "gadgets")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.widget_calls = 0
        self.widget_error: Exception | None = None
        self.widget_status = PASS

    def collect_widgets(self, config: dict[str, Any]) -> CollectedEvidence:
        self.widget_calls += 1
        if self.widget_error is not None:
            raise self.widget_error
        return CollectedEvidence.create(
            "WIDGETS", {"count": config.get("count", 0)}, self.widget_status
        )

    def test_connection(self, config: dict[str, Any]) -> bool:
        return True

    def get_required_permissions(self) -> list[str]:
        return ["widgets:read"]


class TestBaseCollector(unittest.TestCase):
    """Tests for BaseCollector through a stub subclass."""

    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.collector = StubCollector(
            circuit_breaker=CircuitBreaker(failure_threshold=2, name="stub"),
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=10),
            sleep=self.sleeps.append,
        )

    def test_default_breaker_named_after_platform(self) -> None:
        collector = StubCollector()
        self.assertEqual(collector.circuit_breaker.name, "stub")

    def test_default_aspect_is_first(self) -> None:
        self.assertEqual(StubCollector.default_aspect(), "widgets")

    def test_supports_requires_method(self) -> None:
        """Test an aspect listed without a collect_ method is unsupported."""
        self.assertTrue(StubCollector.supports("widgets"))
        self.assertFalse(StubCollector.supports("gadgets"))
        self.assertFalse(StubCollector.supports("doohickeys"))

    def test_collect_unknown_aspect(self) -> None:
        with self.assertRaises(UnknownAspectError):
            self.collector.collect("gadgets", {})

    def test_collect_passes_config(self) -> None:
        evidence = self.collector.collect("widgets", {"count": 7})

        self.assertEqual(evidence.type, "WIDGETS")
        self.assertEqual(evidence.data, {"count": 7})

    def test_transient_errors_are_retried(self) -> None:
        """Test connection errors are retried up to max_attempts."""
        self.collector.widget_error = CollectorConnectionError("down", "stub")

        with self.assertRaises(CollectorConnectionError):
            self.collector.collect("widgets", {})

        self.assertEqual(self.collector.widget_calls, 3)
        self.assertEqual(self.sleeps, [0.01, 0.02])
        self.assertEqual(self.collector.circuit_breaker.failure_count, 1)

    def test_authentication_errors_not_retried(self) -> None:
        self.collector.widget_error = AuthenticationError("bad key", "stub")

        with self.assertRaises(AuthenticationError):
            self.collector.collect("widgets", {})

        self.assertEqual(self.collector.widget_calls, 1)
        self.assertEqual(self.sleeps, [])

    def test_configuration_errors_not_retried(self) -> None:
        self.collector.widget_error = ConfigurationError("missing token", "stub")

        with self.assertRaises(ConfigurationError):
            self.collector.collect("widgets", {})

        self.assertEqual(self.collector.widget_calls, 1)

    def test_breaker_opens_and_fails_fast(self) -> None:
        """Test repeated failures open the breaker without further calls."""
        self.collector.widget_error = CollectorConnectionError("down", "stub")
        for _ in range(2):
            with self.assertRaises(CollectorConnectionError):
                self.collector.collect("widgets", {})

        self.assertEqual(self.collector.circuit_breaker.state, BreakerState.OPEN)
        with self.assertRaises(CircuitOpenError):
            self.collector.collect("widgets", {})
        self.assertEqual(self.collector.widget_calls, 6)

    def test_precondition_errors_leave_breaker_closed(self) -> None:
        """Test bad credentials and missing config never open the shared breaker."""
        self.collector.widget_error = ConfigurationError("missing token", "stub")
        for _ in range(5):
            with self.assertRaises(ConfigurationError):
                self.collector.collect("widgets", {})
        self.collector.widget_error = AuthenticationError("bad key", "stub")
        for _ in range(5):
            with self.assertRaises(AuthenticationError):
                self.collector.collect("widgets", {})

        self.assertEqual(self.collector.circuit_breaker.state, BreakerState.CLOSED)
        self.assertEqual(self.collector.circuit_breaker.failure_count, 0)

        self.collector.widget_error = None
        self.assertEqual(self.collector.collect("widgets", {"count": 3}).data, {"count": 3})

    def test_breaker_opens_after_five_failures_then_recovers(self) -> None:
        """Test the default threshold and reset timeout around a failing platform."""
        now = [1_700_000_000.0]
        collector = StubCollector(
            circuit_breaker=CircuitBreaker(
                failure_threshold=5, reset_timeout_ms=60_000, name="stub", clock=lambda: now[0]
            ),
            retry_policy=RetryPolicy(max_attempts=1),
            sleep=self.sleeps.append,
        )
        collector.widget_error = CollectorConnectionError("down", "stub")

        for _ in range(5):
            with self.assertRaises(CollectorConnectionError):
                collector.collect("widgets", {})
        with self.assertRaises(CircuitOpenError):
            collector.collect("widgets", {})
        self.assertEqual(collector.widget_calls, 5)

        now[0] += 60
        collector.widget_error = None
        evidence = collector.collect("widgets", {"count": 1})

        self.assertEqual(collector.widget_calls, 6)
        self.assertEqual(evidence.data, {"count": 1})
        self.assertEqual(collector.circuit_breaker.state, BreakerState.CLOSED)

    def test_circuit_breaker_status(self) -> None:
        status = self.collector.get_circuit_breaker_status()

        self.assertEqual(status["name"], "stub")
        self.assertEqual(status["state"], "CLOSED")

    def test_require_reports_missing_keys(self) -> None:
        with self.assertRaises(ConfigurationError) as ctx:
            self.collector._require({"token": "x"}, "token", "org_url")

        self.assertIn("org_url", str(ctx.exception))

    def test_health_score_from_status(self) -> None:
        """Test aspects without a score field score 1.0 on PASS and 0.5 otherwise."""
        self.assertEqual(self.collector.health_score({}), 1.0)

        self.collector.widget_status = WARNING
        self.assertEqual(self.collector.health_score({}), 0.5)

    def test_health_score_from_data_field(self) -> None:
        collector = StubCollector(retry_policy=RetryPolicy(max_attempts=1))
        collector.score_fields = {"widgets": "count"}

        self.assertEqual(collector.health_score({"count": 0.75}), 0.75)

    def test_health_score_unreachable_platform(self) -> None:
        """Test a platform that cannot be collected from scores 0.0."""
        self.collector.widget_error = CollectorConnectionError("down", "stub")

        self.assertEqual(self.collector.health_score({}), 0.0)


class TestCollectorRegistry(unittest.TestCase):
    """Tests for the CollectorRegistry."""

    def setUp(self) -> None:
        self._saved = dict(CollectorRegistry._collectors)

    def tearDown(self) -> None:
        CollectorRegistry._collectors.clear()
        CollectorRegistry._collectors.update(self._saved)

    def test_builtin_platforms_registered(self) -> None:
        self.assertEqual(CollectorRegistry.get_platforms(), ["aws", "github", "okta"])

    def test_create_uses_named_breaker(self) -> None:
        collector = CollectorRegistry.create("okta", failure_threshold=3)

        self.assertIsInstance(collector, OktaCollector)
        self.assertEqual(collector.circuit_breaker.name, "collector:okta")
        self.assertEqual(collector.circuit_breaker.failure_threshold, 3)

    def test_create_gives_each_instance_its_own_breaker(self) -> None:
        first = CollectorRegistry.create("aws")
        second = CollectorRegistry.create("aws")

        self.assertIsNot(first.circuit_breaker, second.circuit_breaker)

    def test_create_unknown_platform(self) -> None:
        with self.assertRaises(ValueError) as ctx:
            CollectorRegistry.create("gitlab")

        self.assertIn("gitlab", str(ctx.exception))

    def test_register_custom_collector(self) -> None:
        CollectorRegistry.register(StubCollector)

        self.assertTrue(CollectorRegistry.is_registered("stub"))
        self.assertIs(CollectorRegistry.get_collector_class("stub"), StubCollector)

    def test_register_requires_platform_and_aspects(self) -> None:
        class Nameless(StubCollector):
            platform = "base"

        class Empty(StubCollector):
            platform = "empty"
            aspects = ()

        with self.assertRaises(ValueError):
            CollectorRegistry.register(Nameless)
        with self.assertRaises(ValueError):
            CollectorRegistry.register(Empty)


class TestAwsCollector(unittest.TestCase):
    """Tests for AwsCollector with mocked boto3 clients."""

    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.collector = AwsCollector(
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=10),
            sleep=self.sleeps.append,
        )
        self.config = {"access_key_id": "AKIATEST", "secret_access_key": "secret"}
        self.clients: dict[str, MagicMock] = {}

        patcher = patch.object(
            self.collector,
            "_get_client",
            side_effect=lambda service, config: self.clients[service],
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def _client(self, service: str) -> MagicMock:
        client = MagicMock()
        client.meta.service_model.service_name = service
        self.clients[service] = client
        return client

    def test_iam_mfa_below_threshold_fails(self) -> None:
        """Test one of two users with MFA is a FAIL at 50%."""
        iam = self._client("iam")
        iam.list_users.return_value = {
            "Users": [
                {"UserName": "alice", "UserId": "A1", "CreateDate": datetime(2023, 1, 1, tzinfo=UTC)},
                {"UserName": "bob", "UserId": "B2"},
            ],
            "IsTruncated": False,
        }
        iam.list_mfa_devices.side_effect = lambda UserName: {
            "MFADevices": [{"SerialNumber": "arn:mfa"}] if UserName == "alice" else []
        }

        evidence = self.collector.collect("iam_mfa", self.config)

        self.assertEqual(evidence.type, "IAM_MFA_ENFORCEMENT")
        self.assertEqual(evidence.status, FAIL)
        self.assertEqual(evidence.data["total_users"], 2)
        self.assertEqual(evidence.data["users_with_mfa"], 1)
        self.assertEqual(evidence.data["mfa_compliance_rate"], 0.5)
        self.assertEqual(evidence.data["users"][0]["created_at"], "2023-01-01T00:00:00+00:00")

    def test_iam_mfa_follows_pagination(self) -> None:
        iam = self._client("iam")
        iam.list_users.side_effect = [
            {"Users": [{"UserName": "alice"}], "IsTruncated": True, "Marker": "m1"},
            {"Users": [{"UserName": "bob"}], "IsTruncated": False},
        ]
        iam.list_mfa_devices.return_value = {"MFADevices": [{"SerialNumber": "x"}]}

        evidence = self.collector.collect("iam_mfa", self.config)

        self.assertEqual(evidence.status, PASS)
        self.assertEqual(evidence.data["total_users"], 2)
        iam.list_users.assert_called_with(Marker="m1")

    def test_iam_mfa_no_users_fails(self) -> None:
        iam = self._client("iam")
        iam.list_users.return_value = {"Users": [], "IsTruncated": False}

        evidence = self.collector.collect("iam_mfa", self.config)

        self.assertEqual(evidence.data["mfa_compliance_rate"], 0.0)
        self.assertEqual(evidence.status, FAIL)

    def test_s3_unencrypted_bucket_fails(self) -> None:
        """Test a bucket without encryption configuration counts as unencrypted."""
        s3 = self._client("s3")
        s3.list_buckets.return_value = {"Buckets": [{"Name": "logs"}, {"Name": "public"}]}

        def get_bucket_encryption(Bucket: str) -> dict[str, Any]:
            if Bucket == "public":
                raise client_error("ServerSideEncryptionConfigurationNotFoundError", 404)
            return {
                "ServerSideEncryptionConfiguration": {
                    "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "aws:kms"}}]
                }
            }

        s3.get_bucket_encryption.side_effect = get_bucket_encryption

        evidence = self.collector.collect("s3_encryption", self.config)

        self.assertEqual(evidence.type, "S3_ENCRYPTION")
        self.assertEqual(evidence.status, FAIL)
        self.assertEqual(evidence.data["encrypted_buckets"], 1)
        self.assertEqual(evidence.data["buckets"][0]["encryption_type"], "aws:kms")
        self.assertFalse(evidence.data["buckets"][1]["encrypted"])

    def test_s3_no_buckets_passes(self) -> None:
        s3 = self._client("s3")
        s3.list_buckets.return_value = {"Buckets": []}

        evidence = self.collector.collect("s3_encryption", self.config)

        self.assertEqual(evidence.data["encryption_compliance_rate"], 1.0)
        self.assertEqual(evidence.status, PASS)

    def test_cloudtrail_activity(self) -> None:
        cloudtrail = self._client("cloudtrail")
        cloudtrail.lookup_events.return_value = {
            "Events": [
                {
                    "EventName": "ConsoleLogin",
                    "EventTime": datetime(2024, 1, 15, tzinfo=UTC),
                    "Username": "alice",
                    "EventSource": "signin.amazonaws.com",
                }
            ]
        }

        evidence = self.collector.collect("cloudtrail_logging", self.config)

        self.assertEqual(evidence.status, PASS)
        self.assertEqual(evidence.data["event_count"], 1)
        self.assertEqual(evidence.data["sample_events"][0]["event_name"], "ConsoleLogin")
        kwargs = cloudtrail.lookup_events.call_args.kwargs
        self.assertEqual(kwargs["MaxResults"], 50)

    def test_cloudtrail_no_activity_warns(self) -> None:
        cloudtrail = self._client("cloudtrail")
        cloudtrail.lookup_events.return_value = {"Events": []}

        evidence = self.collector.collect("cloudtrail_logging", self.config)

        self.assertEqual(evidence.status, WARNING)
        self.assertFalse(evidence.data["has_recent_activity"])

    def test_access_denied_is_authentication_error(self) -> None:
        iam = self._client("iam")
        iam.list_users.side_effect = client_error("AccessDenied", 403)

        with self.assertRaises(AuthenticationError):
            self.collector.collect("iam_mfa", self.config)

        self.assertEqual(iam.list_users.call_count, 1)

    def test_throttling_is_retried(self) -> None:
        s3 = self._client("s3")
        s3.list_buckets.side_effect = [client_error("SlowDown", 503), {"Buckets": []}]

        evidence = self.collector.collect("s3_encryption", self.config)

        self.assertEqual(evidence.status, PASS)
        self.assertEqual(self.sleeps, [0.01])

    def test_missing_credentials(self) -> None:
        """Test the real client builder rejects a config without keys."""
        collector = AwsCollector(sleep=self.sleeps.append)
        with self.assertRaises(ConfigurationError):
            collector._get_client("iam", {"region": "eu-west-1"})

    def test_client_built_from_config(self) -> None:
        collector = AwsCollector()
        boto3 = MagicMock()
        with patch.object(collector, "_get_boto3", return_value=boto3):
            collector._get_client(
                "s3",
                {"aws_access_key_id": "AKIA", "aws_secret_access_key": "s", "region": "eu-west-1"},
            )

        boto3.Session.assert_called_once_with(
            aws_access_key_id="AKIA",
            aws_secret_access_key="s",
            aws_session_token=None,
        )
        boto3.Session.return_value.client.assert_called_once_with("s3", region_name="eu-west-1")


class TestGitHubCollector(unittest.TestCase):
    """Tests for GitHubCollector with a mocked requests session."""

    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.collector = GitHubCollector(
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=10),
            sleep=self.sleeps.append,
        )
        self.config = {"owner": "acme", "repos": ["api", "web"], "token": "ghp_test"}
        self.routes: dict[str, Any] = {}
        self.session = MagicMock()
        self.session.get.side_effect = self._route

        patcher = patch.object(self.collector, "_get_session", return_value=self.session)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _route(self, url: str, params: Any = None, timeout: int = 30) -> Mock:
        path = url.replace("https://api.github.com", "")
        route = self.routes.get(path, make_response(404))
        if isinstance(route, list):
            return route.pop(0)
        return route

    def test_branch_protection_partial(self) -> None:
        """Test one protected main branch out of two is a FAIL."""
        self.routes = {
            "/repos/acme/api/branches": make_response(200, [{"name": "main"}, {"name": "feature"}]),
            "/repos/acme/api/branches/main/protection": make_response(200, {}),
            "/repos/acme/web/branches": make_response(200, [{"name": "master"}]),
        }

        evidence = self.collector.collect("branch_protection", self.config)

        self.assertEqual(evidence.type, "BRANCH_PROTECTION")
        self.assertEqual(evidence.status, FAIL)
        self.assertEqual(evidence.data["total_main_branches"], 2)
        self.assertEqual(evidence.data["protected_main_branches"], 1)
        self.assertEqual(evidence.data["compliance_rate"], 0.5)

    def test_branch_protection_missing_repos_pass(self) -> None:
        """Test repos that return 404 record zero counts."""
        evidence = self.collector.collect("branch_protection", self.config)

        self.assertEqual(evidence.status, PASS)
        self.assertEqual(evidence.data["compliance_rate"], 1.0)
        self.assertEqual(evidence.data["repos"][0], {"repo": "api", "total_main": 0, "protected_main": 0})

    def test_commit_signing_threshold(self) -> None:
        verified = {"commit": {"verification": {"verified": True}}}
        unverified = {"commit": {"verification": {"verified": False}}}
        self.config["repos"] = ["api"]
        self.routes = {"/repos/acme/api/commits": make_response(200, [verified] * 8 + [unverified] * 2)}

        evidence = self.collector.collect("commit_signing", self.config)

        self.assertEqual(evidence.status, PASS)
        self.assertEqual(evidence.data["signed_commits"], 8)
        self.assertEqual(evidence.data["signing_rate"], 0.8)

    def test_commit_signing_below_threshold_warns(self) -> None:
        verified = {"commit": {"verification": {"verified": True}}}
        self.config["repos"] = ["api"]
        self.routes = {"/repos/acme/api/commits": make_response(200, [verified, {"commit": {}}])}

        evidence = self.collector.collect("commit_signing", self.config)

        self.assertEqual(evidence.status, WARNING)

    def test_repository_security_score(self) -> None:
        self.config["repos"] = ["api"]
        self.routes = {
            "/repos/acme/api": make_response(
                200,
                {
                    "private": True,
                    "security_and_analysis": {"secret_scanning": {"status": "enabled"}},
                },
            ),
            "/repos/acme/api/vulnerability-alerts": make_response(204),
        }

        evidence = self.collector.collect("repository_security", self.config)

        self.assertEqual(evidence.status, PASS)
        self.assertEqual(evidence.data["security_score"], 1.0)
        self.assertTrue(evidence.data["repos"][0]["vulnerability_alerts_enabled"])

    def test_rate_limit_waits_retry_after(self) -> None:
        self.config["repos"] = ["api"]
        self.routes = {
            "/repos/acme/api/commits": [
                make_response(429, headers={"Retry-After": "2"}),
                make_response(200, []),
            ]
        }

        evidence = self.collector.collect("commit_signing", self.config)

        self.assertEqual(evidence.data["total_commits"], 0)
        self.assertEqual(self.sleeps, [2.0])

    def test_secondary_rate_limit(self) -> None:
        self.config["repos"] = ["api"]
        self.routes = {
            "/repos/acme/api/commits": [
                make_response(403, headers={"Retry-After": "1"}),
                make_response(200, []),
            ]
        }

        self.collector.collect("commit_signing", self.config)

        self.assertEqual(self.sleeps, [1.0])

    def test_unauthorized_not_retried(self) -> None:
        self.routes = {"/repos/acme/api/branches": make_response(401)}

        with self.assertRaises(AuthenticationError):
            self.collector.collect("branch_protection", self.config)

        self.assertEqual(self.session.get.call_count, 1)

    def test_server_errors_exhaust_retries(self) -> None:
        self.routes = {"/repos/acme/api/branches": [make_response(502) for _ in range(3)]}

        with self.assertRaises(CollectorConnectionError):
            self.collector.collect("branch_protection", self.config)

        self.assertEqual(self.session.get.call_count, 3)

    def test_missing_token(self) -> None:
        with self.assertRaises(ConfigurationError):
            self.collector.collect("branch_protection", {"owner": "acme"})

    def test_enterprise_api_url(self) -> None:
        self.config.update({"repos": ["api"], "api_url": "https://ghe.example.com/api/v3/"})
        self.session.get.side_effect = None
        self.session.get.return_value = make_response(200, [])

        self.collector.collect("commit_signing", self.config)

        url = self.session.get.call_args.args[0]
        self.assertEqual(url, "https://ghe.example.com/api/v3/repos/acme/api/commits")


class TestOktaCollector(unittest.TestCase):
    """Tests for OktaCollector with a mocked requests session."""

    ORG = "https://acme.okta.com"

    def setUp(self) -> None:
        self.sleeps: list[float] = []
        self.collector = OktaCollector(
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=10),
            sleep=self.sleeps.append,
        )
        self.config = {"org_url": "acme.okta.com", "token": "00abc"}
        self.session = MagicMock()
        patcher = patch.object(self.collector, "_get_session", return_value=self.session)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_mfa_enforcement_counts_active_users_only(self) -> None:
        """Test suspended users are excluded from the MFA rate."""
        users_page_1 = make_response(
            200,
            [
                {"id": "u1", "status": "ACTIVE", "profile": {"email": "a@acme.com"}},
                {"id": "u2", "status": "ACTIVE", "profile": {"email": "b@acme.com"}},
            ],
            links={"next": {"url": f"{self.ORG}/api/v1/users?after=u2"}},
        )
        users_page_2 = make_response(200, [{"id": "u3", "status": "SUSPENDED"}])
        factors = {
            "u1": [{"status": "ACTIVE", "factorType": "push"}],
            "u2": [{"status": "PENDING_ACTIVATION", "factorType": "sms"}],
            "u3": [],
        }

        def route(url: str, params: Any = None, timeout: int = 30) -> Mock:
            if url == f"{self.ORG}/api/v1/users":
                return users_page_1
            if url.endswith("after=u2"):
                return users_page_2
            user_id = url.split("/")[-2]
            return make_response(200, factors[user_id])

        self.session.get.side_effect = route

        evidence = self.collector.collect("mfa_enforcement", self.config)

        self.assertEqual(evidence.type, "OKTA_MFA_ENFORCEMENT")
        self.assertEqual(evidence.status, FAIL)
        self.assertEqual(evidence.data["total_users"], 3)
        self.assertEqual(evidence.data["active_users"], 2)
        self.assertEqual(evidence.data["active_users_with_mfa"], 1)
        self.assertEqual(evidence.data["users"][0]["factor_types"], ["push"])

    def test_pagination_drops_params_after_first_page(self) -> None:
        self.session.get.side_effect = [
            make_response(200, [{"id": "u1", "status": "ACTIVE"}], links={"next": {"url": "next-page"}}),
            make_response(200, [{"id": "u2", "status": "DEPROVISIONED"}]),
        ]

        evidence = self.collector.collect("user_access", self.config)

        first, second = self.session.get.call_args_list
        self.assertEqual(first.kwargs["params"], {"limit": 200})
        self.assertIsNone(second.kwargs["params"])
        self.assertEqual(evidence.data["deprovisioned_users"], 1)

    def test_user_access_always_passes(self) -> None:
        self.session.get.return_value = make_response(
            200, [{"id": "u1", "status": "ACTIVE"}, {"id": "u2", "status": "SUSPENDED"}]
        )

        evidence = self.collector.collect("user_access", self.config)

        self.assertEqual(evidence.status, PASS)
        self.assertEqual(evidence.data["users_by_status"], {"ACTIVE": 1, "SUSPENDED": 1})

    def test_policy_compliance(self) -> None:
        self.session.get.return_value = make_response(
            200, [{"id": "p1", "name": "Default", "status": "INACTIVE", "type": "PASSWORD"}]
        )

        evidence = self.collector.collect("policy_compliance", self.config)

        self.assertEqual(evidence.status, WARNING)
        self.assertEqual(evidence.data["active_policies"], 0)
        self.assertEqual(self.session.get.call_args.kwargs["params"], {"limit": 200, "type": "PASSWORD"})

    def test_rate_limit_is_retried(self) -> None:
        self.session.get.side_effect = [
            make_response(429, headers={"X-Rate-Limit-Reset": "0"}),
            make_response(200, []),
        ]

        evidence = self.collector.collect("user_access", self.config)

        self.assertEqual(evidence.data["total_users"], 0)
        self.assertEqual(len(self.sleeps), 1)

    def test_invalid_token(self) -> None:
        self.session.get.return_value = make_response(401)

        with self.assertRaises(AuthenticationError):
            self.collector.collect("user_access", self.config)

        self.assertEqual(self.session.get.call_count, 1)

    def test_missing_org_url(self) -> None:
        with self.assertRaises(ConfigurationError):
            self.collector.collect("user_access", {"token": "00abc"})

    def test_test_connection_reports_failure(self) -> None:
        self.session.get.return_value = make_response(403)

        self.assertFalse(self.collector.test_connection(self.config))


if __name__ == "__main__":
    unittest.main()
