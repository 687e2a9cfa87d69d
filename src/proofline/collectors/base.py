"""
Base collector interface for evidence gathering.

This module provides the abstract base class for all platform collectors,
along with the normalized evidence result and error types. Each collector
exposes one or more aspects as collect_<aspect>(config) methods and a generic
collect(aspect, config) entry point that runs the aspect through the
collector's own circuit breaker and retry policy.

Design Principles:
    - All API calls are read-only (no write operations)
    - Each collector instance owns exactly one circuit breaker
    - Errors from the external API propagate unchanged to the resilience layer
    - Evidence is normalized to {type, timestamp, data, status}
    - Every API call is logged with method, endpoint, status and duration
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import requests

from proofline.resilience import (
    BreakerStateStore,
    CircuitBreaker,
    CircuitOpenError,
    RetryPolicy,
    call_with_resilience,
)

# -----------------------------------------------------------------------------
# Error Classes
# -----------------------------------------------------------------------------


class CollectorError(Exception):
    """Base exception for collector errors."""

    def __init__(self, message: str, platform: str | None = None) -> None:
        self.message = message
        self.platform = platform
        super().__init__(f"[{platform}] {message}" if platform else message)


class AuthenticationError(CollectorError):
    """
    Raised when authentication with a platform fails.

    This includes invalid credentials, expired tokens, and permission denials.
    Not retried by the inner retry loop.
    """

    pass


class RateLimitError(CollectorError):
    """
    Raised when a platform rate limit is exceeded.

    Attributes:
        retry_after: Seconds to wait before retrying (if provided by API).
    """

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, platform)
        self.retry_after = retry_after


class CollectorConnectionError(CollectorError):
    """
    Raised when connection to a platform fails.

    This includes network errors, DNS failures, timeouts and 5xx responses.
    """

    pass


class ConfigurationError(CollectorError):
    """Raised when the decrypted integration config is missing required keys."""

    pass


class UnknownAspectError(CollectorError):
    """Raised when a collector is asked for an aspect it does not implement."""

    pass


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------

PASS = "PASS"
FAIL = "FAIL"
WARNING = "WARNING"


@dataclass
class CollectedEvidence:
    """
    Normalized result of one evidence-gathering operation.

    Attributes:
        type: Evidence type identifier (e.g., "IAM_MFA_ENFORCEMENT").
        timestamp: UTC time the evidence was gathered.
        data: Platform-specific observations, including the computed rate.
        status: PASS, FAIL or WARNING derived from the aspect's threshold.
    """

    type: str
    timestamp: datetime
    data: dict[str, Any]
    status: str

    @classmethod
    def create(cls, evidence_type: str, data: dict[str, Any], status: str) -> CollectedEvidence:
        """Create evidence stamped with the current UTC time."""
        return cls(
            type=evidence_type,
            timestamp=datetime.now(UTC),
            data=data,
            status=status,
        )

    def to_payload(self) -> dict[str, Any]:
        """Convert to the JSON-compatible payload stored by the ledger."""
        return {
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "status": self.status,
        }


def rate_status(rate: float, threshold: float, below: str = FAIL) -> str:
    """
    Compare a compliance rate against a threshold.

    Args:
        rate: Fraction of compliant resources (0.0 - 1.0).
        threshold: Minimum fraction required to pass.
        below: Status to report when the rate is under the threshold.

    Returns:
        PASS if rate >= threshold, otherwise ``below``.
    """
    return PASS if rate >= threshold else below


def raise_for_api_status(
    response: requests.Response,
    platform: str,
    retry_after_header: str = "Retry-After",
) -> None:
    """
    Map an HTTP error response to the collector error hierarchy.

    Raises:
        RateLimitError: On 429.
        AuthenticationError: On 401 or 403.
        CollectorConnectionError: On 5xx.
        CollectorError: On any other 4xx.
    """
    status = response.status_code
    if status < 400:
        return

    if status == 429:
        retry_after = None
        header = response.headers.get(retry_after_header)
        if header:
            try:
                retry_after = max(0.0, float(header))
            except ValueError:
                retry_after = None
        raise RateLimitError(f"{platform} rate limit exceeded", platform, retry_after)

    if status in (401, 403):
        raise AuthenticationError(
            f"{platform} rejected the credentials (HTTP {status})", platform
        )

    if status >= 500:
        raise CollectorConnectionError(f"{platform} server error (HTTP {status})", platform)

    raise CollectorError(f"{platform} API error (HTTP {status}): {response.text[:200]}", platform)


# -----------------------------------------------------------------------------
# Base Collector
# -----------------------------------------------------------------------------


class BaseCollector(ABC):
    """
    Abstract base class for platform collectors.

    Subclasses set ``platform``, list their aspects in ``aspects`` (the first
    entry is the default aspect for the platform) and implement one
    ``collect_<aspect>(config)`` method per aspect.

    Attributes:
        platform: String identifier for the platform (e.g., "aws", "okta").
        aspects: Aspect names this collector implements.
        circuit_breaker: Breaker guarding every call made by this instance.
        retry_policy: Inner retry policy applied inside the breaker.
        logger: Logger instance for this collector.

    Example:
        collector = CollectorRegistry.create("okta")
        evidence = collector.collect("mfa_enforcement", decrypted_config)
    """

    # Subclasses must set this to their platform identifier
    platform: str = "base"

    # Aspect names; the first is the platform default
    aspects: tuple[str, ...] = ()

    # Aspect -> data field holding a 0..1 rate used for the health score.
    # Aspects not listed score 1.0 on PASS and 0.5 otherwise.
    score_fields: dict[str, str] = {}

    def __init__(
        self,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        """
        Initialize the collector.

        Args:
            circuit_breaker: Breaker for this collector. A fresh in-memory
                breaker named after the platform is created if omitted.
            retry_policy: Inner retry policy. Authentication errors are
                always treated as non-retryable.
            sleep: Sleep function used for backoff, replaceable in tests.
        """
        self.logger = logging.getLogger(f"proofline.collectors.{self.platform}")
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name=self.platform)

        policy = retry_policy or RetryPolicy()
        non_retryable = tuple(
            {*policy.non_retryable, AuthenticationError, ConfigurationError}
        )
        self.retry_policy = RetryPolicy(
            max_attempts=policy.max_attempts,
            base_delay_ms=policy.base_delay_ms,
            non_retryable=non_retryable,
        )
        self._sleep = sleep

    @classmethod
    def default_aspect(cls) -> str:
        """Aspect used when a control has no explicit mapping."""
        if not cls.aspects:
            raise UnknownAspectError("Collector declares no aspects", cls.platform)
        return cls.aspects[0]

    @classmethod
    def supports(cls, aspect: str) -> bool:
        """Check whether this collector implements an aspect."""
        return aspect in cls.aspects and callable(getattr(cls, f"collect_{aspect}", None))

    def collect(self, aspect: str, config: dict[str, Any]) -> CollectedEvidence:
        """
        Collect one aspect through the circuit breaker and retry loop.

        Args:
            aspect: Aspect name, e.g. "iam_mfa".
            config: Decrypted integration configuration.

        Returns:
            Normalized CollectedEvidence.

        Raises:
            UnknownAspectError: If the aspect is not implemented.
            CircuitOpenError: If the breaker is open.
            CollectorError: If the external call fails after retries.
        """
        if not self.supports(aspect):
            raise UnknownAspectError(f"Unknown aspect '{aspect}'", self.platform)

        method: Callable[[dict[str, Any]], CollectedEvidence] = getattr(
            self, f"collect_{aspect}"
        )
        self.logger.info(f"Collecting {self.platform} {aspect} evidence...")
        return self._guarded(lambda: method(config))

    def _guarded(self, call: Callable[[], Any]) -> Any:
        """Run a call as breaker.execute(retry_with_backoff(call))."""
        return call_with_resilience(
            self.circuit_breaker, call, self.retry_policy, sleep=self._sleep
        )

    def health_score(self, config: dict[str, Any]) -> float:
        """
        Score the platform's compliance posture from 0.0 to 1.0.

        Collects every supported aspect and averages the per-aspect scores.
        A platform that cannot be reached scores 0.0.

        Args:
            config: Decrypted integration configuration.

        Returns:
            Mean aspect score.
        """
        scores = []
        try:
            for aspect in self.aspects:
                if self.supports(aspect):
                    scores.append(self._aspect_score(aspect, self.collect(aspect, config)))
        except (CollectorError, CircuitOpenError) as e:
            self.logger.error(f"Failed to calculate {self.platform} health score: {e}")
            return 0.0

        if not scores:
            return 0.0
        score = sum(scores) / len(scores)
        self.logger.info(f"{self.platform} health score calculated: {score * 100:.2f}%")
        return score

    def _aspect_score(self, aspect: str, evidence: CollectedEvidence) -> float:
        field_name = self.score_fields.get(aspect)
        if field_name is not None:
            return float(evidence.data.get(field_name, 0.0))
        return 1.0 if evidence.status == PASS else 0.5

    def get_circuit_breaker_status(self) -> dict[str, Any]:
        """Breaker state and failure count for monitoring."""
        return self.circuit_breaker.status()

    @abstractmethod
    def test_connection(self, config: dict[str, Any]) -> bool:
        """
        Test connectivity to the platform.

        Returns:
            True if the credentials can make a basic read call.
        """
        pass

    @abstractmethod
    def get_required_permissions(self) -> list[str]:
        """
        Get the list of permissions required for this collector.

        Returns:
            List of permission strings (format varies by platform).
        """
        pass

    def _require(self, config: dict[str, Any], *keys: str) -> list[Any]:
        """
        Fetch required keys from a decrypted config.

        Raises:
            ConfigurationError: If any key is missing or empty.
        """
        missing = [key for key in keys if not config.get(key)]
        if missing:
            raise ConfigurationError(
                f"Integration config missing: {', '.join(missing)}", self.platform
            )
        return [config[key] for key in keys]

    def _log_api_call(
        self,
        method: str,
        endpoint: str,
        status_code: int | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """
        Log an API call for audit trail.

        Args:
            method: HTTP method (GET, POST, etc.).
            endpoint: API endpoint URL or path.
            status_code: Response status code (if available).
            duration_ms: Request duration in milliseconds.
        """
        msg = f"API call: {method} {endpoint}"
        if status_code is not None:
            msg += f" -> {status_code}"
        if duration_ms is not None:
            msg += f" ({duration_ms:.0f}ms)"
        self.logger.info(msg)


# -----------------------------------------------------------------------------
# Collector Registry
# -----------------------------------------------------------------------------


class CollectorRegistry:
    """
    Registry for discovering and instantiating collectors.

    The registry maintains a mapping of platform names to collector classes,
    allowing the control catalog to be validated against the available
    aspects and the workers to instantiate collectors consistently.

    Example:
        # Register a collector
        CollectorRegistry.register(AwsCollector)

        # Create a collector instance with its own breaker
        collector = CollectorRegistry.create("aws")
    """

    _collectors: dict[str, type[BaseCollector]] = {}

    @classmethod
    def register(cls, collector_class: type[BaseCollector]) -> type[BaseCollector]:
        """
        Register a collector class.

        Can be used as a decorator:
            @CollectorRegistry.register
            class MyCollector(BaseCollector):
                platform = "my_platform"

        Raises:
            ValueError: If the collector has no platform or no aspects.
        """
        platform = collector_class.platform
        if platform == "base":
            raise ValueError(
                f"Collector class {collector_class.__name__} must define 'platform'"
            )
        if not collector_class.aspects:
            raise ValueError(
                f"Collector class {collector_class.__name__} must define 'aspects'"
            )
        cls._collectors[platform] = collector_class
        logging.getLogger("proofline.collectors.registry").debug(
            f"Registered collector: {platform} -> {collector_class.__name__}"
        )
        return collector_class

    @classmethod
    def get_platforms(cls) -> list[str]:
        """Get all registered platform names."""
        return sorted(cls._collectors.keys())

    @classmethod
    def get_collector_class(cls, platform: str) -> type[BaseCollector] | None:
        """Get the collector class for a platform, or None if not registered."""
        return cls._collectors.get(platform)

    @classmethod
    def create(
        cls,
        platform: str,
        retry_policy: RetryPolicy | None = None,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60_000,
        breaker_store: BreakerStateStore | None = None,
    ) -> BaseCollector:
        """
        Create a collector instance with its own circuit breaker.

        Raises:
            ValueError: If the platform is not registered.
        """
        collector_class = cls._collectors.get(platform)
        if collector_class is None:
            raise ValueError(
                f"Unknown platform: {platform}. "
                f"Available: {', '.join(cls.get_platforms())}"
            )
        breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            reset_timeout_ms=reset_timeout_ms,
            name=f"collector:{platform}",
            store=breaker_store,
        )
        return collector_class(circuit_breaker=breaker, retry_policy=retry_policy)

    @classmethod
    def is_registered(cls, platform: str) -> bool:
        """Check if a platform is registered."""
        return platform in cls._collectors

    @classmethod
    def clear(cls) -> None:
        """
        Clear all registered collectors.

        Primarily used for testing.
        """
        cls._collectors.clear()
