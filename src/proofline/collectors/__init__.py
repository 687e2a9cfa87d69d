"""
Platform collectors for evidence gathering.

Each collector authenticates with one platform using a decrypted integration
config, gathers evidence via read-only API calls, and normalizes the result
to {type, timestamp, data, status}.

Supported platforms:
    - AWS (IAM MFA, S3 encryption, CloudTrail activity)
    - GitHub (branch protection, commit signing, repository security)
    - Okta (MFA enforcement, user access, password policies)

All collectors inherit from BaseCollector and register themselves
with the CollectorRegistry for discovery.
"""

# Import collectors to trigger registration
from proofline.collectors.aws_collector import AwsCollector
from proofline.collectors.base import (
    AuthenticationError,
    BaseCollector,
    CollectedEvidence,
    CollectorConnectionError,
    CollectorError,
    CollectorRegistry,
    ConfigurationError,
    RateLimitError,
    UnknownAspectError,
)
from proofline.collectors.github_collector import GitHubCollector
from proofline.collectors.okta_collector import OktaCollector

__all__ = [
    # Base classes and types
    "BaseCollector",
    "CollectedEvidence",
    "CollectorRegistry",
    # Error classes
    "CollectorError",
    "AuthenticationError",
    "RateLimitError",
    "CollectorConnectionError",
    "ConfigurationError",
    "UnknownAspectError",
    # Platform collectors
    "AwsCollector",
    "GitHubCollector",
    "OktaCollector",
]
