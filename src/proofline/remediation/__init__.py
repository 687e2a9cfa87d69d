"""
Remediation of failed compliance checks: alerting and ticketing.
"""

from proofline.remediation.coordinator import (
    RemediationCoordinator,
    RemediationError,
    RemediationOutcome,
    StepKind,
    StepResult,
    describe_failure,
)

__all__ = [
    "RemediationCoordinator",
    "RemediationError",
    "RemediationOutcome",
    "StepKind",
    "StepResult",
    "describe_failure",
]
