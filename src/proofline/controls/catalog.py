"""
Static control catalog: which collector aspect gathers evidence for a control,
and how often a control is re-checked.

Resolution Order:
    1. EXACT: the control ID is listed in CONTROL_CAPABILITIES with a
       capability for the integration's platform.
    2. PREFIX: the longest matching entry in PREFIX_RULES ("CC6.1" matches
       "CC6.1" and "CC6.1.4" but not "CC6.10") with a capability for the
       platform.
    3. FALLBACK: the platform's default aspect from DEFAULT_ASPECTS. Logged
       as a warning so unmapped controls are visible.

validate_catalog() checks every entry against the CollectorRegistry and is
run once when the pipeline starts, so a typo in an aspect name fails fast
instead of on the first job.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from proofline.collectors.base import CollectorRegistry
from proofline.storage.models import Frequency

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Raised when a control cannot be mapped to a collector capability."""

    permanent = True


class MatchKind(Enum):
    """How a capability was resolved."""

    EXACT = "exact"
    PREFIX = "prefix"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class CollectorCapability:
    """One collector aspect on one platform."""

    platform: str
    aspect: str

    def __str__(self) -> str:
        return f"{self.platform}.{self.aspect}"


@dataclass(frozen=True)
class CapabilityResolution:
    """Resolved capability plus how it was found."""

    control_id: str
    capability: CollectorCapability
    match: MatchKind
    rule: str | None = None


def _cap(platform: str, aspect: str) -> CollectorCapability:
    return CollectorCapability(platform, aspect)


# Control ID -> capabilities, at most one per platform
CONTROL_CAPABILITIES: dict[str, tuple[CollectorCapability, ...]] = {
    "CC6.1.2": (_cap("aws", "iam_mfa"),),
    "CC6.1.3": (_cap("okta", "mfa_enforcement"), _cap("aws", "iam_mfa")),
    "CC6.1.4": (_cap("okta", "policy_compliance"),),
    "CC6.2.1": (_cap("okta", "user_access"),),
    "CC6.2.2": (_cap("okta", "user_access"),),
    "CC6.7.1": (_cap("aws", "s3_encryption"),),
    "CC7.2.2": (_cap("github", "repository_security"),),
    "CC7.2.3": (_cap("aws", "cloudtrail_logging"),),
    "CC8.1.1": (_cap("github", "branch_protection"),),
    "CC8.1.2": (_cap("github", "commit_signing"),),
}

# Control ID prefix -> capabilities, matched on whole dotted segments
PREFIX_RULES: dict[str, tuple[CollectorCapability, ...]] = {
    "CC6.1": (_cap("aws", "iam_mfa"), _cap("okta", "mfa_enforcement")),
    "CC6.2": (_cap("okta", "user_access"), _cap("github", "commit_signing")),
    "CC6.7": (_cap("aws", "s3_encryption"),),
    "CC7.2": (_cap("aws", "cloudtrail_logging"), _cap("github", "repository_security")),
    "CC8.1": (_cap("github", "branch_protection"),),
}

# Platform -> aspect used when nothing above matches
DEFAULT_ASPECTS: dict[str, str] = {
    "aws": "iam_mfa",
    "github": "branch_protection",
    "okta": "mfa_enforcement",
}


def _prefix_matches(prefix: str, control_id: str) -> bool:
    return control_id == prefix or control_id.startswith(prefix + ".")


def _for_platform(
    capabilities: tuple[CollectorCapability, ...], platform: str
) -> CollectorCapability | None:
    for capability in capabilities:
        if capability.platform == platform:
            return capability
    return None


def resolve_capability(control_id: str, platform: str) -> CapabilityResolution:
    """
    Resolve the collector aspect for a control on a given platform.

    Args:
        control_id: Control identifier (e.g., "CC6.1.2").
        platform: Integration type of the collecting integration.

    Returns:
        CapabilityResolution with the match kind.

    Raises:
        CatalogError: If the platform has no collector.
    """
    exact = _for_platform(CONTROL_CAPABILITIES.get(control_id, ()), platform)
    if exact is not None:
        return CapabilityResolution(control_id, exact, MatchKind.EXACT, control_id)

    for prefix in sorted(PREFIX_RULES, key=len, reverse=True):
        if _prefix_matches(prefix, control_id):
            capability = _for_platform(PREFIX_RULES[prefix], platform)
            if capability is not None:
                return CapabilityResolution(control_id, capability, MatchKind.PREFIX, prefix)

    default_aspect = DEFAULT_ASPECTS.get(platform)
    if default_aspect is None:
        raise CatalogError(f"No collector for integration type '{platform}'")

    logger.warning(
        f"Control {control_id} has no {platform} mapping, "
        f"falling back to default aspect '{default_aspect}'"
    )
    return CapabilityResolution(
        control_id, _cap(platform, default_aspect), MatchKind.FALLBACK
    )


def collector_platforms() -> list[str]:
    """Platforms that can collect evidence."""
    return sorted(DEFAULT_ASPECTS)


def validate_catalog(registry: type[CollectorRegistry] = CollectorRegistry) -> None:
    """
    Check every catalog entry against the registered collectors.

    Raises:
        CatalogError: Listing every invalid entry.
    """
    problems: list[str] = []

    def check(where: str, capability: CollectorCapability) -> None:
        collector_class = registry.get_collector_class(capability.platform)
        if collector_class is None:
            problems.append(f"{where}: platform '{capability.platform}' is not registered")
        elif not collector_class.supports(capability.aspect):
            problems.append(f"{where}: {capability} is not implemented")

    for control_id, capabilities in CONTROL_CAPABILITIES.items():
        platforms = [c.platform for c in capabilities]
        if len(platforms) != len(set(platforms)):
            problems.append(f"{control_id}: more than one capability per platform")
        for capability in capabilities:
            check(control_id, capability)

    for prefix, capabilities in PREFIX_RULES.items():
        for capability in capabilities:
            check(f"prefix {prefix}", capability)

    for platform, aspect in DEFAULT_ASPECTS.items():
        check(f"default for {platform}", _cap(platform, aspect))

    for platform in registry.get_platforms():
        if platform not in DEFAULT_ASPECTS:
            problems.append(f"registered platform '{platform}' has no default aspect")

    if problems:
        raise CatalogError("Invalid control catalog:\n  " + "\n  ".join(problems))

    logger.debug(
        f"Control catalog valid: {len(CONTROL_CAPABILITIES)} exact, "
        f"{len(PREFIX_RULES)} prefix rules"
    )


# -----------------------------------------------------------------------------
# Check Frequency
# -----------------------------------------------------------------------------


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_check_at(checked_at: datetime, frequency: Frequency | str | None) -> datetime:
    """
    When a control is next due.

    DAILY +1 day, WEEKLY +7 days, MONTHLY +1 month, QUARTERLY +3 months,
    ANNUAL +1 year (Feb 29 becomes Feb 28). Anything else is treated as daily.
    """
    if isinstance(frequency, str):
        try:
            frequency = Frequency(frequency.upper())
        except ValueError:
            frequency = None

    if frequency == Frequency.WEEKLY:
        return checked_at + timedelta(days=7)
    if frequency == Frequency.MONTHLY:
        return add_months(checked_at, 1)
    if frequency == Frequency.QUARTERLY:
        return add_months(checked_at, 3)
    if frequency == Frequency.ANNUAL:
        return add_months(checked_at, 12)
    return checked_at + timedelta(days=1)
