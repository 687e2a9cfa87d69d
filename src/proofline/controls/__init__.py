"""
Control catalog for Proofline.

Maps control identifiers to collector capabilities, computes check due
dates from control frequencies, and ships the built-in SOC 2 controls.
"""

from proofline.controls.catalog import (
    CapabilityResolution,
    CatalogError,
    CollectorCapability,
    MatchKind,
    collector_platforms,
    next_check_at,
    resolve_capability,
    validate_catalog,
)
from proofline.controls.soc2 import SOC2_CONTROLS

__all__ = [
    "CapabilityResolution",
    "CatalogError",
    "CollectorCapability",
    "MatchKind",
    "SOC2_CONTROLS",
    "collector_platforms",
    "next_check_at",
    "resolve_capability",
    "validate_catalog",
]
