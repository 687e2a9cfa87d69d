"""
Proofline - Continuous Compliance Evidence Pipeline

Collects machine-checkable evidence from cloud and identity platforms, keeps
it in a tamper-evident hash chain, checks it against pass/fail policy, and
escalates failures to Slack and Jira.

Pipeline:
    Scheduler -> run-check job -> (no evidence) collect-<platform> job
    -> Collector (circuit breaker + retry) -> Evidence Ledger
    -> run-check re-evaluates -> Remediation Coordinator on FAIL

Design Principles:
    - Tamper evidence: every evidence record is hash-chained to its predecessor
    - Resilience: every external call runs inside a circuit breaker with retry
    - Explicit outcomes: remediation reports each step instead of swallowing errors
    - Read-only collection: collectors never modify the platforms they inspect
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from proofline.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
