"""
Outbound integrations: alert notification and remediation ticketing.
"""

from proofline.integrations.jira import JiraTicketing
from proofline.integrations.slack import SEVERITY_COLORS, SlackNotifier

__all__ = ["JiraTicketing", "SlackNotifier", "SEVERITY_COLORS"]
