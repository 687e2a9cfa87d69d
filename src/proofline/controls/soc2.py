"""
Built-in SOC 2 control catalog.

Loaded into the controls table by `proofline init`. Controls with an
integration_type are checked automatically by the matching collector; the
rest are manual controls that the scheduler still tracks.
"""

from __future__ import annotations

from proofline.storage.models import Control, Frequency

SOC2_CONTROLS: tuple[Control, ...] = (
    # CC1: Control Environment
    Control(
        id="CC1.1.1",
        title="Code of Conduct",
        frequency=Frequency.ANNUAL,
        description=(
            "The entity maintains a Code of Conduct and Ethics policy that is "
            "reviewed annually and signed by all employees."
        ),
        category="Governance",
    ),
    Control(
        id="CC1.1.2",
        title="Whistleblower Policy",
        frequency=Frequency.ANNUAL,
        description=(
            "A whistleblower policy allows employees to report incidents "
            "anonymously without fear of retaliation."
        ),
        category="Governance",
    ),
    Control(
        id="CC1.2.1",
        title="Board Oversight",
        frequency=Frequency.QUARTERLY,
        description=(
            "The Board of Directors meets quarterly to review security, "
            "compliance, and privacy risks."
        ),
        category="Governance",
    ),
    Control(
        id="CC1.3.1",
        title="Organizational Chart",
        frequency=Frequency.QUARTERLY,
        description=(
            "An organizational chart is maintained to define reporting lines "
            "and responsibilities."
        ),
        category="Governance",
    ),
    Control(
        id="CC1.3.2",
        title="Job Descriptions",
        frequency=Frequency.ANNUAL,
        description="Job descriptions clearly define security roles and responsibilities.",
        category="HR",
    ),
    Control(
        id="CC1.4.1",
        title="Background Checks",
        frequency=Frequency.WEEKLY,
        description="Background checks are performed for all new hires prior to employment.",
        category="HR",
    ),
    Control(
        id="CC1.4.2",
        title="Confidentiality Agreements",
        frequency=Frequency.WEEKLY,
        description=(
            "All employees and contractors sign confidentiality agreements upon hire."
        ),
        category="HR",
    ),
    Control(
        id="CC1.5.1",
        title="Performance Reviews",
        frequency=Frequency.ANNUAL,
        description=(
            "Annual performance reviews evaluate employee adherence to security "
            "responsibilities."
        ),
        category="HR",
    ),
    # CC2: Communication and Information
    Control(
        id="CC2.1.1",
        title="Security Awareness Training",
        frequency=Frequency.MONTHLY,
        integration_type="okta",
        description=(
            "All employees complete security awareness training upon hire and "
            "annually thereafter."
        ),
        category="HR",
    ),
    Control(
        id="CC2.2.1",
        title="Internal Security Communication",
        frequency=Frequency.MONTHLY,
        integration_type="slack",
        description=(
            "Security updates and policy changes are communicated to employees "
            "via Slack or email."
        ),
        category="Communication",
    ),
    Control(
        id="CC2.3.1",
        title="External Vulnerability Disclosure",
        frequency=Frequency.ANNUAL,
        description=(
            "A process exists for external researchers to report security "
            "vulnerabilities."
        ),
        category="Communication",
    ),
    # CC3: Risk Assessment
    Control(
        id="CC3.1.1",
        title="Annual Risk Assessment",
        frequency=Frequency.ANNUAL,
        description=(
            "A formal risk assessment is conducted annually to identify threats "
            "and vulnerabilities."
        ),
        category="Risk",
    ),
    Control(
        id="CC3.2.1",
        title="Fraud Risk Assessment",
        frequency=Frequency.ANNUAL,
        description=(
            "The risk assessment specifically considers fraud risks and potential "
            "incentives."
        ),
        category="Risk",
    ),
    Control(
        id="CC3.4.1",
        title="Change Impact Analysis",
        frequency=Frequency.MONTHLY,
        integration_type="jira",
        description=(
            "Significant changes to infrastructure or applications undergo a risk "
            "assessment."
        ),
        category="Risk",
    ),
    # CC4: Monitoring Activities
    Control(
        id="CC4.1.1",
        title="Vendor Reviews",
        frequency=Frequency.ANNUAL,
        description=(
            "Critical vendors are reviewed annually for security compliance "
            "(SOC 2, ISO 27001)."
        ),
        category="Vendor Management",
    ),
    Control(
        id="CC4.2.1",
        title="Internal Audit",
        frequency=Frequency.ANNUAL,
        description="Periodic internal audits are performed to assess control effectiveness.",
        category="Monitoring",
    ),
    # CC5: Control Activities
    Control(
        id="CC5.1.1",
        title="Information Security Policy",
        frequency=Frequency.ANNUAL,
        description=(
            "A master InfoSec policy is maintained, reviewed annually, and "
            "approved by management."
        ),
        category="Governance",
    ),
    Control(
        id="CC5.2.1",
        title="Acceptable Use Policy",
        frequency=Frequency.ANNUAL,
        description=(
            "An AUP defines acceptable use of company assets and is acknowledged "
            "by all users."
        ),
        category="Governance",
    ),
    Control(
        id="CC5.3.1",
        title="Clean Desk Policy",
        frequency=Frequency.DAILY,
        integration_type="okta",
        description=(
            "Policy requires unattended computers to be locked and sensitive "
            "documents secured."
        ),
        category="Security",
    ),
    # CC6: Logical and Physical Access Controls
    Control(
        id="CC6.1.1",
        title="Access Request and Approval",
        frequency=Frequency.WEEKLY,
        integration_type="jira",
        description="Access to systems is granted only upon documented request and approval.",
        category="Access Control",
    ),
    Control(
        id="CC6.1.2",
        title="MFA Enforcement (AWS)",
        frequency=Frequency.DAILY,
        integration_type="aws",
        description="Multi-Factor Authentication is enforced for all AWS IAM users.",
        category="Access Control",
    ),
    Control(
        id="CC6.1.3",
        title="MFA Enforcement (Identity Provider)",
        frequency=Frequency.DAILY,
        integration_type="okta",
        description="Multi-Factor Authentication is enforced for all active workforce users.",
        category="Access Control",
    ),
    Control(
        id="CC6.1.4",
        title="Password Policy",
        frequency=Frequency.WEEKLY,
        integration_type="okta",
        description="An active password policy governs workforce authentication.",
        category="Access Control",
    ),
    Control(
        id="CC6.2.1",
        title="User Provisioning",
        frequency=Frequency.WEEKLY,
        integration_type="okta",
        description="User accounts are provisioned and tracked through the identity provider.",
        category="Access Control",
    ),
    Control(
        id="CC6.2.2",
        title="Termination Procedures",
        frequency=Frequency.WEEKLY,
        integration_type="okta",
        description="Access is suspended or deprovisioned promptly when users leave.",
        category="Access Control",
    ),
    Control(
        id="CC6.7.1",
        title="Encryption at Rest",
        frequency=Frequency.DAILY,
        integration_type="aws",
        description="All object storage buckets enforce default server-side encryption.",
        category="Data Protection",
    ),
    # CC7: System Operations
    Control(
        id="CC7.2.2",
        title="Vulnerability Scanning",
        frequency=Frequency.WEEKLY,
        integration_type="github",
        description=(
            "Source repositories have vulnerability alerts and secret scanning enabled."
        ),
        category="Monitoring",
    ),
    Control(
        id="CC7.2.3",
        title="Audit Logging",
        frequency=Frequency.DAILY,
        integration_type="aws",
        description="Cloud API activity is captured in audit logs.",
        category="Monitoring",
    ),
    # CC8: Change Management
    Control(
        id="CC8.1.1",
        title="Branch Protection",
        frequency=Frequency.DAILY,
        integration_type="github",
        description="Production branches require reviewed pull requests before merge.",
        category="Change Management",
    ),
    Control(
        id="CC8.1.2",
        title="Signed Commits",
        frequency=Frequency.WEEKLY,
        integration_type="github",
        description="Commits to source repositories carry verified signatures.",
        category="Change Management",
    ),
)
