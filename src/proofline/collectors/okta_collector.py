"""
Okta collector for Proofline.

Collects identity evidence from Okta: MFA enrollment for active users, user
lifecycle status counts, and password policy configuration. All API calls
are read-only.

Required Okta Permissions:
    - okta.users.read
    - okta.factors.read
    - okta.policies.read

Authentication:
    The decrypted integration config provides:
    - org_url (or orgUrl / domain): e.g. "https://your-org.okta.com"
    - token (or api_token): API token with read permissions

Rate Limiting:
    Okta enforces rate limits per API endpoint. This collector:
    - Warns when X-Rate-Limit-Remaining runs low
    - Converts X-Rate-Limit-Reset into RateLimitError.retry_after on 429
"""

from __future__ import annotations

import time
from collections import Counter
from typing import Any
from urllib.parse import urljoin

import requests

from proofline.collectors.base import (
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
    raise_for_api_status,
    rate_status,
)

MFA_ENFORCEMENT_THRESHOLD = 0.95
PAGE_SIZE = 200


@CollectorRegistry.register
class OktaCollector(BaseCollector):
    """
    Okta evidence collector.

    Aspects:
        - mfa_enforcement: share of ACTIVE users with at least one ACTIVE
          factor (OKTA_MFA_ENFORCEMENT, PASS at >= 95%, otherwise FAIL)
        - user_access: user counts by lifecycle status (OKTA_USER_ACCESS,
          always PASS)
        - policy_compliance: password policies (OKTA_POLICY_COMPLIANCE, PASS
          if any policy is ACTIVE, otherwise WARNING)

    Example:
        collector = CollectorRegistry.create("okta")
        evidence = collector.collect("mfa_enforcement", {
            "org_url": "https://acme.okta.com",
            "token": "00a...",
        })
    """

    platform = "okta"
    aspects = ("mfa_enforcement", "user_access", "policy_compliance")
    score_fields = {"mfa_enforcement": "mfa_compliance_rate"}

    def _client_config(self, config: dict[str, Any]) -> tuple[str, str]:
        """
        Normalize the org URL and token.

        Raises:
            ConfigurationError: If either is missing.
        """
        org_url = config.get("org_url") or config.get("orgUrl") or config.get("domain")
        token = config.get("token") or config.get("api_token")
        if not org_url or not token:
            raise ConfigurationError(
                "Integration config missing: org_url, token", self.platform
            )
        org_url = str(org_url).rstrip("/")
        if not org_url.startswith(("https://", "http://")):
            org_url = f"https://{org_url}"
        return org_url, token

    def _get_session(self, token: str) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"SSWS {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        return session

    def _api_request(
        self,
        session: requests.Session,
        url: str,
        params: dict[str, Any] | None = None,
    ) -> requests.Response:
        """
        GET an Okta API URL.

        Raises:
            AuthenticationError: If authentication fails.
            RateLimitError: If rate limit is exceeded.
            CollectorConnectionError: If connection fails.
        """
        start_time = time.time()
        try:
            response = session.get(url, params=params, timeout=30)
        except requests.exceptions.ConnectionError as e:
            raise CollectorConnectionError(
                f"Failed to connect to Okta: {e}", platform=self.platform
            )
        except requests.exceptions.Timeout as e:
            raise CollectorConnectionError(
                f"Okta request timed out: {e}", platform=self.platform
            )
        duration_ms = (time.time() - start_time) * 1000
        self._log_api_call("GET", url, response.status_code, duration_ms)

        remaining = response.headers.get("X-Rate-Limit-Remaining")
        if remaining and remaining.isdigit() and int(remaining) < 10:
            self.logger.warning(f"Rate limit low: {remaining} requests remaining")

        if response.status_code == 429:
            reset_time = response.headers.get("X-Rate-Limit-Reset")
            retry_after = None
            if reset_time and reset_time.isdigit():
                retry_after = max(0.0, int(reset_time) - time.time())
            raise RateLimitError(
                "Okta rate limit exceeded",
                platform=self.platform,
                retry_after=retry_after,
            )
        if response.status_code == 401:
            raise AuthenticationError(
                "Okta authentication failed. Check your API token.",
                platform=self.platform,
            )
        raise_for_api_status(response, self.platform)
        return response

    def _paginate(
        self,
        session: requests.Session,
        org_url: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Collect every page of a list endpoint.

        Okta uses Link headers for pagination with rel="next".
        """
        items: list[dict[str, Any]] = []
        next_url: str | None = urljoin(org_url + "/", endpoint.lstrip("/"))
        page_params: dict[str, Any] | None = {"limit": PAGE_SIZE, **(params or {})}

        while next_url:
            response = self._api_request(session, next_url, page_params)
            data = response.json()
            if not isinstance(data, list):
                break
            items.extend(data)

            # The next link already carries the query string
            page_params = None
            next_url = response.links.get("next", {}).get("url")

        return items

    def get_required_permissions(self) -> list[str]:
        return ["okta.users.read", "okta.factors.read", "okta.policies.read"]

    def test_connection(self, config: dict[str, Any]) -> bool:
        """List a single user to verify the org URL and token."""
        try:
            org_url, token = self._client_config(config)
            self._api_request(
                self._get_session(token), f"{org_url}/api/v1/users", {"limit": 1}
            )
            return True
        except CollectorError as e:
            self.logger.error(f"Okta connection check failed: {e}")
            return False

    def collect_mfa_enforcement(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Collect MFA factor enrollment for every user.

        Returns:
            CollectedEvidence of type OKTA_MFA_ENFORCEMENT.
        """
        org_url, token = self._client_config(config)
        session = self._get_session(token)
        users = self._paginate(session, org_url, "/api/v1/users")

        user_status = []
        for user in users:
            factors = self._api_request(
                session, f"{org_url}/api/v1/users/{user['id']}/factors"
            ).json()
            enrolled = [f for f in factors if f.get("status") == "ACTIVE"]
            profile = user.get("profile") or {}
            user_status.append(
                {
                    "user_id": user["id"],
                    "email": profile.get("email"),
                    "status": user.get("status"),
                    "has_mfa": len(enrolled) > 0,
                    "enrolled_factor_count": len(enrolled),
                    "factor_types": [f.get("factorType") for f in enrolled],
                }
            )

        active = [u for u in user_status if u["status"] == "ACTIVE"]
        active_with_mfa = [u for u in active if u["has_mfa"]]
        rate = len(active_with_mfa) / len(active) if active else 0.0

        self.logger.info(
            f"MFA enforcement evidence collected: "
            f"{len(active_with_mfa)}/{len(active)} active users have MFA"
        )

        return CollectedEvidence.create(
            "OKTA_MFA_ENFORCEMENT",
            {
                "total_users": len(users),
                "active_users": len(active),
                "active_users_with_mfa": len(active_with_mfa),
                "active_users_without_mfa": len(active) - len(active_with_mfa),
                "mfa_compliance_rate": rate,
                "users": user_status,
            },
            rate_status(rate, MFA_ENFORCEMENT_THRESHOLD),
        )

    def collect_user_access(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Count users by lifecycle status.

        Returns:
            CollectedEvidence of type OKTA_USER_ACCESS, always PASS.
        """
        org_url, token = self._client_config(config)
        users = self._paginate(self._get_session(token), org_url, "/api/v1/users")
        by_status = Counter(str(u.get("status")) for u in users)

        self.logger.info(f"User access evidence collected: {len(users)} total users")

        return CollectedEvidence.create(
            "OKTA_USER_ACCESS",
            {
                "total_users": len(users),
                "active_users": by_status.get("ACTIVE", 0),
                "suspended_users": by_status.get("SUSPENDED", 0),
                "deprovisioned_users": by_status.get("DEPROVISIONED", 0),
                "users_by_status": dict(by_status),
            },
            PASS,
        )

    def collect_policy_compliance(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Collect password policies.

        Returns:
            CollectedEvidence of type OKTA_POLICY_COMPLIANCE.
        """
        org_url, token = self._client_config(config)
        policies = self._paginate(
            self._get_session(token), org_url, "/api/v1/policies", {"type": "PASSWORD"}
        )
        details = [
            {
                "id": p.get("id"),
                "name": p.get("name"),
                "status": p.get("status"),
                "type": p.get("type"),
                "priority": p.get("priority"),
            }
            for p in policies
        ]
        active = sum(1 for p in policies if p.get("status") == "ACTIVE")

        self.logger.info(f"Policy compliance evidence collected: {active} active policies")

        return CollectedEvidence.create(
            "OKTA_POLICY_COMPLIANCE",
            {
                "total_policies": len(policies),
                "active_policies": active,
                "policies": details,
            },
            PASS if active > 0 else WARNING,
        )
