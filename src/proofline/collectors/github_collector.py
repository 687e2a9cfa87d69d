"""
GitHub collector for Proofline.

Collects change-management and repository security evidence from the GitHub
REST API. All API calls are read-only.

Required Token Scopes:
    - repo (branch protection and vulnerability alert status on private repos)
    - read:org

Authentication:
    The decrypted integration config provides:
    - owner (or organization): account or organization that owns the repos
    - repos (list) or repo (single name): repositories to inspect
    - token (or personal_access_token): personal access token
    - api_url (optional): GitHub Enterprise API base URL

Rate Limiting:
    429 and secondary-rate-limit 403 responses with Retry-After raise
    RateLimitError so the retry loop waits the advertised time.
"""

from __future__ import annotations

import time
from typing import Any

import requests

from proofline.collectors.base import (
    WARNING,
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

DEFAULT_API_URL = "https://api.github.com"
MAIN_BRANCH_NAMES = ("main", "master", "production")
COMMIT_SAMPLE_SIZE = 20

BRANCH_PROTECTION_THRESHOLD = 1.0
COMMIT_SIGNING_THRESHOLD = 0.8
REPOSITORY_SECURITY_THRESHOLD = 0.75


@CollectorRegistry.register
class GitHubCollector(BaseCollector):
    """
    GitHub evidence collector.

    Aspects:
        - branch_protection: share of main/master/production branches with
          protection rules (BRANCH_PROTECTION, PASS only at 100%; no main
          branches counts as 100%)
        - commit_signing: share of the latest 20 commits per repo with a
          verified signature (COMMIT_SIGNING, PASS at >= 80%, else WARNING)
        - repository_security: mean per-repo score over vulnerability alerts,
          secret scanning and private visibility (REPOSITORY_SECURITY, PASS
          at >= 75%, else WARNING)

    A repository that returns 404 is recorded with zero counts and a warning.
    Authentication, rate limit and server errors propagate.
    """

    platform = "github"
    aspects = ("branch_protection", "commit_signing", "repository_security")
    score_fields = {
        "branch_protection": "compliance_rate",
        "commit_signing": "signing_rate",
        "repository_security": "security_score",
    }

    def _client_config(self, config: dict[str, Any]) -> tuple[str, list[str], str]:
        """
        Normalize owner, repos and token from the decrypted config.

        Raises:
            ConfigurationError: If owner or token is missing.
        """
        owner = config.get("owner") or config.get("organization")
        repos = config.get("repos") or ([config["repo"]] if config.get("repo") else [])
        token = config.get("token") or config.get("personal_access_token")
        if not owner or not token:
            raise ConfigurationError(
                "Integration config missing: owner, token", self.platform
            )
        return owner, list(repos), token

    def _get_session(self, token: str) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )
        return session

    def _api_request(
        self,
        session: requests.Session,
        config: dict[str, Any],
        endpoint: str,
        params: dict[str, Any] | None = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> requests.Response:
        """
        GET a GitHub API endpoint.

        Args:
            session: Authenticated session.
            config: Decrypted config (for api_url).
            endpoint: Path starting with "/".
            params: Query parameters.
            allow_statuses: Error statuses returned to the caller instead of
                raising (e.g. 404 for "not configured").

        Raises:
            AuthenticationError: On 401 or 403.
            RateLimitError: On 429 or a secondary rate limit.
            CollectorConnectionError: On network failures and 5xx.
        """
        base_url = (config.get("api_url") or DEFAULT_API_URL).rstrip("/")
        url = f"{base_url}{endpoint}"
        start_time = time.time()
        try:
            response = session.get(url, params=params, timeout=30)
        except requests.exceptions.ConnectionError as e:
            raise CollectorConnectionError(
                f"Failed to connect to GitHub: {e}", platform=self.platform
            )
        except requests.exceptions.Timeout as e:
            raise CollectorConnectionError(
                f"GitHub request timed out: {e}", platform=self.platform
            )
        duration_ms = (time.time() - start_time) * 1000
        self._log_api_call("GET", endpoint, response.status_code, duration_ms)

        if response.status_code in allow_statuses:
            return response

        # Secondary rate limits come back as 403 with Retry-After
        if response.status_code == 403 and response.headers.get("Retry-After"):
            raise RateLimitError(
                "GitHub secondary rate limit exceeded",
                platform=self.platform,
                retry_after=float(response.headers["Retry-After"]),
            )
        raise_for_api_status(response, self.platform)
        return response

    def get_required_permissions(self) -> list[str]:
        return ["repo", "read:org"]

    def test_connection(self, config: dict[str, Any]) -> bool:
        """Verify the token with GET /user."""
        try:
            _, _, token = self._client_config(config)
            self._api_request(self._get_session(token), config, "/user")
            return True
        except CollectorError as e:
            self.logger.error(f"GitHub connection check failed: {e}")
            return False

    def collect_branch_protection(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Collect branch protection status for main branches.

        Returns:
            CollectedEvidence of type BRANCH_PROTECTION.
        """
        owner, repos, token = self._client_config(config)
        session = self._get_session(token)
        self.logger.info(
            f"Collecting branch protection evidence for {owner} across {len(repos)} repos..."
        )

        repo_results = []
        for repo in repos:
            response = self._api_request(
                session,
                config,
                f"/repos/{owner}/{repo}/branches",
                params={"per_page": 100},
                allow_statuses=(404,),
            )
            if response.status_code == 404:
                self.logger.warning(f"Repository {owner}/{repo} not found")
                repo_results.append({"repo": repo, "total_main": 0, "protected_main": 0})
                continue

            main_branches = [
                b["name"] for b in response.json() if b.get("name") in MAIN_BRANCH_NAMES
            ]
            protected = 0
            for branch in main_branches:
                protection = self._api_request(
                    session,
                    config,
                    f"/repos/{owner}/{repo}/branches/{branch}/protection",
                    allow_statuses=(404,),
                )
                if protection.status_code != 404:
                    protected += 1
            repo_results.append(
                {
                    "repo": repo,
                    "total_main": len(main_branches),
                    "protected_main": protected,
                }
            )

        total_main = sum(r["total_main"] for r in repo_results)
        protected_main = sum(r["protected_main"] for r in repo_results)
        rate = protected_main / total_main if total_main > 0 else 1.0

        return CollectedEvidence.create(
            "BRANCH_PROTECTION",
            {
                "owner": owner,
                "total_repos": len(repos),
                "total_main_branches": total_main,
                "protected_main_branches": protected_main,
                "compliance_rate": rate,
                "repos": repo_results,
            },
            rate_status(rate, BRANCH_PROTECTION_THRESHOLD),
        )

    def collect_commit_signing(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Collect signature verification for recent commits.

        Returns:
            CollectedEvidence of type COMMIT_SIGNING.
        """
        owner, repos, token = self._client_config(config)
        session = self._get_session(token)
        self.logger.info(
            f"Collecting commit signing evidence for {owner} across {len(repos)} repos..."
        )

        repo_results = []
        for repo in repos:
            response = self._api_request(
                session,
                config,
                f"/repos/{owner}/{repo}/commits",
                params={"per_page": COMMIT_SAMPLE_SIZE},
                allow_statuses=(404, 409),  # 409: empty repository
            )
            if response.status_code in (404, 409):
                repo_results.append({"repo": repo, "total": 0, "verified": 0})
                continue
            commits = response.json()
            verified = sum(
                1
                for c in commits
                if (c.get("commit", {}).get("verification") or {}).get("verified")
            )
            repo_results.append({"repo": repo, "total": len(commits), "verified": verified})

        total = sum(r["total"] for r in repo_results)
        signed = sum(r["verified"] for r in repo_results)
        rate = signed / total if total > 0 else 0.0

        return CollectedEvidence.create(
            "COMMIT_SIGNING",
            {
                "owner": owner,
                "total_repos": len(repos),
                "total_commits": total,
                "signed_commits": signed,
                "signing_rate": rate,
                "repos": repo_results,
            },
            rate_status(rate, COMMIT_SIGNING_THRESHOLD, below=WARNING),
        )

    def collect_repository_security(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Score repository security features.

        Each repository scores the fraction of: vulnerability alerts enabled,
        secret scanning enabled, private visibility.

        Returns:
            CollectedEvidence of type REPOSITORY_SECURITY.
        """
        owner, repos, token = self._client_config(config)
        session = self._get_session(token)
        self.logger.info(
            f"Collecting security evidence for {owner} across {len(repos)} repos..."
        )

        repo_results = []
        for repo in repos:
            response = self._api_request(
                session, config, f"/repos/{owner}/{repo}", allow_statuses=(404,)
            )
            if response.status_code == 404:
                self.logger.warning(f"Repository {owner}/{repo} not found")
                repo_results.append({"repo": repo, "score": 0.0})
                continue
            repository = response.json()

            alerts = self._api_request(
                session,
                config,
                f"/repos/{owner}/{repo}/vulnerability-alerts",
                allow_statuses=(404,),
            )
            secret_scanning = (
                (repository.get("security_and_analysis") or {})
                .get("secret_scanning", {})
                .get("status")
            )
            features = {
                "vulnerability_alerts_enabled": alerts.status_code == 204,
                "secret_scanning_enabled": secret_scanning == "enabled",
                "private_repo": bool(repository.get("private")),
            }
            score = sum(1 for enabled in features.values() if enabled) / len(features)
            repo_results.append({"repo": repo, "score": score, **features})

        score = (
            sum(r["score"] for r in repo_results) / len(repo_results)
            if repo_results
            else 0.0
        )

        return CollectedEvidence.create(
            "REPOSITORY_SECURITY",
            {
                "owner": owner,
                "total_repos": len(repos),
                "security_score": score,
                "repos": repo_results,
            },
            rate_status(score, REPOSITORY_SECURITY_THRESHOLD, below=WARNING),
        )
