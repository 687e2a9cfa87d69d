"""
AWS collector for Proofline.

Collects compliance evidence from IAM, S3 and CloudTrail. All API calls are
read-only.

Required IAM Permissions:
    - iam:ListUsers
    - iam:ListMFADevices
    - s3:ListAllMyBuckets
    - s3:GetEncryptionConfiguration
    - cloudtrail:LookupEvents

Authentication:
    Credentials come from the decrypted integration config:
    - access_key_id (or aws_access_key_id)
    - secret_access_key (or aws_secret_access_key)
    - session_token (optional, for temporary credentials)
    - region (optional, defaults to us-east-1)
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Any

from proofline.collectors.base import (
    PASS,
    WARNING,
    AuthenticationError,
    BaseCollector,
    CollectedEvidence,
    CollectorConnectionError,
    CollectorRegistry,
    ConfigurationError,
    RateLimitError,
    rate_status,
)

# boto3 is imported lazily to allow the module to load even if boto3 is not installed

DEFAULT_REGION = "us-east-1"

IAM_MFA_THRESHOLD = 0.9
S3_ENCRYPTION_THRESHOLD = 1.0
CLOUDTRAIL_LOOKBACK = timedelta(hours=24)
CLOUDTRAIL_MAX_RESULTS = 50
CLOUDTRAIL_SAMPLE_SIZE = 10

_AUTH_ERROR_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "UnrecognizedClientException",
    "ExpiredToken",
}
_THROTTLE_ERROR_CODES = {"Throttling", "ThrottlingException", "SlowDown", "RequestLimitExceeded"}
NO_BUCKET_ENCRYPTION_CODE = "ServerSideEncryptionConfigurationNotFoundError"


@CollectorRegistry.register
class AwsCollector(BaseCollector):
    """
    AWS evidence collector.

    Aspects:
        - iam_mfa: share of IAM users with at least one MFA device
          (IAM_MFA_ENFORCEMENT, PASS at >= 90%, otherwise FAIL)
        - s3_encryption: share of buckets with default encryption
          (S3_ENCRYPTION, PASS only at 100%; no buckets counts as 100%)
        - cloudtrail_logging: CloudTrail events in the last 24 hours
          (CLOUDTRAIL_LOGGING, PASS if any, otherwise WARNING)

    Example:
        collector = CollectorRegistry.create("aws")
        evidence = collector.collect("iam_mfa", {
            "access_key_id": "AKIA...",
            "secret_access_key": "...",
        })
    """

    platform = "aws"
    aspects = ("iam_mfa", "s3_encryption", "cloudtrail_logging")
    score_fields = {
        "iam_mfa": "mfa_compliance_rate",
        "s3_encryption": "encryption_compliance_rate",
    }

    def _get_boto3(self) -> Any:
        """Lazily import and return boto3."""
        try:
            import boto3
        except ImportError:
            raise ConfigurationError(
                "boto3 is not installed. Install it with: pip install boto3",
                platform=self.platform,
            )
        return boto3

    def _get_client(self, service: str, config: dict[str, Any]) -> Any:
        """
        Build a boto3 client from the decrypted integration config.

        Raises:
            ConfigurationError: If the access key pair is missing.
        """
        access_key = config.get("access_key_id") or config.get("aws_access_key_id")
        secret_key = config.get("secret_access_key") or config.get(
            "aws_secret_access_key"
        )
        if not access_key or not secret_key:
            raise ConfigurationError(
                "Integration config missing: access_key_id, secret_access_key",
                self.platform,
            )

        boto3 = self._get_boto3()
        session = boto3.Session(
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            aws_session_token=config.get("session_token")
            or config.get("aws_session_token"),
        )
        return session.client(service, region_name=config.get("region") or DEFAULT_REGION)

    def _call(
        self,
        client: Any,
        operation: str,
        absent_codes: tuple[str, ...] = (),
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Invoke a boto3 client operation, logging it and mapping AWS errors.

        Args:
            client: boto3 service client.
            operation: Client method name, e.g. "list_users".
            absent_codes: AWS error codes meaning "not configured"; these
                return an empty response instead of raising.

        Raises:
            AuthenticationError: If AWS rejects the credentials.
            RateLimitError: If the request was throttled.
            CollectorConnectionError: On endpoint or network failures.
        """
        service = client.meta.service_model.service_name
        endpoint = f"{service}:{operation}"
        start = time.time()
        try:
            response: dict[str, Any] = getattr(client, operation)(**kwargs)
        except Exception as e:
            duration_ms = (time.time() - start) * 1000
            if absent_codes and _error_code(e) in absent_codes:
                self._log_api_call("GET", endpoint, 404, duration_ms)
                return {}
            raise self._map_error(e, endpoint, duration_ms) from e
        duration_ms = (time.time() - start) * 1000
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        self._log_api_call("GET", endpoint, status, duration_ms)
        return response

    def _map_error(self, error: Exception, endpoint: str, duration_ms: float) -> Exception:
        from botocore.exceptions import (
            BotoCoreError,
            ClientError,
            EndpointConnectionError,
            NoCredentialsError,
        )

        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            self._log_api_call("GET", endpoint, status, duration_ms)
            if code in _AUTH_ERROR_CODES:
                return AuthenticationError(f"AWS denied {endpoint}: {code}", self.platform)
            if code in _THROTTLE_ERROR_CODES:
                return RateLimitError(f"AWS throttled {endpoint}", self.platform)
            return CollectorConnectionError(f"AWS error on {endpoint}: {code}", self.platform)
        if isinstance(error, NoCredentialsError):
            return AuthenticationError("AWS credentials not available", self.platform)
        if isinstance(error, (EndpointConnectionError, BotoCoreError)):
            return CollectorConnectionError(f"AWS connection failed: {error}", self.platform)
        return error

    def get_required_permissions(self) -> list[str]:
        """
        Get the list of IAM permissions required for this collector.

        Returns:
            List of IAM permission strings.
        """
        return [
            "iam:ListUsers",
            "iam:ListMFADevices",
            "s3:ListAllMyBuckets",
            "s3:GetEncryptionConfiguration",
            "cloudtrail:LookupEvents",
            "sts:GetCallerIdentity",
        ]

    def test_connection(self, config: dict[str, Any]) -> bool:
        """
        Test connectivity to AWS.

        Attempts to call sts:GetCallerIdentity to verify credentials.

        Returns:
            True if connection succeeds, False otherwise.
        """
        try:
            sts = self._get_client("sts", config)
            identity = self._call(sts, "get_caller_identity")
            self.logger.info(
                f"AWS connection successful. Account: {identity.get('Account')}"
            )
            return True
        except Exception as e:
            self.logger.error(f"AWS connection test failed: {e}")
            return False

    def collect_iam_mfa(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Collect IAM MFA enrollment across all users.

        Returns:
            CollectedEvidence of type IAM_MFA_ENFORCEMENT.
        """
        iam = self._get_client("iam", config)

        users: list[dict[str, Any]] = []
        marker: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Marker": marker} if marker else {}
            response = self._call(iam, "list_users", **kwargs)
            users.extend(response.get("Users", []))
            if not response.get("IsTruncated"):
                break
            marker = response.get("Marker")

        user_status = []
        for user in users:
            devices = self._call(
                iam, "list_mfa_devices", UserName=user["UserName"]
            ).get("MFADevices", [])
            created = user.get("CreateDate")
            user_status.append(
                {
                    "user_name": user["UserName"],
                    "user_id": user.get("UserId"),
                    "has_mfa": len(devices) > 0,
                    "mfa_device_count": len(devices),
                    "created_at": created.isoformat() if created else None,
                }
            )

        total = len(user_status)
        with_mfa = sum(1 for u in user_status if u["has_mfa"])
        rate = with_mfa / total if total > 0 else 0.0

        self.logger.info(f"IAM evidence collected: {with_mfa}/{total} users have MFA")

        return CollectedEvidence.create(
            "IAM_MFA_ENFORCEMENT",
            {
                "total_users": total,
                "users_with_mfa": with_mfa,
                "users_without_mfa": total - with_mfa,
                "mfa_compliance_rate": rate,
                "users": user_status,
            },
            rate_status(rate, IAM_MFA_THRESHOLD),
        )

    def collect_s3_encryption(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Collect default encryption status for every S3 bucket.

        A bucket without a server-side encryption configuration counts as
        unencrypted.

        Returns:
            CollectedEvidence of type S3_ENCRYPTION.
        """
        s3 = self._get_client("s3", config)
        buckets = self._call(s3, "list_buckets").get("Buckets", [])

        bucket_status = []
        for bucket in buckets:
            name = bucket["Name"]
            encryption = self._call(
                s3,
                "get_bucket_encryption",
                absent_codes=(NO_BUCKET_ENCRYPTION_CODE,),
                Bucket=name,
            )
            rules = encryption.get("ServerSideEncryptionConfiguration", {}).get(
                "Rules", []
            )
            encrypted = bool(rules)
            algorithm = None
            if rules:
                algorithm = (
                    rules[0].get("ApplyServerSideEncryptionByDefault", {}).get("SSEAlgorithm")
                )
            created = bucket.get("CreationDate")
            bucket_status.append(
                {
                    "bucket_name": name,
                    "created_at": created.isoformat() if created else None,
                    "encrypted": encrypted,
                    "encryption_type": algorithm,
                }
            )

        total = len(bucket_status)
        encrypted_count = sum(1 for b in bucket_status if b["encrypted"])
        rate = encrypted_count / total if total > 0 else 1.0

        self.logger.info(
            f"S3 evidence collected: {encrypted_count}/{total} buckets encrypted"
        )

        return CollectedEvidence.create(
            "S3_ENCRYPTION",
            {
                "total_buckets": total,
                "encrypted_buckets": encrypted_count,
                "unencrypted_buckets": total - encrypted_count,
                "encryption_compliance_rate": rate,
                "buckets": bucket_status,
            },
            rate_status(rate, S3_ENCRYPTION_THRESHOLD),
        )

    def collect_cloudtrail_logging(self, config: dict[str, Any]) -> CollectedEvidence:
        """
        Check that CloudTrail recorded activity in the last 24 hours.

        Returns:
            CollectedEvidence of type CLOUDTRAIL_LOGGING.
        """
        cloudtrail = self._get_client("cloudtrail", config)
        end_time = datetime.now(UTC)
        start_time = end_time - CLOUDTRAIL_LOOKBACK

        events = self._call(
            cloudtrail,
            "lookup_events",
            StartTime=start_time,
            EndTime=end_time,
            MaxResults=CLOUDTRAIL_MAX_RESULTS,
        ).get("Events", [])

        event_count = len(events)
        has_recent_activity = event_count > 0

        self.logger.info(
            f"CloudTrail evidence collected: {event_count} events in last 24h"
        )

        sample = []
        for event in events[:CLOUDTRAIL_SAMPLE_SIZE]:
            event_time = event.get("EventTime")
            sample.append(
                {
                    "event_name": event.get("EventName"),
                    "event_time": event_time.isoformat() if event_time else None,
                    "username": event.get("Username"),
                    "event_source": event.get("EventSource"),
                }
            )

        return CollectedEvidence.create(
            "CLOUDTRAIL_LOGGING",
            {
                "event_count": event_count,
                "has_recent_activity": has_recent_activity,
                "time_range": {
                    "start": start_time.isoformat(),
                    "end": end_time.isoformat(),
                },
                "sample_events": sample,
            },
            PASS if has_recent_activity else WARNING,
        )


def _error_code(error: Exception) -> str:
    """Extract the AWS error code from a botocore ClientError, if any."""
    response = getattr(error, "response", None)
    if not isinstance(response, dict):
        return ""
    return str(response.get("Error", {}).get("Code", ""))
