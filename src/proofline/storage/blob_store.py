"""
Blob storage for oversized evidence payloads.

Payloads above the ledger's offload threshold are written here and the
evidence row keeps only a descriptor pointing at the blob.

Backends:
    - LocalBlobStore: files under a base directory, written atomically
    - S3BlobStore: an S3 bucket via boto3 (imported lazily)
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from proofline.storage.database import EvidenceNotFoundError, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobReference:
    """Location of a stored blob."""

    bucket: str
    key: str
    url: str

    def to_dict(self) -> dict[str, str]:
        return {"bucket": self.bucket, "key": self.key, "url": self.url}


class BlobStore(Protocol):
    """Minimal put/get blob storage interface."""

    def put(self, key: str, content: bytes) -> BlobReference: ...

    def get(self, key: str) -> bytes: ...


class LocalBlobStore:
    """
    Filesystem blob store.

    Keys map to paths below base_dir; the "bucket" is the base directory name.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.base_dir / key).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise StorageError(f"Blob key escapes the storage directory: {key}")
        return path

    def put(self, key: str, content: bytes) -> BlobReference:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write atomically using temp file + rename
        temp_fd, temp_path = tempfile.mkstemp(dir=str(path.parent))
        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(content)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

        logger.debug(f"Stored blob {key} ({len(content)} bytes)")
        return BlobReference(bucket=self.base_dir.name, key=key, url=path.as_uri())

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        if not path.exists():
            raise EvidenceNotFoundError(f"Blob not found: {key}")
        return path.read_bytes()


class S3BlobStore:
    """
    S3 blob store.

    Example:
        store = S3BlobStore(bucket="acme-evidence", region="eu-west-1")
        ref = store.put("evidence/cust/CC6.1/1700000000000-job", payload)
    """

    def __init__(self, bucket: str, region: str = "us-east-1", client: Any = None) -> None:
        self.bucket = bucket
        self.region = region
        self._client = client

    def _get_client(self) -> Any:
        """Lazily import boto3 and build the S3 client."""
        if self._client is None:
            try:
                import boto3
            except ImportError:
                raise StorageError(
                    "boto3 is not installed. Install it with: pip install boto3"
                )
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    def put(self, key: str, content: bytes) -> BlobReference:
        self._get_client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=content,
            ContentType="application/json",
            ServerSideEncryption="AES256",
        )
        logger.info(f"Uploaded evidence blob s3://{self.bucket}/{key} ({len(content)} bytes)")
        return BlobReference(
            bucket=self.bucket,
            key=key,
            url=f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}",
        )

    def get(self, key: str) -> bytes:
        client = self._get_client()
        try:
            response = client.get_object(Bucket=self.bucket, Key=key)
        except client.exceptions.NoSuchKey as e:
            raise EvidenceNotFoundError(f"Blob not found: s3://{self.bucket}/{key}") from e
        body: bytes = response["Body"].read()
        return body


def create_blob_store(backend: str, local_dir: str, bucket: str, region: str) -> BlobStore:
    """
    Build the configured blob store.

    Raises:
        StorageError: If the backend name is unknown.
    """
    if backend == "local":
        return LocalBlobStore(local_dir)
    if backend == "s3":
        return S3BlobStore(bucket=bucket, region=region)
    raise StorageError(f"Unknown blob storage backend: {backend}")
