"""
Hash-chained evidence ledger.

Evidence for each (customer, control) pair forms an append-only chain: every
record stores the SHA-256 hash of its own canonical content and the hash of
the record before it. Altering any stored field, or removing or reordering a
record, is detectable with verify_evidence() and verify_chain().

Canonical Form:
    json.dumps({"customer_id", "control_id", "data", "collected_at"},
               sort_keys=True, separators=(",", ":"))
    with collected_at as an ISO-8601 UTC string. For offloaded payloads,
    "data" is the offload descriptor, not the payload itself.

Offload:
    Payloads whose serialized size exceeds the threshold (100 KB) are written
    to blob storage under evidence/{customer_id}/{control_id}/{ts}-{job_id}
    and replaced by a descriptor carrying the blob reference, size, SHA-256
    content checksum, and the payload's type and status.

Concurrency:
    Appends for one chain are serialised in-process with a per-chain lock and
    across processes with a BEGIN IMMEDIATE transaction. collected_at and the
    record hash are taken inside that section, after the previous hash is
    read, so rowid order, collection order and link order always agree. Only
    the blob upload for an offloaded payload happens before the lock.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from proofline.resilience import CircuitBreaker, RetryPolicy, call_with_resilience
from proofline.storage.blob_store import BlobStore
from proofline.storage.database import (
    Database,
    EvidenceNotFoundError,
    IntegrityError,
    StorageError,
)
from proofline.storage.models import ChainVerification, StoredEvidence

logger = logging.getLogger(__name__)

DEFAULT_OFFLOAD_THRESHOLD_BYTES = 100 * 1024


def canonical_json(value: Any) -> str:
    """Serialize a value deterministically: sorted keys, compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_evidence_hash(
    customer_id: str,
    control_id: str,
    data: dict[str, Any],
    collected_at: datetime,
) -> str:
    """
    Compute the content hash of an evidence record.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    content = canonical_json(
        {
            "customer_id": customer_id,
            "control_id": control_id,
            "data": data,
            "collected_at": collected_at.isoformat(),
        }
    )
    return hashlib.sha256(content.encode()).hexdigest()


class EvidenceLedger:
    """
    Append-only, hash-chained evidence store.

    Example:
        ledger = EvidenceLedger(Database(db_path), LocalBlobStore(blob_dir))
        record = ledger.store_evidence("cust-1", "CC6.1.2", integration.id,
                                       evidence.to_payload(), job_id=job.id)
        assert ledger.verify_evidence(record.id)

    Attributes:
        database: Database holding the evidence table.
        blob_store: Destination for offloaded payloads.
        offload_threshold_bytes: Payloads larger than this are offloaded.
    """

    def __init__(
        self,
        database: Database,
        blob_store: BlobStore | None = None,
        offload_threshold_bytes: int = DEFAULT_OFFLOAD_THRESHOLD_BYTES,
        blob_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.database = database
        self.blob_store = blob_store
        self.offload_threshold_bytes = offload_threshold_bytes
        self.blob_breaker = blob_breaker or CircuitBreaker(name="blob-storage")
        self.retry_policy = retry_policy or RetryPolicy()
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _chain_lock(self, customer_id: str, control_id: str) -> threading.Lock:
        with self._locks_guard:
            key = (customer_id, control_id)
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    # -------------------------------------------------------------------------
    # Append
    # -------------------------------------------------------------------------

    def store_evidence(
        self,
        customer_id: str,
        control_id: str,
        integration_id: str | None,
        payload: dict[str, Any],
        job_id: str | None = None,
    ) -> StoredEvidence:
        """
        Append evidence to the (customer, control) chain.

        If evidence for the same job_id was already stored, that record is
        returned unchanged so a redelivered collection job does not append a
        second link.

        Args:
            customer_id: Owning customer.
            control_id: Control the evidence supports.
            integration_id: Integration the evidence came from.
            payload: Collector payload ({type, timestamp, data, status}).
            job_id: ID of the producing job, used for idempotency.

        Returns:
            The stored record.

        Raises:
            StorageError: If the blob upload or database write fails.
        """
        if job_id is not None:
            existing = self._get_by_job_id(job_id)
            if existing is not None:
                logger.info(f"Evidence for job {job_id} already stored as {existing.id}")
                return existing

        # Only the blob upload runs outside the chain lock; its key timestamp
        # is not part of the hashed content.
        data, offloaded = self._prepare_data(
            customer_id, control_id, payload, datetime.now(UTC), job_id
        )

        with self._chain_lock(customer_id, control_id):
            with self.database.transaction(immediate=True) as conn:
                if job_id is not None:
                    row = conn.execute(
                        "SELECT * FROM evidence WHERE job_id = ?", (job_id,)
                    ).fetchone()
                    if row is not None:
                        return StoredEvidence.from_row(row)

                previous = conn.execute(
                    """
                    SELECT hash, collected_at FROM evidence
                    WHERE customer_id = ? AND control_id = ?
                    ORDER BY rowid DESC LIMIT 1
                    """,
                    (customer_id, control_id),
                ).fetchone()

                collected_at = datetime.now(UTC)
                if previous is not None:
                    # Never earlier than the head, so chain order and time order agree
                    collected_at = max(
                        collected_at, datetime.fromisoformat(previous["collected_at"])
                    )
                record_hash = compute_evidence_hash(
                    customer_id, control_id, data, collected_at
                )

                record = StoredEvidence(
                    id=str(uuid.uuid4()),
                    customer_id=customer_id,
                    control_id=control_id,
                    integration_id=integration_id,
                    collected_at=collected_at,
                    hash=record_hash,
                    previous_hash=previous["hash"] if previous else None,
                    data=data,
                    offloaded=offloaded,
                    job_id=job_id,
                )
                conn.execute(
                    """
                    INSERT INTO evidence (
                        id, customer_id, control_id, integration_id, collected_at,
                        hash, previous_hash, data_json, offloaded, job_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.customer_id,
                        record.control_id,
                        record.integration_id,
                        record.collected_at.isoformat(),
                        record.hash,
                        record.previous_hash,
                        canonical_json(record.data),
                        1 if record.offloaded else 0,
                        record.job_id,
                    ),
                )

        logger.info(
            f"Stored evidence {record.id} for {customer_id}/{control_id} "
            f"(offloaded={offloaded})"
        )
        return record

    def _prepare_data(
        self,
        customer_id: str,
        control_id: str,
        payload: dict[str, Any],
        collected_at: datetime,
        job_id: str | None,
    ) -> tuple[dict[str, Any], bool]:
        """Return the data to store inline: the payload or an offload descriptor."""
        serialized = canonical_json(payload).encode()
        if len(serialized) <= self.offload_threshold_bytes:
            # Round-trip so the stored form and the hashed form match exactly
            inline: dict[str, Any] = json.loads(serialized)
            return inline, False

        if self.blob_store is None:
            raise StorageError(
                f"Payload of {len(serialized)} bytes exceeds the offload threshold "
                "and no blob store is configured"
            )

        timestamp_ms = int(collected_at.timestamp() * 1000)
        key = (
            f"evidence/{customer_id}/{control_id}/"
            f"{timestamp_ms}-{job_id or uuid.uuid4().hex}"
        )
        blob_store = self.blob_store
        reference = call_with_resilience(
            self.blob_breaker,
            lambda: blob_store.put(key, serialized),
            self.retry_policy,
        )
        logger.info(f"Offloaded {len(serialized)} byte payload to {reference.key}")

        descriptor = {
            "offloaded": True,
            "reference": reference.to_dict(),
            "size": len(serialized),
            "content_checksum": hashlib.sha256(serialized).hexdigest(),
            "status": payload.get("status"),
            "type": payload.get("type"),
        }
        return descriptor, True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _get_by_job_id(self, job_id: str) -> StoredEvidence | None:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evidence WHERE job_id = ?", (job_id,)
            ).fetchone()
        return StoredEvidence.from_row(row) if row else None

    def get_evidence(self, evidence_id: str) -> StoredEvidence | None:
        """Get a record by ID, or None if it does not exist."""
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evidence WHERE id = ?", (evidence_id,)
            ).fetchone()
        return StoredEvidence.from_row(row) if row else None

    def get_latest_evidence(
        self, customer_id: str, control_id: str
    ) -> StoredEvidence | None:
        """Get the head of the (customer, control) chain."""
        with self.database.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM evidence
                WHERE customer_id = ? AND control_id = ?
                ORDER BY rowid DESC LIMIT 1
                """,
                (customer_id, control_id),
            ).fetchone()
        return StoredEvidence.from_row(row) if row else None

    def list_evidence(
        self, customer_id: str, control_id: str, limit: int | None = None
    ) -> list[StoredEvidence]:
        """
        List a chain newest first.

        Args:
            customer_id: Owning customer.
            control_id: Control ID.
            limit: Maximum number of records to return.
        """
        query = """
            SELECT * FROM evidence
            WHERE customer_id = ? AND control_id = ?
            ORDER BY rowid DESC
        """
        params: list[Any] = [customer_id, control_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [StoredEvidence.from_row(row) for row in rows]

    def load_payload(self, evidence: StoredEvidence) -> dict[str, Any]:
        """
        Return the full payload, fetching it from blob storage if offloaded.

        Raises:
            IntegrityError: If the blob does not match the recorded checksum.
            EvidenceNotFoundError: If the blob is missing.
        """
        if not evidence.offloaded:
            return evidence.data

        if self.blob_store is None:
            raise StorageError("Evidence is offloaded but no blob store is configured")

        key = evidence.data["reference"]["key"]
        content = self.blob_store.get(key)
        checksum = hashlib.sha256(content).hexdigest()
        if checksum != evidence.data["content_checksum"]:
            raise IntegrityError(
                f"Offloaded payload for evidence {evidence.id} failed checksum "
                f"verification. Expected {evidence.data['content_checksum']}, "
                f"got {checksum}"
            )
        payload: dict[str, Any] = json.loads(content)
        return payload

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_evidence(self, evidence_id: str) -> bool:
        """
        Re-derive a record's hash from its stored fields.

        Returns:
            True if the stored hash matches, False if any field was altered.

        Raises:
            EvidenceNotFoundError: If no record has this ID.
        """
        evidence = self.get_evidence(evidence_id)
        if evidence is None:
            raise EvidenceNotFoundError(f"Evidence not found: {evidence_id}")
        return self._hash_matches(evidence)

    def _hash_matches(self, evidence: StoredEvidence) -> bool:
        expected = compute_evidence_hash(
            evidence.customer_id,
            evidence.control_id,
            evidence.data,
            evidence.collected_at,
        )
        if expected != evidence.hash:
            logger.warning(f"Evidence {evidence.id} failed hash verification")
            return False
        return True

    def verify_chain(self, customer_id: str, control_id: str) -> ChainVerification:
        """
        Walk a chain oldest first, checking every hash and link.

        Returns:
            ChainVerification naming the first broken record, if any.
        """
        with self.database.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM evidence
                WHERE customer_id = ? AND control_id = ?
                ORDER BY rowid ASC
                """,
                (customer_id, control_id),
            ).fetchall()

        result = ChainVerification(customer_id=customer_id, control_id=control_id)
        previous_hash: str | None = None
        for row in rows:
            evidence = StoredEvidence.from_row(row)
            result.length += 1
            result.checked_ids.append(evidence.id)

            if evidence.previous_hash != previous_hash:
                result.valid = False
                result.broken_at = evidence.id
                result.reason = "previous_hash does not match the prior record"
                break
            if not self._hash_matches(evidence):
                result.valid = False
                result.broken_at = evidence.id
                result.reason = "stored hash does not match record content"
                break
            previous_hash = evidence.hash

        if result.valid:
            logger.info(
                f"Evidence chain {customer_id}/{control_id} verified "
                f"({result.length} records)"
            )
        else:
            logger.warning(
                f"Evidence chain {customer_id}/{control_id} broken at "
                f"{result.broken_at}: {result.reason}"
            )
        return result
