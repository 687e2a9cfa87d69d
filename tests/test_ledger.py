"""
Tests for the hash-chained evidence ledger.

Uses Python's unittest module with a temporary SQLite database and a local
blob store.
"""

from __future__ import annotations

import json
import shutil
import tempfile
import threading
import unittest
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

from proofline.resilience import CircuitBreaker, RetryPolicy
from proofline.storage import (
    Database,
    EvidenceLedger,
    EvidenceNotFoundError,
    IntegrityError,
    LocalBlobStore,
    StorageError,
    compute_evidence_hash,
)
from proofline.storage.ledger import canonical_json


def make_payload(status: str = "PASS", **data: Any) -> dict[str, Any]:
    return {
        "type": "IAM_MFA_ENFORCEMENT",
        "timestamp": "2024-01-15T12:00:00+00:00",
        "data": data or {"total_users": 10, "users_with_mfa": 10},
        "status": status,
    }


class LedgerTestCase(unittest.TestCase):
    """Shared temp database and ledger."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.database = Database(Path(self.temp_dir) / "proofline.db")
        self.blob_store = LocalBlobStore(Path(self.temp_dir) / "blobs")
        self.ledger = EvidenceLedger(self.database, self.blob_store)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _execute(self, sql: str, params: tuple[Any, ...]) -> None:
        with self.database.connection() as conn:
            conn.execute(sql, params)


class TestCanonicalHash(unittest.TestCase):
    """Tests for the canonical serialization and content hash."""

    def test_key_order_does_not_matter(self) -> None:
        self.assertEqual(canonical_json({"b": 1, "a": 2}), canonical_json({"a": 2, "b": 1}))
        self.assertEqual(canonical_json({"b": 1, "a": 2}), '{"a":2,"b":1}')

    def test_hash_is_sha256_hex(self) -> None:
        digest = compute_evidence_hash("c", "CC1", {}, datetime(2024, 1, 1, tzinfo=UTC))
        self.assertEqual(len(digest), 64)
        int(digest, 16)

    def test_hash_covers_every_field(self) -> None:
        at = datetime(2024, 1, 1, tzinfo=UTC)
        base = compute_evidence_hash("c", "CC1", {"x": 1}, at)

        self.assertNotEqual(base, compute_evidence_hash("d", "CC1", {"x": 1}, at))
        self.assertNotEqual(base, compute_evidence_hash("c", "CC2", {"x": 1}, at))
        self.assertNotEqual(base, compute_evidence_hash("c", "CC1", {"x": 2}, at))
        self.assertNotEqual(
            base, compute_evidence_hash("c", "CC1", {"x": 1}, datetime(2024, 1, 2, tzinfo=UTC))
        )


class TestEvidenceChain(LedgerTestCase):
    """Tests for appending and linking evidence."""

    def test_first_record_has_no_previous_hash(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())

        self.assertIsNone(record.previous_hash)
        self.assertEqual(record.status, "PASS")
        self.assertEqual(record.evidence_type, "IAM_MFA_ENFORCEMENT")
        self.assertFalse(record.offloaded)

    def test_records_link_to_predecessor(self) -> None:
        first = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())
        second = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload("FAIL"))
        third = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())

        self.assertEqual(second.previous_hash, first.hash)
        self.assertEqual(third.previous_hash, second.hash)

    def test_chains_are_per_customer_and_control(self) -> None:
        self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())
        other_control = self.ledger.store_evidence("cust-1", "CC6.7.1", "int-1", make_payload())
        other_customer = self.ledger.store_evidence("cust-2", "CC6.1.2", "int-2", make_payload())

        self.assertIsNone(other_control.previous_hash)
        self.assertIsNone(other_customer.previous_hash)

    def test_stored_hash_matches_content(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())
        loaded = self.ledger.get_evidence(record.id)

        assert loaded is not None
        self.assertEqual(
            loaded.hash,
            compute_evidence_hash("cust-1", "CC6.1.2", loaded.data, loaded.collected_at),
        )
        self.assertEqual(loaded.data, make_payload())

    def test_latest_and_list(self) -> None:
        first = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())
        second = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload("FAIL"))

        latest = self.ledger.get_latest_evidence("cust-1", "CC6.1.2")
        assert latest is not None
        self.assertEqual(latest.id, second.id)
        self.assertEqual([e.id for e in self.ledger.list_evidence("cust-1", "CC6.1.2")], [second.id, first.id])
        self.assertEqual(len(self.ledger.list_evidence("cust-1", "CC6.1.2", limit=1)), 1)
        self.assertIsNone(self.ledger.get_latest_evidence("cust-1", "CC8.1.1"))

    def test_same_job_id_is_idempotent(self) -> None:
        """Test a redelivered job returns the existing record."""
        first = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload(), job_id="job-1")
        again = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload("FAIL"), job_id="job-1")

        self.assertEqual(again.id, first.id)
        self.assertEqual(again.status, "PASS")
        self.assertEqual(len(self.ledger.list_evidence("cust-1", "CC6.1.2")), 1)

    def test_concurrent_appends_form_one_chain(self) -> None:
        """Test parallel appends to one chain never fork it."""
        errors: list[Exception] = []

        def append(n: int) -> None:
            try:
                self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload(n=n))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=append, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(errors, [])
        result = self.ledger.verify_chain("cust-1", "CC6.1.2")
        self.assertTrue(result.valid)
        self.assertEqual(result.length, 8)

        # Walking the records in collection-time order must follow the links
        records = sorted(
            reversed(self.ledger.list_evidence("cust-1", "CC6.1.2")),
            key=lambda r: r.collected_at,
        )
        self.assertIsNone(records[0].previous_hash)
        for previous, current in zip(records, records[1:]):
            self.assertEqual(current.previous_hash, previous.hash)
            self.assertLessEqual(previous.collected_at, current.collected_at)


class TestVerification(LedgerTestCase):
    """Tests for tamper detection."""

    def test_untouched_record_verifies(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())

        self.assertTrue(self.ledger.verify_evidence(record.id))

    def test_modified_data_detected(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload("FAIL"))
        forged = make_payload("PASS")
        self._execute(
            "UPDATE evidence SET data_json = ? WHERE id = ?",
            (json.dumps(forged), record.id),
        )

        self.assertFalse(self.ledger.verify_evidence(record.id))

    def test_modified_timestamp_detected(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())
        self._execute(
            "UPDATE evidence SET collected_at = ? WHERE id = ?",
            ("2020-01-01T00:00:00+00:00", record.id),
        )

        self.assertFalse(self.ledger.verify_evidence(record.id))

    def test_unknown_evidence(self) -> None:
        with self.assertRaises(EvidenceNotFoundError):
            self.ledger.verify_evidence("missing")

    def test_valid_chain(self) -> None:
        for status in ("PASS", "FAIL", "PASS"):
            self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload(status))

        result = self.ledger.verify_chain("cust-1", "CC6.1.2")

        self.assertTrue(result.valid)
        self.assertEqual(result.length, 3)
        self.assertIsNone(result.broken_at)

    def test_empty_chain_is_valid(self) -> None:
        result = self.ledger.verify_chain("cust-1", "CC6.1.2")

        self.assertTrue(result.valid)
        self.assertEqual(result.length, 0)

    def test_tampered_middle_record_breaks_chain(self) -> None:
        records = [
            self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload(n=n))
            for n in range(3)
        ]
        self._execute(
            "UPDATE evidence SET data_json = ? WHERE id = ?",
            (json.dumps(make_payload(n=99)), records[1].id),
        )

        result = self.ledger.verify_chain("cust-1", "CC6.1.2")

        self.assertFalse(result.valid)
        self.assertEqual(result.broken_at, records[1].id)
        self.assertEqual(result.length, 2)
        self.assertIn("hash", result.reason or "")

    def test_deleted_record_breaks_link(self) -> None:
        records = [
            self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload(n=n))
            for n in range(3)
        ]
        self._execute("DELETE FROM evidence WHERE id = ?", (records[1].id,))

        result = self.ledger.verify_chain("cust-1", "CC6.1.2")

        self.assertFalse(result.valid)
        self.assertEqual(result.broken_at, records[2].id)
        self.assertEqual(result.reason, "previous_hash does not match the prior record")

    def test_verification_to_dict(self) -> None:
        self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())
        result = self.ledger.verify_chain("cust-1", "CC6.1.2").to_dict()

        self.assertEqual(result["length"], 1)
        self.assertTrue(result["valid"])
        self.assertNotIn("checked_ids", result)


class GatedBlobStore:
    """Blob store whose put() blocks until the test releases it."""

    def __init__(self, inner: LocalBlobStore) -> None:
        self.inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()

    def put(self, key: str, content: bytes) -> Any:
        self.entered.set()
        self.release.wait(10)
        return self.inner.put(key, content)

    def get(self, key: str) -> bytes:
        return self.inner.get(key)


class TestOffload(LedgerTestCase):
    """Tests for moving oversized payloads to blob storage."""

    def setUp(self) -> None:
        super().setUp()
        self.ledger = EvidenceLedger(
            self.database,
            self.blob_store,
            offload_threshold_bytes=512,
            retry_policy=RetryPolicy(max_attempts=1),
        )
        self.large = make_payload("FAIL", users=[{"user_name": f"user{i}"} for i in range(100)])

    def test_small_payload_stays_inline(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload())

        self.assertFalse(record.offloaded)
        self.assertEqual(self.ledger.load_payload(record), make_payload())

    def test_large_payload_offloaded(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", self.large, job_id="job-7")

        self.assertTrue(record.offloaded)
        self.assertTrue(record.data["offloaded"])
        self.assertEqual(record.status, "FAIL")
        self.assertEqual(record.evidence_type, "IAM_MFA_ENFORCEMENT")
        key = record.data["reference"]["key"]
        self.assertTrue(key.startswith("evidence/cust-1/CC6.1.2/"))
        self.assertTrue(key.endswith("-job-7"))
        self.assertEqual(record.data["size"], len(canonical_json(self.large).encode()))
        self.assertNotIn("users", json.dumps(record.data))

    def test_offloaded_payload_round_trips(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", self.large)
        loaded = self.ledger.get_evidence(record.id)

        assert loaded is not None
        self.assertEqual(self.ledger.load_payload(loaded), self.large)
        self.assertTrue(self.ledger.verify_evidence(record.id))

    def test_default_threshold_offloads_large_payload(self) -> None:
        """Test a payload over 100 KB is offloaded and still verifies."""
        ledger = EvidenceLedger(self.database, self.blob_store)
        payload = make_payload("PASS", blob="x" * 200 * 1024)

        record = ledger.store_evidence("cust-1", "CC7.2.1", "int-1", payload)

        self.assertTrue(record.offloaded)
        self.assertTrue(ledger.verify_evidence(record.id))
        self.assertEqual(ledger.load_payload(record), payload)

    def test_slow_upload_does_not_reorder_chain(self) -> None:
        """Test a record appended during a slow offload is linked first."""
        gated = GatedBlobStore(self.blob_store)
        ledger = EvidenceLedger(
            self.database,
            gated,
            offload_threshold_bytes=512,
            retry_policy=RetryPolicy(max_attempts=1),
        )
        stored: list[Any] = []

        thread = threading.Thread(
            target=lambda: stored.append(
                ledger.store_evidence("cust-1", "CC6.1.2", "int-1", self.large, job_id="job-a")
            )
        )
        thread.start()
        self.assertTrue(gated.entered.wait(5))

        small = ledger.store_evidence("cust-1", "CC6.1.2", "int-1", make_payload(), job_id="job-b")
        gated.release.set()
        thread.join(10)

        large = stored[0]
        self.assertIsNone(small.previous_hash)
        self.assertEqual(large.previous_hash, small.hash)
        self.assertLessEqual(small.collected_at, large.collected_at)
        latest = ledger.get_latest_evidence("cust-1", "CC6.1.2")
        assert latest is not None
        self.assertEqual(latest.id, large.id)
        self.assertTrue(ledger.verify_chain("cust-1", "CC6.1.2").valid)

    def test_altered_blob_detected(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", self.large)
        path = self.blob_store._path_for(record.data["reference"]["key"])
        path.write_bytes(canonical_json(make_payload("PASS")).encode())

        with self.assertRaises(IntegrityError):
            self.ledger.load_payload(record)

    def test_missing_blob(self) -> None:
        record = self.ledger.store_evidence("cust-1", "CC6.1.2", "int-1", self.large)
        self.blob_store._path_for(record.data["reference"]["key"]).unlink()

        with self.assertRaises(EvidenceNotFoundError):
            self.ledger.load_payload(record)

    def test_offload_without_blob_store(self) -> None:
        ledger = EvidenceLedger(self.database, None, offload_threshold_bytes=512)

        with self.assertRaises(StorageError):
            ledger.store_evidence("cust-1", "CC6.1.2", "int-1", self.large)

    def test_failed_upload_stores_nothing(self) -> None:
        """Test a blob failure leaves the chain untouched and counts on the breaker."""
        failing_store = MagicMock()
        failing_store.put.side_effect = OSError("bucket unavailable")
        breaker = CircuitBreaker(name="blob-storage")
        ledger = EvidenceLedger(
            self.database,
            failing_store,
            offload_threshold_bytes=512,
            blob_breaker=breaker,
            retry_policy=RetryPolicy(max_attempts=1),
        )

        with self.assertRaises(OSError):
            ledger.store_evidence("cust-1", "CC6.1.2", "int-1", self.large)

        self.assertEqual(ledger.list_evidence("cust-1", "CC6.1.2"), [])
        self.assertEqual(breaker.failure_count, 1)


if __name__ == "__main__":
    unittest.main()
