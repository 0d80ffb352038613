"""
Tests for the ProofStore (duplicate-claim detection) on both backends.

Run with: pytest tests/test_proof_store.py -v
"""

import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from receiptproof.database import create_session_factory
from receiptproof.errors import InvalidInputError
from receiptproof.models.proof_entry import ProofEntry
from receiptproof.services.canonical import compute_fingerprint
from receiptproof.services.proof_store import JsonFileBackend, ProofStore

from conftest import CAMPUS_MART_TEXT, FakeLedgerClient

FINGERPRINT = compute_fingerprint(CAMPUS_MART_TEXT)
T0 = datetime(2026, 2, 7, 15, 0, tzinfo=timezone.utc)


def tx(n: int) -> str:
    return FakeLedgerClient.make_signature(f"tx-{n}".encode())


# =============================================================================
# UPSERT
# =============================================================================

def test_first_upsert_is_not_duplicate(store):
    result = store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, {"verdict": "LIKELY_REAL"}, now=T0)

    assert not result.duplicate
    assert result.seen_count == 1
    assert result.first_seen_tx == tx(1)
    assert result.first_seen_at == T0


def test_second_upsert_is_duplicate(store):
    """Same fingerprint, new transaction: seen twice, first tx unchanged."""
    store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0)
    result = store.upsert(FINGERPRINT, tx(2), CAMPUS_MART_TEXT, now=T0 + timedelta(hours=1))

    assert result.duplicate
    assert result.seen_count == 2
    assert result.first_seen_tx == tx(1)
    assert result.first_seen_at == T0

    record = store.get_by_hash(FINGERPRINT)
    assert record.tx_signature == tx(2)
    assert record.last_seen_at == T0 + timedelta(hours=1)


def test_original_payload_is_never_overwritten(store):
    store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, {"verdict": "LIKELY_REAL"}, now=T0)
    store.upsert(FINGERPRINT, tx(2), "merchant=tampered", {"verdict": "LIKELY_FAKE"}, now=T0)

    record = store.get_by_hash(FINGERPRINT)

    assert record.canonical_text == CAMPUS_MART_TEXT
    assert record.analysis_summary == {"verdict": "LIKELY_REAL"}


def test_missing_payload_is_filled_later(store):
    store.upsert(FINGERPRINT, tx(1), None, now=T0)
    store.upsert(FINGERPRINT, tx(2), CAMPUS_MART_TEXT, {"verdict": "LIKELY_REAL"}, now=T0)

    record = store.get_by_hash(FINGERPRINT)

    assert record.canonical_text == CAMPUS_MART_TEXT
    assert record.analysis_summary == {"verdict": "LIKELY_REAL"}


def test_tx_index_first_association_wins(store):
    other = compute_fingerprint("merchant=other")

    store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0)
    store.upsert(other, tx(1), "merchant=other", now=T0)

    assert store.get_by_tx(tx(1)).fingerprint == FINGERPRINT


def test_inputs_are_normalized(store):
    store.upsert(f"  {FINGERPRINT.upper()} ", f" {tx(1)} ", CAMPUS_MART_TEXT, now=T0)

    assert store.get_by_hash(FINGERPRINT) is not None
    assert store.get_by_tx(tx(1)) is not None


@pytest.mark.parametrize("fingerprint, signature", [("", tx(1)), ("   ", tx(1)), (FINGERPRINT, "")])
def test_blank_inputs_are_rejected(store, fingerprint, signature):
    with pytest.raises(InvalidInputError):
        store.upsert(fingerprint, signature)


# =============================================================================
# CONCURRENCY
# =============================================================================

def test_concurrent_certifications_lose_nothing(store):
    """Twenty threads certify the same fingerprint: exactly one is first."""
    results = []
    barrier = threading.Barrier(20)

    def certify(n):
        barrier.wait()
        results.append(store.upsert(FINGERPRINT, tx(n), CAMPUS_MART_TEXT))

    threads = [threading.Thread(target=certify, args=(n,)) for n in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(not r.duplicate for r in results) == 1
    assert sorted(r.seen_count for r in results) == list(range(1, 21))
    assert store.get_by_hash(FINGERPRINT).seen_count == 20


# =============================================================================
# LOOKUPS
# =============================================================================

def test_get_bundle_joins_both_indices(store):
    store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, {"verdict": "LIKELY_REAL"}, now=T0)
    store.upsert(FINGERPRINT, tx(2), CAMPUS_MART_TEXT, now=T0 + timedelta(days=1))

    bundle = store.get_bundle(tx(2))

    assert bundle.fingerprint == FINGERPRINT
    assert bundle.canonical_text == CAMPUS_MART_TEXT
    assert bundle.duplicate
    assert bundle.seen_count == 2
    assert bundle.first_seen_tx == tx(1)
    assert bundle.analysis_summary == {"verdict": "LIKELY_REAL"}


def test_unknown_lookups_return_none(store):
    assert store.get_by_tx(tx(9)) is None
    assert store.get_by_hash(FINGERPRINT) is None
    assert store.get_bundle(tx(9)) is None


def test_list_all_most_recent_first(store):
    older = compute_fingerprint("merchant=older")
    newer = compute_fingerprint("merchant=newer")

    store.upsert(older, tx(1), now=T0)
    store.upsert(newer, tx(2), now=T0 + timedelta(hours=1))

    assert [r.fingerprint for r in store.list_all()] == [newer, older]

    # Seeing the older one again moves it to the front
    store.upsert(older, tx(3), now=T0 + timedelta(hours=2))
    assert [r.fingerprint for r in store.list_all()] == [older, newer]


# =============================================================================
# JSON FILE BACKEND
# =============================================================================

def test_json_layout_on_disk(tmp_path):
    path = tmp_path / "proofs.json"
    ProofStore(JsonFileBackend(path)).upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0)

    data = json.loads(path.read_text())

    assert set(data) == {"byHash", "byTx"}
    assert data["byHash"][FINGERPRINT]["first_seen_tx"] == tx(1)
    assert data["byTx"][tx(1)]["fingerprint"] == FINGERPRINT


def test_durable_across_instances(tmp_path):
    path = tmp_path / "proofs.json"
    ProofStore(JsonFileBackend(path)).upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0)

    reopened = ProofStore(JsonFileBackend(path))

    assert reopened.upsert(FINGERPRINT, tx(2), now=T0).duplicate


@pytest.mark.parametrize("content", ["{not json", "[]", '{"byHash": []}', ""])
def test_corrupt_file_is_reinitialized(tmp_path, content):
    path = tmp_path / "proofs.json"
    path.write_text(content)
    store = ProofStore(JsonFileBackend(path))

    assert store.list_all() == []

    result = store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0)
    assert not result.duplicate
    assert set(json.loads(path.read_text())) == {"byHash", "byTx"}


def test_missing_directory_is_created(tmp_path):
    path = tmp_path / "nested" / "dir" / "proofs.json"

    ProofStore(JsonFileBackend(path)).upsert(FINGERPRINT, tx(1), now=T0)

    assert path.exists()


@pytest.mark.parametrize(
    "entry",
    [{"junk": 1}, "not a record", [1, 2], {"fingerprint": "x", "seen_count": "many"}],
)
def test_damaged_entries_are_ignored(tmp_path, entry):
    """One bad record must not take down lookups, listing or the next certification."""
    path = tmp_path / "proofs.json"
    path.write_text(json.dumps({"byHash": {FINGERPRINT: entry}, "byTx": {tx(1): entry}}))
    store = ProofStore(JsonFileBackend(path))

    assert store.list_all() == []
    assert store.get_by_hash(FINGERPRINT) is None
    assert store.get_by_tx(tx(1)) is None

    result = store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0)

    assert not result.duplicate
    assert store.get_by_tx(tx(1)).fingerprint == FINGERPRINT
    assert [r.fingerprint for r in store.list_all()] == [FINGERPRINT]


# =============================================================================
# SQL BACKEND
# =============================================================================

def test_sql_row_with_bad_json_is_ignored(sql_store):
    with create_session_factory(sql_store.backend.engine).begin() as session:
        session.add(ProofEntry(index_name="byHash", key=FINGERPRINT, value="{not json"))

    assert sql_store.list_all() == []
    assert sql_store.get_by_hash(FINGERPRINT) is None
    assert not sql_store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0).duplicate
    assert sql_store.get_by_hash(FINGERPRINT).seen_count == 1


# =============================================================================
# WRITES
# =============================================================================

class CountingJsonBackend(JsonFileBackend):
    def __init__(self, path):
        super().__init__(path)
        self.writes = []

    def _write(self, data):
        self.writes.append(data)
        super()._write(data)


class FailingBackend(JsonFileBackend):
    def put_many(self, entries):
        raise OSError("disk full")


def test_upsert_writes_both_indices_at_once(tmp_path):
    backend = CountingJsonBackend(tmp_path / "proofs.json")

    ProofStore(backend).upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0)

    assert len(backend.writes) == 1
    assert FINGERPRINT in backend.writes[0]["byHash"]
    assert tx(1) in backend.writes[0]["byTx"]


def test_failed_write_leaves_both_indices_untouched(tmp_path):
    path = tmp_path / "proofs.json"
    store = ProofStore(FailingBackend(path))

    with pytest.raises(OSError):
        store.upsert(FINGERPRINT, tx(1), CAMPUS_MART_TEXT, now=T0)

    assert store.get_by_hash(FINGERPRINT) is None
    assert store.get_by_tx(tx(1)) is None
