"""
HTTP-level tests: status codes and error mapping.

The app's pipeline is replaced with one built on fakes; the lifespan
(which would build the real one) is not entered.
"""

import pytest
from fastapi.testclient import TestClient

from receiptproof.main import app
from receiptproof.services.canonical import compute_fingerprint
from receiptproof.services.ledger import LedgerRpcError
from receiptproof.services.pipeline import ReceiptPipeline

from conftest import CAMPUS_MART, CAMPUS_MART_TEXT, FakeAnalyzer, ai_output

FINGERPRINT = compute_fingerprint(CAMPUS_MART_TEXT)


@pytest.fixture
def client(anchor, json_store):
    app.state.pipeline = ReceiptPipeline(FakeAnalyzer(ai_output()), anchor, json_store)
    yield TestClient(app)
    app.state.pipeline = None


def test_analyze_manual_entry(client):
    response = client.post("/api/analyze", json={"receipt": CAMPUS_MART})

    assert response.status_code == 200
    body = response.json()
    assert body["canonical_text"] == CAMPUS_MART_TEXT
    assert body["fingerprint"] == FINGERPRINT
    assert body["analysis"]["verdict"] == "LIKELY_REAL"
    assert [c["name"] for c in body["trust_score"]["checks"]][:2] == ["Merchant present", "Math consistency"]


def test_analyze_without_input_is_400(client):
    assert client.post("/api/analyze", json={}).status_code == 400


def test_certify_verify_and_proofs(client):
    certified = client.post("/api/certify", json={"canonical_text": CAMPUS_MART_TEXT})
    assert certified.status_code == 200
    tx_signature = certified.json()["tx_signature"]

    verified = client.post(
        "/api/verify",
        json={"canonical_text": CAMPUS_MART_TEXT.replace("14.11", "19.11"), "tx_signature": tx_signature},
    )
    assert verified.status_code == 200
    assert verified.json()["verified"] is False
    assert verified.json()["diff"][0]["field"] == "total"

    bundle = client.get(f"/api/proofs/{tx_signature}")
    assert bundle.status_code == 200
    assert bundle.json()["fingerprint"] == FINGERPRINT

    proofs = client.get("/api/proofs")
    assert [p["fingerprint"] for p in proofs.json()["proofs"]] == [FINGERPRINT]


def test_certify_bad_fingerprint_is_400(client):
    response = client.post("/api/certify", json={"fingerprint": "abc"})

    assert response.status_code == 400
    assert "64-character hex" in response.json()["detail"]


def test_insufficient_funds_is_402(client, ledger_client):
    ledger_client.submit_error = LedgerRpcError("Transfer: insufficient funds")

    assert client.post("/api/certify", json={"fingerprint": FINGERPRINT}).status_code == 402


def test_other_ledger_failure_is_502(client, ledger_client):
    ledger_client.submit_error = LedgerRpcError("Transaction simulation failed")

    assert client.post("/api/certify", json={"fingerprint": FINGERPRINT}).status_code == 502


def test_verify_not_found_is_not_an_http_error(client, signature):
    response = client.post("/api/verify", json={"fingerprint": FINGERPRINT, "tx_signature": signature})

    assert response.status_code == 200
    assert response.json()["error"] == "TRANSACTION_NOT_FOUND"


def test_verify_requires_tx_signature(client):
    assert client.post("/api/verify", json={"fingerprint": FINGERPRINT}).status_code == 422


def test_unknown_proof_is_404(client, signature):
    assert client.get(f"/api/proofs/{signature}").status_code == 404


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["healthy"] is True


def test_damaged_store_entry_still_lists(client, json_store):
    json_store.backend.path.write_text('{"byHash": {"abc": {"junk": 1}}, "byTx": {}}')

    response = client.get("/api/proofs")

    assert response.status_code == 200
    assert response.json()["proofs"] == []
