"""
Shared fixtures and in-memory fakes.

Nothing here touches the network: the ledger and the AI collaborator are
replaced by fakes implementing the same interfaces as the real clients.
"""

import hashlib
import itertools
import json
from datetime import date, datetime

import base58
import pytest

from receiptproof.models.schemas import Receipt
from receiptproof.services.analyzer import ReceiptAnalyzer
from receiptproof.services.ledger import (
    MEMO_PROGRAM_ID,
    LedgerAnchor,
    LedgerClient,
    LedgerInstruction,
    LedgerRpcError,
    LedgerTransaction,
)
from receiptproof.services.proof_store import JsonFileBackend, ProofStore, SqlBackend


# =============================================================================
# SAMPLE DATA
# =============================================================================

CAMPUS_MART = {
    "merchant": "Campus Mart",
    "date": "2026-02-07",
    "currency": "CAD",
    "subtotal": 12.49,
    "tax": 1.62,
    "total": 14.11,
}

CAMPUS_MART_TEXT = (
    "merchant=campus mart\n"
    "date=2026-02-07\n"
    "currency=CAD\n"
    "subtotal=12.49\n"
    "tax=1.62\n"
    "total=14.11"
)

# Reference "today" for date-dependent checks: a few weeks after the receipt
TODAY = date(2026, 3, 1)
NOW = datetime(2026, 3, 1, 12, 0)

WALLET = "TestWa11et1111111111111111111111111111111111"
BLOCK_TIME = 1_770_480_000


def ai_output(**overrides) -> str:
    """A well-formed AI response for the Campus Mart receipt."""
    data = {
        **CAMPUS_MART,
        "verdict": "LIKELY_REAL",
        "fraud_score": 12,
        "reasons": ["Math is correct: 12.49 + 1.62 = 14.11", "Merchant name is specific"],
        "confidence": 0.87,
    }
    data.update(overrides)
    return json.dumps(data)


# =============================================================================
# FAKES
# =============================================================================

class FakeLedgerClient(LedgerClient):
    """
    In-memory ledger.

    submit() stores a v0 transaction with the memo base58-encoded in the
    compiled slot, like a current RPC node returns it. Tests can plant any
    other transaction shape in `transactions` directly.
    """

    def __init__(self, balance: float = 5.0):
        self.balance = balance
        self.transactions: dict[str, LedgerTransaction] = {}
        self.submitted: list[bytes] = []
        self.top_ups: list[tuple[str, float]] = []
        self.submit_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.balance_error: Exception | None = None
        self.top_up_error: Exception | None = None
        self._counter = itertools.count(1)

    @staticmethod
    def make_signature(seed: bytes) -> str:
        return base58.b58encode(hashlib.sha512(seed).digest()).decode("ascii")

    async def submit(self, payload: bytes, signer) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(payload)

        signature = self.make_signature(payload + str(next(self._counter)).encode())
        self.transactions[signature] = LedgerTransaction(
            signature=signature,
            compiled_instructions=[
                LedgerInstruction(
                    program_id=MEMO_PROGRAM_ID,
                    data=base58.b58encode(payload).decode("ascii"),
                )
            ],
            block_time=BLOCK_TIME,
            meta={"slot": 1234, "fee": 5000, "err": None},
        )
        return signature

    async def fetch_transaction(self, signature: str) -> LedgerTransaction | None:
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.transactions.get(signature)

    async def get_balance(self, account: str) -> float:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance

    async def request_top_up(self, account: str, amount: float) -> str:
        self.top_ups.append((account, amount))
        if self.top_up_error is not None:
            raise self.top_up_error
        self.balance += amount
        return self.make_signature(b"top-up" + str(next(self._counter)).encode())


class FakeAnalyzer(ReceiptAnalyzer):
    """Returns canned text, or raises `error` if set."""

    def __init__(self, response: str = "", error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: list[tuple[str, object]] = []

    async def analyze_image(self, image_base64: str) -> str:
        self.calls.append(("image", image_base64))
        if self.error is not None:
            raise self.error
        return self.response

    async def analyze_fields(self, receipt: Receipt) -> str:
        self.calls.append(("fields", receipt))
        if self.error is not None:
            raise self.error
        return self.response


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def ledger_client() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def anchor(ledger_client) -> LedgerAnchor:
    return LedgerAnchor(
        ledger_client,
        signer="test-signer",
        account=WALLET,
        network="devnet",
        protocol="RECEIPTPROOF",
        version="v1",
        min_fee_balance=0.001,
        top_up_amount=1.0,
    )


@pytest.fixture
def json_store(tmp_path) -> ProofStore:
    return ProofStore(JsonFileBackend(tmp_path / "proofs.json"))


@pytest.fixture
def sql_store(tmp_path) -> ProofStore:
    return ProofStore(SqlBackend.from_url(f"sqlite:///{tmp_path / 'proofs.db'}"))


@pytest.fixture(params=["json", "sql"])
def store(request, tmp_path) -> ProofStore:
    """The same store behaviour, on both backends."""
    if request.param == "json":
        return ProofStore(JsonFileBackend(tmp_path / "proofs.json"))
    return ProofStore(SqlBackend.from_url(f"sqlite:///{tmp_path / 'proofs.db'}"))


@pytest.fixture
def signature() -> str:
    return FakeLedgerClient.make_signature(b"fixture")
