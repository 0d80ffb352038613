"""
Ledger Protocols — the capability interface the anchor talks to.

WHAT THIS IS:
The LedgerAnchor never constructs a network client itself. It receives
something implementing LedgerClient, which keeps the certify/verify
protocol testable with an in-memory fake and lets another chain client
be swapped in without touching the anchor.

THE CONTRACT:
- submit(payload, signer) → tx signature, returns only after confirmation
- fetch_transaction(signature) → LedgerTransaction, or None if unknown
- get_balance(account) → balance in whole native units (SOL)
- request_top_up(account, amount) → funding tx signature (non-production only)

INSTRUCTION PAYLOADS:
Depending on the RPC version, an instruction's data arrives as a base58
string, a base64 string, raw bytes, or already-decoded text. Clients pass
it through untouched; decoding is the anchor's job (see memo.py).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class LedgerInstruction:
    """One instruction of a fetched transaction, with its program resolved."""

    program_id: str
    """Address of the program the instruction targets"""

    data: Any
    """Payload as delivered by the RPC: str (base58/base64/plain), bytes, or list[int]"""


@dataclass
class LedgerTransaction:
    """
    A fetched transaction, reduced to what verification needs.

    Versioned (v0) transactions put their instructions in the compiled
    slot; legacy transactions use the legacy slot. Either may be None.
    """

    signature: str
    compiled_instructions: list[LedgerInstruction] | None = None
    instructions: list[LedgerInstruction] | None = None
    block_time: int | None = None
    meta: dict = field(default_factory=dict)


@dataclass
class CertifyResult:
    """Proof handle returned by LedgerAnchor.certify."""

    tx_signature: str
    fingerprint: str
    timestamp: datetime
    explorer_url: str
    wallet_address: str


@dataclass
class VerifyOutcome:
    """
    Result of LedgerAnchor.verify. Never raised, always returned.

    error is one of TRANSACTION_NOT_FOUND, NO_MEMO_FOUND,
    INVALID_MEMO_FORMAT, VERIFICATION_ERROR, or None when the memo was
    read successfully (verified may still be False on a mismatch).
    """

    verified: bool
    message: str
    local_fingerprint: str
    chain_fingerprint: str | None = None
    error: str | None = None
    timestamp: datetime | None = None
    explorer_url: str = ""
    memo_found: str | None = None
    details: str | None = None


class LedgerClient(ABC):
    """
    Abstract ledger collaborator.

    SolanaRpcClient in solana_client.py implements this over JSON-RPC.
    Tests use an in-memory fake.
    """

    @abstractmethod
    async def submit(self, payload: bytes, signer: Any) -> str:
        """
        Submit a single memo instruction carrying payload, signed by signer.

        Blocks until the transaction is confirmed.

        Returns:
            The transaction signature

        Raises:
            LedgerRpcError: if the ledger rejects or never confirms the transaction
        """
        pass

    @abstractmethod
    async def fetch_transaction(self, signature: str) -> LedgerTransaction | None:
        """Fetch a confirmed transaction, or None if the ledger doesn't know it."""
        pass

    @abstractmethod
    async def get_balance(self, account: str) -> float:
        """Balance of account in whole native units."""
        pass

    @abstractmethod
    async def request_top_up(self, account: str, amount: float) -> str:
        """Ask a test network to fund account. Returns the funding tx signature."""
        pass


class LedgerRpcError(Exception):
    """Transport or RPC-level failure reported by a LedgerClient."""
