"""
Ledger Module — anchoring receipt fingerprints on a public blockchain.

COMPONENTS:
- LedgerAnchor: certify a fingerprint, verify it against a tx signature
- LedgerClient: abstract chain collaborator (submit / fetch / balance / top-up)
- SolanaRpcClient: LedgerClient over Solana JSON-RPC, signing with solders
- extract_memo: memo decoding strategies (base58, raw, base64)

USAGE:
    from receiptproof.services.ledger import LedgerAnchor, SolanaRpcClient, load_signer

    signer = load_signer(settings.ledger_private_key)
    anchor = LedgerAnchor(SolanaRpcClient(), signer, account=str(signer.pubkey()))

    proof = await anchor.certify(fingerprint)
    outcome = await anchor.verify(proof.tx_signature, fingerprint)
"""

# Main entry point
from receiptproof.services.ledger.anchor import (
    LedgerAnchor,
    is_tx_signature,
)

# Data models and the collaborator interface
from receiptproof.services.ledger.protocols import (
    CertifyResult,
    LedgerClient,
    LedgerInstruction,
    LedgerRpcError,
    LedgerTransaction,
    VerifyOutcome,
)

# Memo encoding
from receiptproof.services.ledger.memo import (
    MEMO_PROGRAM_ID,
    build_memo_payload,
    extract_memo,
    memo_pattern,
)

# Solana implementation
from receiptproof.services.ledger.solana_client import (
    SolanaRpcClient,
    load_signer,
)

__all__ = [
    # Main entry point
    "LedgerAnchor",
    "is_tx_signature",
    # Data models
    "CertifyResult",
    "LedgerInstruction",
    "LedgerTransaction",
    "VerifyOutcome",
    # Interface
    "LedgerClient",
    "LedgerRpcError",
    # Memo
    "MEMO_PROGRAM_ID",
    "build_memo_payload",
    "extract_memo",
    "memo_pattern",
    # Solana
    "SolanaRpcClient",
    "load_signer",
]
