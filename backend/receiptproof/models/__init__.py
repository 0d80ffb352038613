# Database models and API schemas
from receiptproof.models.proof_entry import ProofEntry
from receiptproof.models.schemas import (
    ProofRecord,
    Receipt,
    ReceiptAnalysis,
    TrustScore,
    FinalRisk,
    Verdict,
)

__all__ = [
    "ProofEntry",
    "ProofRecord",
    "Receipt",
    "ReceiptAnalysis",
    "TrustScore",
    "FinalRisk",
    "Verdict",
]
