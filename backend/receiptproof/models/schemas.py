"""
Pydantic schemas for receipts, risk reports, proofs and API payloads.

These define the shape of data that flows between the services and out
of the API. Three payloads matter most:
- ReceiptAnalysis: what the AI said, after the ResponseNormalizer cleaned it
- TrustScore + FinalRisk: the deterministic checks and the fused decision
- ProofRecord: what we remember locally about each certified fingerprint

FLOW OVERVIEW:
==============
1. Client sends AnalyzeRequest (photo, typed fields, or raw AI text)
2. AI output → ResponseNormalizer → ReceiptAnalysis
3. Canonicalizer → canonical_text + fingerprint
4. RiskFusion → TrustScore + FinalRisk
5. Client sends CertifyRequest → ledger memo → ProofRecord upsert
6. Later, VerifyRequest → ledger lookup + forensic diff → VerifyResponse
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


# =============================================================================
# RECEIPT SCHEMAS (the record being certified)
# =============================================================================
#
# WHEN USED:
# - LineItem / Receipt: typed manual entry and canonicalization input
# - ReceiptAnalysis: Receipt + AI verdict, output of the ResponseNormalizer
#

class LineItem(BaseModel):
    """A single line on the receipt."""
    name: str = ""
    price: float = 0.0
    quantity: float = 1


class Receipt(BaseModel):
    """
    The semantic unit being certified.

    Amounts are plain floats on the wire; the Canonicalizer turns them into
    fixed two-decimal text, so 12.5, "12.50" and "12.500" all hash the same.
    """
    merchant: str = ""
    date: str = Field(default="", description="YYYY-MM-DD, optionally followed by HH:MM")
    currency: str = ""
    subtotal: float = 0.0
    tax: float = 0.0
    total: float = 0.0
    items: list[LineItem] | None = None


class Verdict(str, Enum):
    """The AI collaborator's verdict vocabulary."""
    LIKELY_REAL = "LIKELY_REAL"
    SUSPICIOUS = "SUSPICIOUS"
    LIKELY_FAKE = "LIKELY_FAKE"
    UNREADABLE = "UNREADABLE"


class ReceiptAnalysis(Receipt):
    """
    A receipt as extracted and judged by the AI, after normalization.

    USED BY: ResponseNormalizer (creates it), RiskFusion, Canonicalizer
    INVARIANTS:
    - verdict is always one of the four Verdict values
    - fraud_score is clamped to [0, 100], confidence to [0, 1]
    - reasons is never empty
    """
    verdict: Verdict = Verdict.SUSPICIOUS
    fraud_score: int = Field(default=50, ge=0, le=100)
    reasons: list[str] = Field(default_factory=lambda: ["No specific reasons provided."])
    confidence: float = Field(default=0.5, ge=0, le=1)

    # Safe, length-capped slice of the raw AI output (only set for UNREADABLE)
    raw_excerpt: str | None = None


# =============================================================================
# RISK SCHEMAS (deterministic checks + fused decision)
# =============================================================================
#
# PIPELINE:
# ReceiptAnalysis → [compute_checks] → TrustScore → [resolve] → FinalRisk
#

CheckStatus = Literal["pass", "warn", "fail"]


class TrustCheck(BaseModel):
    """One named rule-based check and the points it cost."""
    name: str
    status: CheckStatus
    impact: int = Field(ge=0, description="Points deducted from 100")
    description: str


class TrustScore(BaseModel):
    """
    The explainable risk assessment.

    Starts at 100, every check deducts its impact, result is clamped to
    [0, 100]. Check order is stable so the UI can render it as a list.
    """
    score: int = Field(ge=0, le=100)
    checks: list[TrustCheck]

    @property
    def failed_checks(self) -> list[TrustCheck]:
        return [c for c in self.checks if c.status == "fail"]

    @property
    def warned_checks(self) -> list[TrustCheck]:
        return [c for c in self.checks if c.status == "warn"]


class RiskLevel(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    BAD = "bad"


class FinalRisk(BaseModel):
    """Single decision combining the AI verdict and the TrustScore."""
    level: RiskLevel
    badge: str
    summary: str
    explanation: str


class LocalValidation(BaseModel):
    """
    Local cross-check of the AI's fraud score against the rule checks.

    Informational only: it explains how far the AI's number would move if
    the deterministic checks were folded into it.
    """
    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    adjusted_fraud_score: int = Field(ge=0, le=100)


# =============================================================================
# PROOF SCHEMAS (local proof store)
# =============================================================================
#
# Persisted layout:
#   byHash[fingerprint] → ProofRecord
#   byTx[tx_signature]  → TxIndexEntry
#

class ProofRecord(BaseModel):
    """
    Everything we know locally about one certified fingerprint.

    LIFECYCLE:
    1. Created on the first certification of a fingerprint
    2. Updated on every later certification (seen_count +1, last_seen_at, tx_signature)
    3. Never deleted; canonical_text / analysis_summary are filled once and kept
    """
    fingerprint: str
    canonical_text: str | None = None
    analysis_summary: dict = Field(default_factory=dict)
    created_at: datetime
    last_seen_at: datetime
    tx_signature: str = Field(description="Most recent transaction carrying this fingerprint")
    first_seen_tx: str
    first_seen_at: datetime
    seen_count: int = Field(ge=1)


class TxIndexEntry(BaseModel):
    """Reverse index row: first fingerprint ever associated with a transaction."""
    tx_signature: str
    fingerprint: str
    canonical_text: str | None = None
    created_at: datetime


class UpsertResult(BaseModel):
    """Outcome of ProofStore.upsert, the duplicate-claim detector."""
    duplicate: bool
    first_seen_tx: str
    first_seen_at: datetime
    seen_count: int


class ProofBundle(BaseModel):
    """
    Forensic view of a transaction: tx index row joined with its hash record.

    USED BY: GET /api/proofs/{tx_signature}
    """
    tx_signature: str
    fingerprint: str
    canonical_text: str | None = None
    created_at: datetime | None = None
    duplicate: bool
    first_seen_tx: str
    first_seen_at: datetime | None = None
    seen_count: int
    last_seen_at: datetime | None = None
    analysis_summary: dict = Field(default_factory=dict)


class FieldDiff(BaseModel):
    """One field that differs between the certified and presented receipt."""
    field: str
    certified: str | None = None
    presented: str | None = None
    change: Literal["changed", "added", "removed"]


# =============================================================================
# API REQUEST / RESPONSE SCHEMAS
# =============================================================================
#
# WHEN USED:
# - AnalyzeRequest: photo, manual entry or raw AI text → AnalyzeResponse
# - CertifyRequest: canonical text or fingerprint → ledger anchor
# - VerifyRequest: canonical text or fingerprint + tx → verification report
#

class AnalyzeRequest(BaseModel):
    """
    Request body for POST /api/analyze.

    Exactly one input mode is used, in this priority:
    1. image_base64: a receipt photo (optionally a data: URL)
    2. raw_ai_output: text previously produced by the AI, normalized only
    3. receipt: manually typed fields, sent to the AI for a verdict
    """
    image_base64: str | None = None
    raw_ai_output: str | None = None
    receipt: Receipt | None = None


class AnalyzeResponse(BaseModel):
    analysis: ReceiptAnalysis
    trust_score: TrustScore
    final_risk: FinalRisk
    validation: LocalValidation
    canonical_text: str
    fingerprint: str
    timestamp: datetime


class CertifyRequest(BaseModel):
    """
    Request body for POST /api/certify.

    canonical_text is preferred: it is re-normalized, hashed and kept for
    forensic diffs. A bare fingerprint can be anchored, but a later verify
    mismatch then has nothing to diff against.
    """
    canonical_text: str | None = None
    fingerprint: str | None = None
    analysis_summary: dict = Field(default_factory=dict)


class CertifyResponse(BaseModel):
    tx_signature: str
    fingerprint: str
    timestamp: datetime
    explorer_url: str
    wallet_address: str
    duplicate: bool
    first_seen_tx: str
    first_seen_at: datetime
    seen_count: int
    message: str


class VerifyRequest(BaseModel):
    canonical_text: str | None = None
    fingerprint: str | None = None
    tx_signature: str


class VerifyResponse(BaseModel):
    """
    Verification report.

    verified is True only when the fingerprint recovered from the ledger
    equals the local one. On failure, error carries the labelled reason
    and diff lists the fields that changed since certification.
    """
    verified: bool
    message: str
    error: str | None = None
    chain_fingerprint: str | None = None
    local_fingerprint: str
    chain_canonical_text: str | None = None
    local_canonical_text: str | None = None
    diff: list[FieldDiff] = Field(default_factory=list)
    timestamp: datetime | None = None
    explorer_url: str


class ProofListResponse(BaseModel):
    proofs: list[ProofRecord]
