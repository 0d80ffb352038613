"""
API Routes — thin HTTP layer over ReceiptPipeline.

ENDPOINTS:
- POST /api/analyze              → photo / typed fields / raw AI text → risk report + fingerprint
- POST /api/certify              → anchor a fingerprint on the ledger
- POST /api/verify               → compare a presented receipt with a certified tx
- GET  /api/proofs/{tx_signature} → forensic bundle for one transaction
- GET  /api/proofs               → every certified fingerprint, most recent first

FLOW:
1. Call /api/analyze, show the user the risk report
2. Call /api/certify with the returned canonical_text, keep tx_signature
3. Later, call /api/verify with the presented receipt + tx_signature

ERRORS:
- InvalidInputError       → 400
- InsufficientFundsError  → 402
- other LedgerError       → 502
Verification problems (tx not found, no memo...) are NOT HTTP errors:
they come back in VerifyResponse.error.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from receiptproof.errors import InsufficientFundsError, InvalidInputError, LedgerError
from receiptproof.models.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    CertifyRequest,
    CertifyResponse,
    ProofBundle,
    ProofListResponse,
    VerifyRequest,
    VerifyResponse,
)
from receiptproof.services.pipeline import ReceiptPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])


def get_pipeline(request: Request) -> ReceiptPipeline:
    """Dependency that returns the pipeline built at startup (see main.lifespan)."""
    return request.app.state.pipeline


# =============================================================================
# ANALYZE
# =============================================================================

@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(
    request: AnalyzeRequest,
    pipeline: ReceiptPipeline = Depends(get_pipeline),
) -> AnalyzeResponse:
    """
    Analyze a receipt.

    Example:
        POST /api/analyze
        {"receipt": {"merchant": "Campus Mart", "date": "2026-02-07", "currency": "CAD",
                     "subtotal": 12.49, "tax": 1.62, "total": 14.11}}

        Returns the normalized analysis, trust checks, final risk,
        canonical_text and fingerprint
    """
    try:
        return await pipeline.analyze(request)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# CERTIFY
# =============================================================================

@router.post("/certify", response_model=CertifyResponse)
async def certify(
    request: CertifyRequest,
    pipeline: ReceiptPipeline = Depends(get_pipeline),
) -> CertifyResponse:
    """
    Anchor a receipt fingerprint on the ledger.

    Blocks until the transaction is confirmed. The response says whether
    the same fingerprint was certified before (duplicate claim).
    """
    try:
        return await pipeline.certify(request)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InsufficientFundsError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except LedgerError as e:
        raise HTTPException(status_code=502, detail=str(e))


# =============================================================================
# VERIFY
# =============================================================================

@router.post("/verify", response_model=VerifyResponse)
async def verify(
    request: VerifyRequest,
    pipeline: ReceiptPipeline = Depends(get_pipeline),
) -> VerifyResponse:
    """
    Verify a presented receipt against a certification transaction.

    Always 200 for a well-formed request; check `verified` and `error`.
    """
    try:
        return await pipeline.verify(request)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# PROOFS
# =============================================================================

@router.get("/proofs/{tx_signature}", response_model=ProofBundle)
def get_proof(
    tx_signature: str,
    pipeline: ReceiptPipeline = Depends(get_pipeline),
) -> ProofBundle:
    """
    Forensic bundle for a transaction certified by this server.

    Plain def: FastAPI runs it in its threadpool, since the store does file IO.
    """
    try:
        bundle = pipeline.get_proof(tx_signature)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if bundle is None:
        raise HTTPException(status_code=404, detail=f"No proof recorded for {tx_signature}")
    return bundle


@router.get("/proofs", response_model=ProofListResponse)
def list_proofs(
    pipeline: ReceiptPipeline = Depends(get_pipeline),
) -> ProofListResponse:
    """All certified fingerprints, most recently seen first."""
    return ProofListResponse(proofs=pipeline.list_proofs())
