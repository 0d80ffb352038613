"""
Receipt Pipeline — orchestrates analyze, certify and verify.

WHAT THIS DOES:
Composes the services so routes stay thin:

    analyze:  AI → ResponseNormalizer → Canonicalizer → RiskFusion
    certify:  Canonicalizer → LedgerAnchor.certify → ProofStore.upsert
    verify:   Canonicalizer → LedgerAnchor.verify → ProofStore lookup → forensic diff

Every collaborator is injected; build_pipeline() wires the real ones.

SUSPENSION POINTS:
Exactly two kinds of awaits reach the network: the AI call in analyze
and the ledger calls in certify/verify. Proof store IO runs in a worker
thread. Nothing is retried here.

USAGE:
    pipeline = build_pipeline(get_settings())
    result = await pipeline.analyze(AnalyzeRequest(receipt=receipt))
    proof = await pipeline.certify(CertifyRequest(canonical_text=result.canonical_text))
    report = await pipeline.verify(VerifyRequest(
        canonical_text=result.canonical_text, tx_signature=proof.tx_signature
    ))
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from openai import AsyncOpenAI

from receiptproof.config import Settings, get_settings
from receiptproof.errors import InvalidInputError
from receiptproof.models.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    CertifyRequest,
    CertifyResponse,
    ProofBundle,
    ProofRecord,
    Receipt,
    ReceiptAnalysis,
    VerifyRequest,
    VerifyResponse,
)
from receiptproof.services.analyzer import OpenAIReceiptAnalyzer, ReceiptAnalyzer
from receiptproof.services.canonical import (
    canonicalize,
    compute_fingerprint,
    is_fingerprint,
    normalize_canonical_text,
)
from receiptproof.services.forensics import diff_canonical_texts
from receiptproof.services.ledger import LedgerAnchor, SolanaRpcClient, load_signer
from receiptproof.services.proof_store import ProofStore, create_proof_store
from receiptproof.services.response_normalizer import ResponseNormalizer
from receiptproof.services.risk import RiskEngine

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "Certified, but this receipt fingerprint was seen before (possible duplicate claim)"
CERTIFIED_MESSAGE = "Receipt certified successfully"


class ReceiptPipeline:
    """
    The three user-facing operations plus proof lookups.

    Holds no per-request state; the ProofStore is the only shared mutable
    resource and it does its own locking.
    """

    def __init__(
        self,
        analyzer: ReceiptAnalyzer,
        anchor: LedgerAnchor,
        store: ProofStore,
        settings: Optional[Settings] = None,
        normalizer: Optional[ResponseNormalizer] = None,
        risk: Optional[RiskEngine] = None,
    ):
        self.settings = settings or get_settings()
        self.analyzer = analyzer
        self.anchor = anchor
        self.store = store
        self.normalizer = normalizer or ResponseNormalizer()
        self.risk = risk or RiskEngine(self.settings.primary_currency)

    # =========================================================================
    # ANALYZE
    # =========================================================================

    async def analyze(self, request: AnalyzeRequest, now: Optional[datetime] = None) -> AnalyzeResponse:
        """
        Extract, judge and fingerprint a receipt.

        Input modes, first present wins: image, raw AI output, typed fields.
        AI failures never escape; they come back as an UNREADABLE analysis.

        Args:
            request: The analyze request
            now: Reference time for the date checks (defaults to now)

        Raises:
            InvalidInputError: if no input mode is present
        """
        analysis = await self._analysis_for(request, now)

        canonical_text = canonicalize(analysis)
        fingerprint = compute_fingerprint(canonical_text)

        today = now.date() if now else None
        trust_score = self.risk.compute_checks(analysis, today=today)
        final_risk = self.risk.resolve(analysis.verdict, analysis.reasons, trust_score)
        validation = self.risk.validate_against_checks(analysis, trust_score)

        logger.info(
            f"Analyzed receipt: verdict={analysis.verdict.value} score={trust_score.score} "
            f"level={final_risk.level.value} fingerprint={fingerprint[:16]}..."
        )

        return AnalyzeResponse(
            analysis=analysis,
            trust_score=trust_score,
            final_risk=final_risk,
            validation=validation,
            canonical_text=canonical_text,
            fingerprint=fingerprint,
            timestamp=datetime.now(timezone.utc),
        )

    async def _analysis_for(self, request: AnalyzeRequest, now: Optional[datetime]) -> ReceiptAnalysis:
        if request.image_base64:
            raw = await self._call_analyzer(self.analyzer.analyze_image(request.image_base64))
            if raw is None:
                return self.normalizer.unreadable(None, "Receipt image analysis failed.")
            return self.normalizer.normalize(raw, now)

        if request.raw_ai_output is not None:
            return self.normalizer.normalize(request.raw_ai_output, now)

        if request.receipt is not None:
            raw = await self._call_analyzer(self.analyzer.analyze_fields(request.receipt))
            if raw is None:
                analysis = self.normalizer.unreadable(None, "Manual data analysis failed.")
            else:
                analysis = self.normalizer.normalize(raw, now)
            # Typed fields are what the user is certifying; the AI only judges them
            typed = {name: getattr(request.receipt, name) for name in Receipt.model_fields}
            return analysis.model_copy(update=typed)

        raise InvalidInputError("Either an image, raw AI output or receipt fields are required")

    async def _call_analyzer(self, call) -> Optional[str]:
        try:
            return await call
        except Exception as e:
            logger.error(f"Analyzer call failed: {e}")
            return None

    # =========================================================================
    # CERTIFY
    # =========================================================================

    def _resolve_local(self, canonical_text: Optional[str], fingerprint: Optional[str]):
        """
        (canonical_text, fingerprint) for a certify/verify request.

        canonical_text wins when present: it's re-normalized and hashed. A
        fingerprint sent alongside it must agree with that hash.
        """
        if canonical_text and canonical_text.strip():
            canonical = normalize_canonical_text(canonical_text)
            computed = compute_fingerprint(canonical)
            if fingerprint and fingerprint.strip().lower() != computed:
                raise InvalidInputError("Fingerprint does not match the canonical text")
            return canonical, computed

        if not fingerprint:
            raise InvalidInputError("Either canonical_text or fingerprint is required")
        if not is_fingerprint(fingerprint):
            raise InvalidInputError("Invalid hash format - must be 64-character hex string")
        return None, fingerprint.strip().lower()

    async def certify(self, request: CertifyRequest) -> CertifyResponse:
        """
        Anchor a receipt on the ledger and record it locally.

        Raises:
            InvalidInputError: bad or missing canonical text / fingerprint
            InsufficientFundsError / CertificationError: from the ledger anchor
        """
        canonical_text, fingerprint = self._resolve_local(request.canonical_text, request.fingerprint)

        proof = await self.anchor.certify(fingerprint)

        # File or database IO; keep it off the event loop
        stored = await asyncio.to_thread(
            self.store.upsert,
            fingerprint,
            proof.tx_signature,
            canonical_text=canonical_text,
            analysis_summary=request.analysis_summary,
        )

        return CertifyResponse(
            tx_signature=proof.tx_signature,
            fingerprint=fingerprint,
            timestamp=proof.timestamp,
            explorer_url=proof.explorer_url,
            wallet_address=proof.wallet_address,
            duplicate=stored.duplicate,
            first_seen_tx=stored.first_seen_tx,
            first_seen_at=stored.first_seen_at,
            seen_count=stored.seen_count,
            message=DUPLICATE_MESSAGE if stored.duplicate else CERTIFIED_MESSAGE,
        )

    # =========================================================================
    # VERIFY
    # =========================================================================

    async def verify(self, request: VerifyRequest) -> VerifyResponse:
        """
        Check a presented receipt against the fingerprint anchored in a tx.

        Ledger problems come back as a labelled error on the response, not
        as exceptions. On a mismatch, diff lists the fields that changed,
        when the certified canonical text is known locally.

        Raises:
            InvalidInputError: bad tx signature, canonical text or fingerprint
        """
        local_text, local_fp = self._resolve_local(request.canonical_text, request.fingerprint)

        outcome = await self.anchor.verify(request.tx_signature, local_fp)
        chain_text = await asyncio.to_thread(
            self._certified_text, request.tx_signature, outcome.chain_fingerprint
        )

        diff = []
        if not outcome.verified and chain_text and local_text:
            diff = diff_canonical_texts(chain_text, local_text)

        return VerifyResponse(
            verified=outcome.verified,
            message=outcome.message,
            error=outcome.error,
            chain_fingerprint=outcome.chain_fingerprint,
            local_fingerprint=outcome.local_fingerprint,
            chain_canonical_text=chain_text,
            local_canonical_text=local_text,
            diff=diff,
            timestamp=outcome.timestamp,
            explorer_url=outcome.explorer_url,
        )

    def _certified_text(self, tx_signature: str, chain_fingerprint: Optional[str]) -> Optional[str]:
        """Canonical text originally certified: by tx first, then by chain fingerprint."""
        text = None

        entry = self.store.get_by_tx(tx_signature)
        if entry is not None:
            text = entry.canonical_text

        if not text and chain_fingerprint:
            record = self.store.get_by_hash(chain_fingerprint)
            text = record.canonical_text if record else None

        # Older entries may hold text as the client sent it
        return normalize_canonical_text(text) if text else None

    # =========================================================================
    # PROOF LOOKUPS
    # =========================================================================

    def get_proof(self, tx_signature: str) -> Optional[ProofBundle]:
        return self.store.get_bundle(tx_signature)

    def list_proofs(self) -> list[ProofRecord]:
        return self.store.list_all()

    async def health(self) -> dict:
        """Ledger connectivity plus local store size."""
        ledger = await self.anchor.health_check()
        return {
            "healthy": bool(ledger.get("connected")),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": {
                "analyzer": {"model": self.settings.analysis_model},
                "ledger": ledger,
                "proof_store": {"proofs": len(self.store.list_all())},
            },
        }

    async def close(self):
        """Release the ledger client's connections, if it holds any."""
        close = getattr(self.anchor.client, "close", None)
        if close is not None:
            await close()


def build_pipeline(settings: Optional[Settings] = None) -> ReceiptPipeline:
    """Wire the real collaborators from settings."""
    settings = settings or get_settings()

    signer = load_signer(settings.ledger_private_key)
    client = SolanaRpcClient(settings.ledger_rpc_url, confirm_timeout=settings.confirm_timeout_seconds)
    anchor = LedgerAnchor(
        client,
        signer,
        account=str(signer.pubkey()),
        network=settings.ledger_network,
        protocol=settings.memo_protocol,
        version=settings.memo_version,
        min_fee_balance=settings.min_fee_balance,
        top_up_amount=settings.top_up_amount,
    )
    analyzer = OpenAIReceiptAnalyzer(
        client=AsyncOpenAI(api_key=settings.openai_api_key),
        model=settings.analysis_model,
    )

    logger.info(f"Pipeline ready: network={settings.ledger_network} wallet={anchor.account}")
    return ReceiptPipeline(analyzer, anchor, create_proof_store(settings), settings)
