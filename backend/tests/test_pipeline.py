"""
End-to-end tests for the ReceiptPipeline with fake collaborators.

analyze → certify → verify, including duplicate claims and tampering.
Run with: pytest tests/test_pipeline.py -v
"""

import pytest

from receiptproof.errors import InvalidInputError
from receiptproof.models.schemas import (
    AnalyzeRequest,
    CertifyRequest,
    Receipt,
    RiskLevel,
    Verdict,
    VerifyRequest,
)
from receiptproof.services.canonical import compute_fingerprint
from receiptproof.services.pipeline import CERTIFIED_MESSAGE, DUPLICATE_MESSAGE, ReceiptPipeline

from conftest import CAMPUS_MART, CAMPUS_MART_TEXT, NOW, FakeAnalyzer, ai_output

FINGERPRINT = compute_fingerprint(CAMPUS_MART_TEXT)
TAMPERED_TEXT = CAMPUS_MART_TEXT.replace("total=14.11", "total=19.11")


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer(ai_output())


@pytest.fixture
def pipeline(analyzer, anchor, json_store) -> ReceiptPipeline:
    return ReceiptPipeline(analyzer, anchor, json_store)


# =============================================================================
# ANALYZE
# =============================================================================

@pytest.mark.asyncio
async def test_analyze_raw_ai_output(pipeline, analyzer):
    """Raw AI text is only normalized; the analyzer is not called."""
    result = await pipeline.analyze(AnalyzeRequest(raw_ai_output=ai_output()), now=NOW)

    assert analyzer.calls == []
    assert result.canonical_text == CAMPUS_MART_TEXT
    assert result.fingerprint == FINGERPRINT
    assert result.trust_score.score == 100
    assert result.final_risk.level == RiskLevel.GOOD
    assert result.validation.is_valid


@pytest.mark.asyncio
async def test_analyze_typed_fields_keep_user_values(pipeline, analyzer):
    """The AI judges typed fields but can't change them: a wrong total stays wrong."""
    receipt = Receipt(**{**CAMPUS_MART, "total": 19.11})

    result = await pipeline.analyze(AnalyzeRequest(receipt=receipt), now=NOW)

    assert analyzer.calls[0][0] == "fields"
    assert result.analysis.total == 19.11
    assert result.analysis.verdict == Verdict.LIKELY_REAL
    assert result.final_risk.level == RiskLevel.BAD
    assert "total=19.11" in result.canonical_text


@pytest.mark.asyncio
async def test_analyze_image(pipeline, analyzer):
    result = await pipeline.analyze(AnalyzeRequest(image_base64="aGVsbG8=", receipt=Receipt(merchant="x")), now=NOW)

    assert analyzer.calls == [("image", "aGVsbG8=")]
    assert result.fingerprint == FINGERPRINT


@pytest.mark.asyncio
async def test_analyzer_failure_is_unreadable(anchor, json_store):
    pipeline = ReceiptPipeline(FakeAnalyzer(error=RuntimeError("quota exceeded")), anchor, json_store)

    result = await pipeline.analyze(AnalyzeRequest(image_base64="aGVsbG8="), now=NOW)

    assert result.analysis.verdict == Verdict.UNREADABLE
    assert result.final_risk.level == RiskLevel.BAD
    assert not result.validation.is_valid


@pytest.mark.asyncio
async def test_analyze_requires_input(pipeline):
    with pytest.raises(InvalidInputError):
        await pipeline.analyze(AnalyzeRequest())


# =============================================================================
# CERTIFY
# =============================================================================

@pytest.mark.asyncio
async def test_certify_client_formatted_text(pipeline, json_store):
    client_text = CAMPUS_MART_TEXT.replace("campus mart", "Campus Mart").replace("12.49", "12.490")

    result = await pipeline.certify(CertifyRequest(canonical_text=client_text, analysis_summary={"score": 100}))

    assert result.fingerprint == FINGERPRINT
    assert not result.duplicate
    assert result.seen_count == 1
    assert result.message == CERTIFIED_MESSAGE
    assert json_store.get_by_tx(result.tx_signature).canonical_text == CAMPUS_MART_TEXT


@pytest.mark.asyncio
async def test_certify_twice_is_duplicate(pipeline):
    first = await pipeline.certify(CertifyRequest(canonical_text=CAMPUS_MART_TEXT))
    second = await pipeline.certify(CertifyRequest(canonical_text=CAMPUS_MART_TEXT))

    assert second.tx_signature != first.tx_signature
    assert second.duplicate
    assert second.seen_count == 2
    assert second.first_seen_tx == first.tx_signature
    assert second.message == DUPLICATE_MESSAGE


@pytest.mark.asyncio
async def test_certify_records_over_damaged_entry(pipeline, json_store):
    json_store.backend.path.write_text(f'{{"byHash": {{"{FINGERPRINT}": {{"junk": 1}}}}, "byTx": {{}}}}')

    result = await pipeline.certify(CertifyRequest(canonical_text=CAMPUS_MART_TEXT))

    assert not result.duplicate
    assert json_store.get_bundle(result.tx_signature).canonical_text == CAMPUS_MART_TEXT


@pytest.mark.asyncio
async def test_certify_fingerprint_only(pipeline, json_store):
    result = await pipeline.certify(CertifyRequest(fingerprint=FINGERPRINT.upper()))

    assert result.fingerprint == FINGERPRINT
    assert json_store.get_by_hash(FINGERPRINT).canonical_text is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_body",
    [
        CertifyRequest(),
        CertifyRequest(fingerprint="xyz"),
        CertifyRequest(canonical_text=CAMPUS_MART_TEXT, fingerprint="0" * 64),
    ],
)
async def test_certify_rejects_bad_input(pipeline, ledger_client, request_body):
    with pytest.raises(InvalidInputError):
        await pipeline.certify(request_body)

    assert ledger_client.submitted == []


# =============================================================================
# VERIFY
# =============================================================================

@pytest.mark.asyncio
async def test_verify_untouched_receipt(pipeline):
    proof = await pipeline.certify(CertifyRequest(canonical_text=CAMPUS_MART_TEXT))

    report = await pipeline.verify(VerifyRequest(canonical_text=CAMPUS_MART_TEXT, tx_signature=proof.tx_signature))

    assert report.verified
    assert report.chain_fingerprint == FINGERPRINT
    assert report.chain_canonical_text == CAMPUS_MART_TEXT
    assert report.diff == []


@pytest.mark.asyncio
async def test_verify_tampered_receipt_shows_diff(pipeline):
    proof = await pipeline.certify(CertifyRequest(canonical_text=CAMPUS_MART_TEXT))

    report = await pipeline.verify(VerifyRequest(canonical_text=TAMPERED_TEXT, tx_signature=proof.tx_signature))

    assert not report.verified
    assert report.local_fingerprint == compute_fingerprint(TAMPERED_TEXT)
    assert report.chain_fingerprint == FINGERPRINT
    assert [(d.field, d.certified, d.presented) for d in report.diff] == [("total", "14.11", "19.11")]


@pytest.mark.asyncio
async def test_verify_finds_certified_text_by_fingerprint(pipeline):
    """A tx certified without text still gets a diff once the text is known for its fingerprint."""
    bare = await pipeline.certify(CertifyRequest(fingerprint=FINGERPRINT))
    await pipeline.certify(CertifyRequest(canonical_text=CAMPUS_MART_TEXT))

    report = await pipeline.verify(VerifyRequest(canonical_text=TAMPERED_TEXT, tx_signature=bare.tx_signature))

    assert report.chain_canonical_text == CAMPUS_MART_TEXT
    assert [d.field for d in report.diff] == ["total"]


@pytest.mark.asyncio
async def test_verify_unknown_transaction(pipeline, signature):
    report = await pipeline.verify(VerifyRequest(fingerprint=FINGERPRINT, tx_signature=signature))

    assert not report.verified
    assert report.error == "TRANSACTION_NOT_FOUND"
    assert report.chain_canonical_text is None
    assert report.diff == []


@pytest.mark.asyncio
async def test_verify_rejects_bad_signature(pipeline):
    with pytest.raises(InvalidInputError):
        await pipeline.verify(VerifyRequest(fingerprint=FINGERPRINT, tx_signature="nope"))


# =============================================================================
# PROOFS + HEALTH
# =============================================================================

@pytest.mark.asyncio
async def test_proof_lookups(pipeline):
    proof = await pipeline.certify(CertifyRequest(canonical_text=CAMPUS_MART_TEXT))

    bundle = pipeline.get_proof(proof.tx_signature)

    assert bundle.fingerprint == FINGERPRINT
    assert [r.fingerprint for r in pipeline.list_proofs()] == [FINGERPRINT]


@pytest.mark.asyncio
async def test_health(pipeline):
    health = await pipeline.health()

    assert health["healthy"]
    assert health["services"]["proof_store"]["proofs"] == 0
