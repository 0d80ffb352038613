"""
Response Normalizer Service.

WHAT THIS DOES:
Turns whatever text the AI returned into a clean ReceiptAnalysis.
It NEVER raises: garbage in → an UNREADABLE analysis out.

WHY THIS MATTERS:
The AI is asked for one JSON object, but in practice we get:
- JSON wrapped in ```json fences, or with prose before/after it
- JSON cut off near the end (token limit) → missing closing braces
- wrong types ("fraud_score": "12", "reasons": "one string")
- verdicts outside the vocabulary
The service must stay up regardless, so every failure degrades to a
labelled UNREADABLE record instead of a 500.

PIPELINE:
1. Strip code fences
2. Find the first balanced {...} (brace depth + string/escape tracking);
   if the text ends before it balances, take "{" → end-of-text
3. Strict parse; on failure append "}" and retry (bounded)
4. Not parseable / not an object → UNREADABLE
5. Coerce + clamp fields (fraud_score, confidence, verdict, reasons)
6. Critical fields still missing → UNREADABLE
7. Local future-date correction (see correct_future_date_claims)

USAGE:
    analysis = normalize_response(raw_model_text)
    if analysis.verdict == Verdict.UNREADABLE:
        logger.warning(analysis.raw_excerpt)
"""

import json
import logging
import math
import re
from datetime import datetime, timedelta

from receiptproof.models.schemas import LineItem, ReceiptAnalysis, Verdict
from receiptproof.services.canonical import to_decimal

logger = logging.getLogger(__name__)

# How many closing braces we are willing to append to repair a truncated object
MAX_REPAIR_ATTEMPTS = 6

# UNREADABLE sentinel
UNREADABLE_FRAUD_SCORE = 95
UNREADABLE_CONFIDENCE = 0.2
RAW_EXCERPT_LIMIT = 600

DEFAULT_FRAUD_SCORE = 50
DEFAULT_CONFIDENCE = 0.5
DEFAULT_CURRENCY = "CAD"
DEFAULT_REASON = "No specific reasons provided."

# Points removed when the AI's "future date" claim is refuted locally
FUTURE_DATE_PENALTY = 35
FUTURE_DATE_REASON = re.compile(r"(future|in the future)", re.IGNORECASE)
FUTURE_DATE_NOTE = "Date checked locally: not in the future (AI claim corrected)."

_RECEIPT_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[ T](\d{2}):(\d{2}))?")
_INT_PREFIX = re.compile(r"^\s*[+-]?\d+")


# =============================================================================
# DATE HELPERS (local "is this really in the future?" check)
# =============================================================================

def parse_receipt_datetime(date_str) -> datetime | None:
    """
    Parse "YYYY-MM-DD", "YYYY-MM-DD HH:MM" or "YYYY-MM-DDTHH:MM" as local time.

    Naive local datetimes on purpose: converting through UTC is exactly
    what makes a same-day receipt look like tomorrow's.
    """
    if not date_str:
        return None
    match = _RECEIPT_DATE.match(str(date_str).strip())
    if not match:
        return None

    year, month, day = int(match.group(1)), int(match.group(2)), int(match.group(3))
    hour = int(match.group(4)) if match.group(4) else 0
    minute = int(match.group(5)) if match.group(5) else 0
    try:
        return datetime(year, month, day, hour, minute)
    except ValueError:
        return None


def is_future_receipt_date(date_str, now: datetime | None = None) -> bool:
    """
    True only if the receipt is dated after the start of tomorrow.

    Tomorrow is still allowed to absorb timezone skew between the
    merchant, the phone and this server. Unparseable dates are not future.
    """
    receipt_dt = parse_receipt_datetime(date_str)
    if receipt_dt is None:
        return False

    now = now or datetime.now()
    today = datetime(now.year, now.month, now.day)
    tomorrow = today + timedelta(days=1)
    return receipt_dt > tomorrow


def correct_future_date_claims(
    analysis: ReceiptAnalysis,
    now: datetime | None = None,
) -> ReceiptAnalysis:
    """
    Undo a known AI false positive: claiming a receipt is future-dated.

    If any reason mentions "future" but the local check disagrees, those
    reasons are dropped, fraud_score is reduced by FUTURE_DATE_PENALTY and
    a note explains the correction. Otherwise the analysis is returned as is.
    """
    ai_said_future = any(FUTURE_DATE_REASON.search(r) for r in analysis.reasons)
    if not ai_said_future or is_future_receipt_date(analysis.date, now):
        return analysis

    reasons = [r for r in analysis.reasons if not FUTURE_DATE_REASON.search(r)]
    reasons.append(FUTURE_DATE_NOTE)
    corrected_score = max(0, analysis.fraud_score - FUTURE_DATE_PENALTY)

    logger.info(
        f"AI claimed a future date for {analysis.date!r}, local check disagrees: "
        f"fraud_score {analysis.fraud_score} → {corrected_score}"
    )
    return analysis.model_copy(update={"reasons": reasons, "fraud_score": corrected_score})


# =============================================================================
# RESPONSE NORMALIZER
# =============================================================================

class ResponseNormalizer:
    """
    Extracts and repairs the AI's receipt JSON.

    Pipeline position:
    AI collaborator → raw text → [ResponseNormalizer] → ReceiptAnalysis → Canonicalizer / RiskFusion
    """

    def normalize(self, raw_text, now: datetime | None = None) -> ReceiptAnalysis:
        """
        Normalize raw AI output. Never raises.

        Args:
            raw_text: Whatever the AI returned (may be None, empty, prose, truncated JSON)
            now: Reference time for the future-date check (defaults to local now)

        Returns:
            A fully coerced ReceiptAnalysis, or the UNREADABLE sentinel
        """
        raw = "" if raw_text is None else str(raw_text)
        try:
            analysis = self._parse(raw)
            return correct_future_date_claims(analysis, now)
        except Exception as e:
            logger.error(f"Parser exception while normalizing AI output: {e}")
            return self.unreadable(raw, f"Parser exception: {e}")

    def unreadable(self, raw_text, reason: str | None = None) -> ReceiptAnalysis:
        """Safe fallback so the API never hard-crashes on bad AI output."""
        excerpt = ("" if raw_text is None else str(raw_text))[:RAW_EXCERPT_LIMIT]
        return ReceiptAnalysis(
            merchant="",
            date="",
            currency=DEFAULT_CURRENCY,
            subtotal=0.0,
            tax=0.0,
            total=0.0,
            verdict=Verdict.UNREADABLE,
            fraud_score=UNREADABLE_FRAUD_SCORE,
            reasons=[
                "Could not reliably parse AI output.",
                reason or "AI output was malformed or truncated.",
                "Try a clearer photo or manual entry.",
            ],
            confidence=UNREADABLE_CONFIDENCE,
            raw_excerpt=excerpt,
        )

    def _parse(self, raw: str) -> ReceiptAnalysis:
        cleaned = self.strip_fences(raw)

        candidate = self.extract_first_json_object(cleaned)
        if candidate is None:
            logger.warning("AI output contained no JSON object")
            return self.unreadable(raw, "No JSON object found in model output.")

        parsed = self.repair_and_parse(candidate)
        if not isinstance(parsed, dict):
            logger.warning("AI output was invalid or truncated JSON")
            return self.unreadable(raw, "Model returned invalid or truncated JSON.")

        analysis = self._coerce(parsed)
        if analysis is None:
            logger.warning("AI output is missing critical fields")
            return self.unreadable(raw, "Missing critical fields in model output.")
        return analysis

    # =========================================================================
    # STEP 1-3: FENCES, EXTRACTION, REPAIR
    # =========================================================================

    @staticmethod
    def strip_fences(text: str) -> str:
        """Remove markdown code fences (```json ... ```) and trim."""
        if not text:
            return ""
        text = re.sub(r"```json\s*", "", text, flags=re.IGNORECASE)
        text = re.sub(r"```\s*", "", text)
        return text.strip()

    @staticmethod
    def extract_first_json_object(text: str) -> str | None:
        """
        Return the first balanced {...} in text.

        Braces inside string literals don't count, and escaped quotes don't
        end a string. If the text ends before the object balances (the
        model was cut off), everything from the first "{" is returned as a
        candidate for repair. None if there is no "{" at all.
        """
        start = text.find("{")
        if start == -1:
            return None

        depth = 0
        in_string = False
        escape = False

        for i in range(start, len(text)):
            ch = text[i]

            if in_string:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]

        return text[start:]

    def repair_and_parse(self, candidate: str):
        """
        Parse candidate JSON, appending up to MAX_REPAIR_ATTEMPTS closing braces.

        Fixes the common "response cut off right before the final }" case.
        Returns the parsed value, or None if every attempt failed.
        """
        text = self.strip_fences(candidate.strip())

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        for _ in range(MAX_REPAIR_ATTEMPTS):
            text += "}"
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                continue

        return None

    # =========================================================================
    # STEP 5-6: COERCION
    # =========================================================================

    def _coerce(self, data: dict) -> ReceiptAnalysis | None:
        fraud_score = _coerce_int(data.get("fraud_score"), DEFAULT_FRAUD_SCORE)
        confidence = _coerce_float(data.get("confidence"), DEFAULT_CONFIDENCE)

        verdict_text = str(data.get("verdict") or Verdict.SUSPICIOUS.value).strip().upper()
        try:
            verdict = Verdict(verdict_text)
        except ValueError:
            verdict = Verdict.SUSPICIOUS

        total = float(to_decimal(data.get("total")))

        # total == 0 counts as missing: a receipt with no total can't be checked
        if not total or not math.isfinite(fraud_score):
            return None

        return ReceiptAnalysis(
            merchant=str(data.get("merchant") or "").strip(),
            date=str(data.get("date") or "").strip(),
            currency=str(data.get("currency") or DEFAULT_CURRENCY).strip().upper(),
            subtotal=float(to_decimal(data.get("subtotal"))),
            tax=float(to_decimal(data.get("tax"))),
            total=total,
            items=_coerce_items(data.get("items")),
            verdict=verdict,
            fraud_score=max(0, min(100, fraud_score)),
            reasons=_coerce_reasons(data.get("reasons")),
            confidence=max(0.0, min(1.0, confidence)),
        )


def _coerce_int(value, default: int) -> int:
    """Integer-prefix parse: 12 → 12, 12.7 → 12, "12 pts" → 12, junk → default."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else default
    match = _INT_PREFIX.match(str(value))
    return int(match.group(0)) if match else default


def _coerce_float(value, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else default
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return default
    return parsed if math.isfinite(parsed) else default


def _coerce_reasons(value) -> list[str]:
    if isinstance(value, list):
        reasons = [str(r) for r in value if r is not None]
    elif value:
        reasons = [str(value)]
    else:
        reasons = []
    reasons = [r for r in reasons if r.strip()]
    return reasons or [DEFAULT_REASON]


def _coerce_items(value) -> list[LineItem] | None:
    if not isinstance(value, list):
        return None
    items = [
        LineItem(
            name=str(item.get("name") or "").strip(),
            price=float(to_decimal(item.get("price"))),
            quantity=float(to_decimal(item.get("quantity"))) or 1,
        )
        for item in value
        if isinstance(item, dict)
    ]
    return items or None


# =============================================================================
# CONVENIENCE FUNCTION
# =============================================================================

def normalize_response(raw_text, now: datetime | None = None) -> ReceiptAnalysis:
    """
    Convenience function to normalize raw AI output.

    Example:
        analysis = normalize_response('```json\\n{"total": 14.11, ...}\\n```')
    """
    normalizer = ResponseNormalizer()
    return normalizer.normalize(raw_text, now)
