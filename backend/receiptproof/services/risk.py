"""
Risk Fusion Service.

WHAT THIS DOES:
1. Runs a fixed set of rule-based checks on the receipt fields and turns
   them into an explainable TrustScore (0-100).
2. Resolves the AI verdict + TrustScore into ONE FinalRisk decision.

WHY THIS MATTERS:
The AI verdict is probabilistic; arithmetic is not. If subtotal + tax
doesn't equal total, no AI opinion should be able to turn that into
"low risk". So rule failures always dominate the AI verdict.

SCORING:
score = 100 - sum(impact of every warn/fail check), clamped to [0, 100]

    Check              pass                       warn (-pts)                 fail (-pts)
    Merchant present   >= 3 chars                 < 3 chars (8)               missing (25)
    Math consistency   |sub+tax-total| <= 0.02    <= 0.25 (10)                > 0.25 (25)
    Currency           in allow-list              missing / uncommon (6)      -
    Amounts positive   subtotal, total > 0        -                           <= 0 (25)
    Tax rate           plausible band             zero / high (8 / 10)        implausible (22)
    Date               valid, <= 1 year old       missing / bad format /      future (25)
                                                  > 1 year old (8 / 10)       impossible date (18)

RESOLUTION (fixed precedence):
    any fail check OR AI "fake"/"unreadable" OR score < 50   → bad
    AI "suspicious" OR score < 70                            → warning
    otherwise                                                → good

USAGE:
    trust_score = compute_checks(receipt)
    final = resolve_risk(analysis.verdict, analysis.reasons, trust_score)
"""

import logging
import re
from datetime import date

from receiptproof.config import get_settings
from receiptproof.models.schemas import (
    FinalRisk,
    LocalValidation,
    Receipt,
    ReceiptAnalysis,
    RiskLevel,
    TrustCheck,
    TrustScore,
    Verdict,
)
from receiptproof.services.canonical import to_decimal

logger = logging.getLogger(__name__)

# Arithmetic tolerance tiers (absolute currency units)
MATH_PASS_TOLERANCE = 0.02
MATH_WARN_TOLERANCE = 0.25

COMMON_CURRENCIES = {"CAD", "USD", "EUR", "GBP", "AUD"}

# Tax bands as a fraction of subtotal
PRIMARY_TAX_PASS = (0.02, 0.20)
PRIMARY_TAX_WARN_MAX = 0.35
OTHER_TAX_PASS = (0.00, 0.35)

MAX_RECEIPT_AGE_DAYS = 365

# Resolution thresholds
BAD_SCORE_THRESHOLD = 50
WARNING_SCORE_THRESHOLD = 70

MATH_CHECK = "Math consistency"

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _check(name: str, status: str, impact: int, description: str) -> TrustCheck:
    return TrustCheck(name=name, status=status, impact=impact, description=description)


class RiskEngine:
    """
    Deterministic, explainable risk scoring.

    This is NOT AI. The same fields always give the same checks, which is
    what makes the result safe to show next to the AI's opinion.

    Pipeline position:
    ReceiptAnalysis → [RiskEngine.compute_checks] → TrustScore → [RiskEngine.resolve] → FinalRisk
    """

    def __init__(self, primary_currency: str | None = None):
        settings = get_settings()
        self.primary_currency = (primary_currency or settings.primary_currency).upper()

    # =========================================================================
    # CHECKS
    # =========================================================================

    def compute_checks(self, receipt: Receipt, today: date | None = None) -> TrustScore:
        """
        Run every check and compute the clamped score.

        Args:
            receipt: Receipt or ReceiptAnalysis (only the raw fields are used)
            today: Reference date for the date check (defaults to local today)

        Returns:
            TrustScore with checks in a stable order
        """
        today = today or date.today()

        subtotal = float(to_decimal(receipt.subtotal))
        tax = float(to_decimal(receipt.tax))
        total = float(to_decimal(receipt.total))
        currency = (receipt.currency or "").strip().upper()

        checks = [
            self._check_merchant(receipt.merchant or ""),
            self._check_math(subtotal, tax, total),
            self._check_currency(currency),
            self._check_amounts_positive(subtotal, total),
        ]
        # Tax rate is undefined without a positive subtotal
        if subtotal > 0:
            checks.append(self._check_tax_rate(subtotal, tax, currency))
        checks.append(self._check_date(receipt.date or "", today))

        score = 100 - sum(c.impact for c in checks)
        score = max(0, min(100, score))

        return TrustScore(score=score, checks=checks)

    def _check_merchant(self, merchant: str) -> TrustCheck:
        m = merchant.strip()
        if not m:
            return _check("Merchant present", "fail", 25, "Merchant is missing.")
        if len(m) < 3:
            return _check("Merchant present", "warn", 8, "Merchant looks unusually short.")
        return _check("Merchant present", "pass", 0, "Merchant field looks okay.")

    def _check_math(self, subtotal: float, tax: float, total: float) -> TrustCheck:
        # round() keeps float noise (12.49 + 1.62 = 14.110000000000001) out of the tiers
        diff = round(abs(subtotal + tax - total), 4)
        if diff <= MATH_PASS_TOLERANCE:
            return _check(MATH_CHECK, "pass", 0, "Subtotal + tax matches total.")
        if diff <= MATH_WARN_TOLERANCE:
            return _check(
                MATH_CHECK, "warn", 10,
                f"Total is off by ${diff:.2f} (possible rounding / entry error).",
            )
        return _check(MATH_CHECK, "fail", 25, f"Total is off by ${diff:.2f} (high risk).")

    def _check_currency(self, currency: str) -> TrustCheck:
        if not currency:
            return _check("Currency", "warn", 6, "Currency missing.")
        if currency not in COMMON_CURRENCIES:
            return _check("Currency", "warn", 6, f"Uncommon currency: {currency}")
        return _check("Currency", "pass", 0, "Currency looks normal.")

    def _check_amounts_positive(self, subtotal: float, total: float) -> TrustCheck:
        if subtotal <= 0 or total <= 0:
            return _check("Amounts positive", "fail", 25, "Subtotal/total must be greater than 0.")
        return _check("Amounts positive", "pass", 0, "Amounts are positive.")

    def _check_tax_rate(self, subtotal: float, tax: float, currency: str) -> TrustCheck:
        rate = tax / subtotal
        pct = f"{rate * 100:.1f}%"

        if tax == 0:
            return _check("Tax rate", "warn", 8, "Tax is 0 (could be valid, but unusual).")

        if currency == self.primary_currency:
            low, high = PRIMARY_TAX_PASS
            if low <= rate <= high:
                return _check("Tax rate", "pass", 0, f"Tax rate {pct} looks plausible.")
            if high < rate <= PRIMARY_TAX_WARN_MAX:
                return _check("Tax rate", "warn", 10, f"Tax rate {pct} is high.")
            return _check("Tax rate", "fail", 22, f"Tax rate {pct} is implausible.")

        # Other currencies: looser band, never a hard fail
        low, high = OTHER_TAX_PASS
        if low <= rate <= high:
            return _check("Tax rate", "pass", 0, f"Tax rate {pct} looks plausible.")
        return _check("Tax rate", "warn", 10, f"Tax rate {pct} seems unusual.")

    def _check_date(self, raw: str, today: date) -> TrustCheck:
        s = raw.strip()
        if not s:
            return _check("Date", "warn", 8, "Date missing.")

        # Accept YYYY-MM-DD, optionally followed by a time; only the date part is judged
        date_part = re.split(r"[ T]", s, maxsplit=1)[0]
        if not _DATE_ONLY.match(date_part):
            return _check("Date", "warn", 8, "Date format should be YYYY-MM-DD.")

        year, month, day = (int(p) for p in date_part.split("-"))
        try:
            parsed = date(year, month, day)
        except ValueError:
            return _check("Date", "fail", 18, "Invalid date.")

        if parsed > today:
            return _check("Date", "fail", 25, f"Date is in the future ({date_part}).")

        days_old = (today - parsed).days
        if days_old > MAX_RECEIPT_AGE_DAYS:
            return _check(
                "Date", "warn", 10,
                f"Receipt is {days_old} days old (older than 1 year).",
            )

        return _check("Date", "pass", 0, f"Date looks valid ({date_part}).")

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def resolve(
        self,
        verdict: Verdict,
        reasons: list[str],
        trust_score: TrustScore,
    ) -> FinalRisk:
        """
        Deterministic resolver: AI verdict + TrustScore → single decision.

        Args:
            verdict: The (normalized) AI verdict
            reasons: The AI's reasons, used to explain an AI-driven "bad"
            trust_score: Output of compute_checks

        Returns:
            FinalRisk with level, badge, one-line summary and explanation
        """
        failed = trust_score.failed_checks
        ai_fake = verdict == Verdict.LIKELY_FAKE
        ai_unreadable = verdict == Verdict.UNREADABLE
        ai_suspicious = verdict == Verdict.SUSPICIOUS
        low_trust = trust_score.score < BAD_SCORE_THRESHOLD

        if failed or ai_fake or ai_unreadable or low_trust:
            return FinalRisk(
                level=RiskLevel.BAD,
                badge="HIGH RISK",
                summary="Do not reimburse without further review",
                explanation=self._explain_bad(failed, verdict, reasons, trust_score),
            )

        if ai_suspicious or trust_score.score < WARNING_SCORE_THRESHOLD:
            parts = []
            if ai_suspicious:
                parts.append("AI flagged as suspicious")
            if trust_score.score < WARNING_SCORE_THRESHOLD:
                parts.append(f"Trust score {trust_score.score}/100")
            return FinalRisk(
                level=RiskLevel.WARNING,
                badge="REVIEW NEEDED",
                summary="Some inconsistencies detected",
                explanation="; ".join(parts) + ". Manual review recommended.",
            )

        return FinalRisk(
            level=RiskLevel.GOOD,
            badge="LOW RISK",
            summary="Receipt appears legitimate",
            explanation="All checks passed. No significant red flags detected.",
        )

    def _explain_bad(
        self,
        failed: list[TrustCheck],
        verdict: Verdict,
        reasons: list[str],
        trust_score: TrustScore,
    ) -> str:
        # Most concrete cause first: arithmetic, other rule failures, then the AI
        if any(c.name == MATH_CHECK for c in failed):
            return "Total does not match subtotal + tax. This is a critical inconsistency."
        if failed:
            return f"{failed[0].name} check failed: {failed[0].description}"
        if verdict == Verdict.LIKELY_FAKE:
            first = reasons[0] if reasons else ""
            return f"AI flagged as likely fake. {first}".strip()
        if verdict == Verdict.UNREADABLE:
            return "AI could not read the receipt reliably. Re-scan or enter it manually."
        return f"Low trust score ({trust_score.score}/100). Multiple red flags detected."

    # =========================================================================
    # LOCAL VALIDATION (AI fraud score vs. rule checks)
    # =========================================================================

    def validate_against_checks(
        self,
        analysis: ReceiptAnalysis,
        trust_score: TrustScore,
    ) -> LocalValidation:
        """
        Fold the rule checks into the AI's fraud score, for display.

        - any fail check: +30 and listed as an issue
        - any warn check: +10 and listed as a warning
        - everything clean: score capped at 25 so a legit receipt can't read as high risk
        UNREADABLE analyses skip this: their fields are placeholders.
        """
        if analysis.verdict == Verdict.UNREADABLE:
            return LocalValidation(
                is_valid=False,
                issues=["UNREADABLE: could not confidently extract receipt fields."],
                warnings=[],
                adjusted_fraud_score=analysis.fraud_score,
            )

        issues = [c.description for c in trust_score.failed_checks]
        warnings = [c.description for c in trust_score.warned_checks]

        adjusted = analysis.fraud_score
        if issues:
            adjusted += 30
        if warnings:
            adjusted += 10
        if not issues and not warnings:
            adjusted = min(adjusted, 25)

        return LocalValidation(
            is_valid=not issues,
            issues=issues,
            warnings=warnings,
            adjusted_fraud_score=max(0, min(100, adjusted)),
        )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def compute_checks(receipt: Receipt, today: date | None = None) -> TrustScore:
    """
    Convenience function to score a receipt.

    Example:
        trust_score = compute_checks(receipt)
        print(trust_score.score, [c.status for c in trust_score.checks])
    """
    engine = RiskEngine()
    return engine.compute_checks(receipt, today)


def resolve_risk(verdict: Verdict, reasons: list[str], trust_score: TrustScore) -> FinalRisk:
    """Convenience function to resolve the final risk level."""
    engine = RiskEngine()
    return engine.resolve(verdict, reasons, trust_score)
