"""
Receipt Analyzer — the AI collaborator.

WHAT THIS DOES:
Sends a receipt photo (or manually typed fields) to a vision-capable chat
model and returns whatever text the model produced. It does NOT parse that
text: the ResponseNormalizer owns that, because the model's output can be
fenced, wrapped in prose, or cut off mid-object.

The prompt asks for one JSON object with these exact keys:
    merchant, date, currency, subtotal, tax, total,
    verdict, fraud_score, reasons, confidence

USAGE:
    analyzer = OpenAIReceiptAnalyzer()
    raw = await analyzer.analyze_image(photo_base64)
    analysis = ResponseNormalizer().normalize(raw)
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

from openai import AsyncOpenAI

from receiptproof.config import get_settings
from receiptproof.models.schemas import Receipt

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are an expert receipt verification AI. Analyze this receipt image OR manual data and extract structured information.

Your job is to:
1. Extract key fields: merchant name, date/time, currency, subtotal, tax, total
2. Check arithmetic consistency (subtotal + tax should equal total)
3. Detect fraud indicators and assign a fraud_score (0-100, where 0=perfectly legit, 100=definitely fake)
4. Provide specific reasons for your verdict

CRITICAL REQUIREMENTS:
- Output ONLY valid JSON, no extra text
- Use these exact field names: merchant, date, currency, subtotal, tax, total, verdict, fraud_score, reasons, confidence
- Optionally include "items": an array of {"name", "price", "quantity"} if line items are legible
- date is "YYYY-MM-DD" or "YYYY-MM-DD HH:MM"
- verdict must be one of: "LIKELY_REAL", "SUSPICIOUS", "LIKELY_FAKE", "UNREADABLE"
- fraud_score is 0-100 (integer)
- reasons is an array of short strings
- confidence is 0.0-1.0 (float)

FRAUD INDICATORS (increase fraud_score):
- Arithmetic doesn't match (subtotal + tax != total)
- Missing required fields (merchant, total)
- Suspicious formatting (weird fonts, inconsistent spacing)
- Date in the future or unreasonably old
- Unrealistic tax rates (<0% or >20%)
- Repeated decimal patterns (12.34, 12.34, 12.34)
- Generic merchant names like "Store" or "Shop"
- Rounded numbers for everything (10.00, 20.00, 30.00)

QUALITY INDICATORS (decrease fraud_score):
- All math checks out perfectly
- Merchant name is specific
- Date is recent and plausible
- Tax rate is reasonable (5-15% for most regions)
- Line items are detailed
- Receipt has unique identifiers (receipt #, transaction ID)

OUTPUT FORMAT (JSON only):
{
  "merchant": "Campus Mart",
  "date": "2026-02-07 14:12",
  "currency": "CAD",
  "subtotal": 12.49,
  "tax": 1.62,
  "total": 14.11,
  "verdict": "LIKELY_REAL",
  "fraud_score": 12,
  "reasons": [
    "Math is correct: 12.49 + 1.62 = 14.11",
    "Merchant name is specific",
    "Date is plausible and recent"
  ],
  "confidence": 0.87
}"""

# "data:image/png;base64,...." → ("image/png", "....")
_DATA_URL = re.compile(r"^data:(image/[\w.+-]+);base64,", re.IGNORECASE)


class ReceiptAnalyzer(ABC):
    """
    Abstract AI collaborator.

    Implementations return the model's raw text. They may raise on
    transport errors; the pipeline turns that into an UNREADABLE result.
    """

    @abstractmethod
    async def analyze_image(self, image_base64: str) -> str:
        """Analyze a receipt photo (plain base64 or a data: URL)."""
        pass

    @abstractmethod
    async def analyze_fields(self, receipt: Receipt) -> str:
        """Judge manually entered receipt fields."""
        pass


class OpenAIReceiptAnalyzer(ReceiptAnalyzer):
    """
    Receipt analysis with an OpenAI vision model.

    JSON mode is requested, which makes well-formed output likely but not
    guaranteed (max_tokens can still truncate it).
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        settings = get_settings()
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.analysis_model

    async def analyze_image(self, image_base64: str) -> str:
        logger.info("Analyzing receipt image")
        content = [
            {"type": "text", "text": "Now analyze the receipt in this image."},
            {"type": "image_url", "image_url": {"url": to_data_url(image_base64)}},
        ]
        return await self._complete(content)

    async def analyze_fields(self, receipt: Receipt) -> str:
        logger.info(f"Analyzing manual receipt data for '{receipt.merchant}'")
        return await self._complete(format_manual_data(receipt))

    async def _complete(self, user_content) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": ANALYSIS_PROMPT},
                {"role": "user", "content": user_content},
            ],
            temperature=0.1,  # Extraction, not creativity
            max_tokens=2048,
            response_format={"type": "json_object"},
        )

        text = response.choices[0].message.content or ""
        logger.info(f"Analyzer returned {len(text)} characters")
        return text


def to_data_url(image_base64: str) -> str:
    """Wrap plain base64 in a JPEG data URL; pass existing data URLs through."""
    image_base64 = image_base64.strip()
    if _DATA_URL.match(image_base64):
        return image_base64
    return f"data:image/jpeg;base64,{image_base64}"


def format_manual_data(receipt: Receipt) -> str:
    """User message for manually entered fields."""
    lines = [
        "MANUAL DATA PROVIDED:",
        f"Merchant: {receipt.merchant or 'Not provided'}",
        f"Date: {receipt.date or 'Not provided'}",
        f"Currency: {receipt.currency or 'CAD'}",
        f"Subtotal: {receipt.subtotal}",
        f"Tax: {receipt.tax}",
        f"Total: {receipt.total}",
    ]
    if receipt.items:
        items = [item.model_dump() for item in receipt.items]
        lines.append(f"Items: {json.dumps(items)}")
    lines.append("")
    lines.append("Analyze this data and provide your structured JSON response.")
    return "\n".join(lines)
