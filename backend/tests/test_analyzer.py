"""
Tests for the OpenAI receipt analyzer request shape.

The chat completions client is replaced by a recorder; no API key needed.
Run with: pytest tests/test_analyzer.py -v
"""

from types import SimpleNamespace

import pytest

from receiptproof.models.schemas import LineItem, Receipt
from receiptproof.services.analyzer import (
    ANALYSIS_PROMPT,
    OpenAIReceiptAnalyzer,
    format_manual_data,
    to_data_url,
)

from conftest import CAMPUS_MART, ai_output


class RecordingCompletions:
    def __init__(self, content):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def make_analyzer(content=None):
    completions = RecordingCompletions(ai_output() if content is None else content)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIReceiptAnalyzer(client=client, model="test-model"), completions


@pytest.mark.asyncio
async def test_image_request_uses_json_mode_and_data_url():
    analyzer, completions = make_analyzer()

    text = await analyzer.analyze_image("aGVsbG8=")

    assert text == ai_output()
    assert completions.kwargs["model"] == "test-model"
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    system, user = completions.kwargs["messages"]
    assert system == {"role": "system", "content": ANALYSIS_PROMPT}
    assert user["content"][1]["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="


@pytest.mark.asyncio
async def test_fields_request_sends_manual_data():
    analyzer, completions = make_analyzer()

    await analyzer.analyze_fields(Receipt(**CAMPUS_MART))

    user = completions.kwargs["messages"][1]["content"]
    assert user.startswith("MANUAL DATA PROVIDED:")
    assert "Merchant: Campus Mart" in user


@pytest.mark.asyncio
async def test_empty_completion_is_empty_text():
    """A null message body comes back as "", which the normalizer marks UNREADABLE."""
    analyzer, _ = make_analyzer(content="")
    analyzer_none, completions = make_analyzer()
    completions.content = None

    assert await analyzer.analyze_fields(Receipt()) == ""
    assert await analyzer_none.analyze_fields(Receipt()) == ""


def test_existing_data_url_passes_through():
    url = "data:image/png;base64,aGVsbG8="

    assert to_data_url(f"  {url} ") == url


def test_manual_data_defaults_and_items():
    text = format_manual_data(Receipt(items=[LineItem(name="Coffee", price=2.5)]))

    assert "Merchant: Not provided" in text
    assert "Currency: CAD" in text
    assert '"name": "Coffee"' in text
