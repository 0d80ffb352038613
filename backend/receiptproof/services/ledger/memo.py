"""
Memo payloads — building the tagged payload and reading it back.

PAYLOAD FORMAT:
    "<PROTOCOL>:<VERSION>:HASH:<fingerprint>"
    e.g. "RECEIPTPROOF:v1:HASH:5f2c...e91a"

DECODING:
The same memo can come back from the RPC in different shapes, so reading
it is an ordered list of strategies, each returning (payload, ok):

    compiled slot:  base58
    legacy slot:    base58 → raw bytes / plain text → base64

A strategy is "ok" only if its output contains the tagged pattern, so a
base64 string that happens to be valid base58 still falls through to the
base64 strategy instead of producing garbage.
"""

import base64
import binascii
import re
from collections.abc import Callable
from dataclasses import dataclass

import base58

from receiptproof.services.ledger.protocols import LedgerInstruction, LedgerTransaction

# SPL Memo program (v2)
MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"

DecodeStrategy = Callable[[object, re.Pattern], tuple[str | None, bool]]


def build_memo_payload(fingerprint: str, protocol: str, version: str) -> bytes:
    """UTF-8 bytes of the tagged payload for fingerprint."""
    return f"{protocol}:{version}:HASH:{fingerprint.lower()}".encode("utf-8")


def memo_pattern(protocol: str, version: str) -> re.Pattern:
    """Regex matching the tagged payload; group 1 is the fingerprint."""
    return re.compile(
        rf"{re.escape(protocol)}:{re.escape(version)}:HASH:([a-f0-9]{{64}})",
        re.IGNORECASE,
    )


# =============================================================================
# DECODE STRATEGIES
# =============================================================================

def _utf8(raw: bytes) -> str | None:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


def decode_base58(data, pattern: re.Pattern) -> tuple[str | None, bool]:
    """Base58 string → UTF-8 text."""
    if not isinstance(data, str):
        return None, False
    try:
        text = _utf8(base58.b58decode(data))
    except ValueError:
        return None, False
    return text, bool(text and pattern.search(text))


def decode_raw(data, pattern: re.Pattern) -> tuple[str | None, bool]:
    """Bytes / list of ints → UTF-8 text; a str is taken as already decoded."""
    if isinstance(data, str):
        text = data
    elif isinstance(data, (bytes, bytearray)):
        text = _utf8(bytes(data))
    elif isinstance(data, list) and all(isinstance(b, int) and 0 <= b < 256 for b in data):
        text = _utf8(bytes(data))
    else:
        return None, False
    return text, bool(text and pattern.search(text))


def decode_base64(data, pattern: re.Pattern) -> tuple[str | None, bool]:
    """Base64 string → UTF-8 text."""
    if not isinstance(data, str):
        return None, False
    try:
        text = _utf8(base64.b64decode(data, validate=True))
    except (binascii.Error, ValueError):
        return None, False
    return text, bool(text and pattern.search(text))


COMPILED_STRATEGIES: list[DecodeStrategy] = [decode_base58]
LEGACY_STRATEGIES: list[DecodeStrategy] = [decode_base58, decode_raw, decode_base64]


# =============================================================================
# EXTRACTION
# =============================================================================

@dataclass
class MemoLookup:
    """What extract_memo found in a transaction."""

    payload: str | None = None
    """Decoded payload that matched the tagged pattern"""

    memo_seen: bool = False
    """True if any instruction targeted the memo program"""

    undecoded: str | None = None
    """First readable memo text that did NOT match (for diagnostics)"""

    slot: str | None = None
    """"compiled" or "legacy": where the payload was found"""


def _memo_instructions(instructions: list[LedgerInstruction] | None) -> list[LedgerInstruction]:
    return [ix for ix in (instructions or []) if ix.program_id == MEMO_PROGRAM_ID]


def extract_memo(tx: LedgerTransaction, pattern: re.Pattern) -> MemoLookup:
    """
    Find the tagged memo payload in a transaction.

    Tries the compiled slot first, then the legacy slot, and inside each
    slot every strategy in order. Stops at the first matching payload.
    """
    lookup = MemoLookup()
    slots = (
        ("compiled", tx.compiled_instructions, COMPILED_STRATEGIES),
        ("legacy", tx.instructions, LEGACY_STRATEGIES),
    )

    for slot, instructions, strategies in slots:
        for ix in _memo_instructions(instructions):
            lookup.memo_seen = True
            for strategy in strategies:
                text, ok = strategy(ix.data, pattern)
                if ok:
                    lookup.payload = text
                    lookup.slot = slot
                    return lookup
                if text and lookup.undecoded is None and text.isprintable():
                    lookup.undecoded = text

    return lookup
