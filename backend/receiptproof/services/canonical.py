"""
Canonicalizer — one deterministic text form per receipt, and its fingerprint.

WHAT THIS DOES:
Turns a receipt into newline-joined `key=value` lines with a fixed key order,
then hashes that text with SHA-256. The hash is what gets anchored on-chain.

WHY THIS MATTERS:
Two people typing the same receipt must get the same fingerprint, or every
verification becomes a false mismatch. So formatting is normalized away:
- merchant lower-cased, currency upper-cased, text trimmed, whitespace
  runs (newlines too) collapsed to one space
- "|" inside item names becomes a space, so the item list always parses back
- amounts parsed leniently and printed with exactly two decimals
- line items sorted so item order doesn't matter

EXAMPLE:
    {"merchant": " Campus Mart ", "date": "2026-02-07", "currency": "cad",
     "subtotal": "12.490", "tax": 1.62, "total": 14.11}

    merchant=campus mart
    date=2026-02-07
    currency=CAD
    subtotal=12.49
    tax=1.62
    total=14.11

USAGE:
    text = canonicalize(receipt)
    fingerprint = compute_fingerprint(text)
"""

import hashlib
import math
import re
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from pydantic import BaseModel

# Fixed key order of the serialization; "items" is optional and always last
CANONICAL_KEYS = ("merchant", "date", "currency", "subtotal", "tax", "total")
AMOUNT_KEYS = ("subtotal", "tax", "total")
ITEMS_KEY = "items"
ITEM_SEPARATOR = "|"

FINGERPRINT_PATTERN = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)

# Leading numeric prefix, like a lenient float parse ("12.49 CAD" → 12.49)
_NUMBER_PREFIX = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_CENT = Decimal("0.01")
_WHITESPACE = re.compile(r"\s+")


# =============================================================================
# VALUE NORMALIZATION
# =============================================================================

def to_decimal(value) -> Decimal:
    """
    Coerce anything number-like to a Decimal; everything else becomes 0.

    Accepts ints, floats, Decimals and numeric strings (surrounding
    whitespace and trailing junk are ignored). Booleans, None, NaN and
    infinities are treated as missing.
    """
    if value is None or isinstance(value, bool):
        return Decimal(0)

    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal(0)

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return Decimal(0)
        # str() first so 12.49 stays 12.49 instead of its binary expansion
        return Decimal(str(value))

    match = _NUMBER_PREFIX.match(str(value).strip())
    if not match:
        return Decimal(0)
    try:
        parsed = Decimal(match.group(0))
    except InvalidOperation:
        return Decimal(0)
    return parsed if parsed.is_finite() else Decimal(0)


def format_amount(value) -> str:
    """Format an amount with exactly two decimals (half-up rounding)."""
    return str(to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP))


def format_quantity(value) -> str:
    """Quantities print without trailing zeros; missing or zero means 1."""
    quantity = to_decimal(value)
    if quantity == 0:
        return "1"
    if quantity == quantity.to_integral_value():
        return str(int(quantity))
    return format(quantity.normalize(), "f")


def _clean_text(value) -> str:
    """Trimmed text with every whitespace run (newlines included) as one space."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def _field(record, key):
    if isinstance(record, Mapping):
        return record.get(key)
    return getattr(record, key, None)


def _as_mapping(record) -> Mapping:
    if isinstance(record, BaseModel):
        return record.model_dump()
    if isinstance(record, Mapping):
        return record
    raise TypeError(f"Cannot canonicalize {type(record).__name__}")


def _format_item(item) -> str:
    # The separator can't appear inside a name or the list would split there
    name = _clean_text(_clean_text(_field(item, "name")).replace(ITEM_SEPARATOR, " "))
    price = format_amount(_field(item, "price"))
    quantity = format_quantity(_field(item, "quantity"))
    return f"{name}:{price}:{quantity}"


def _format_items(items) -> str:
    # Sorted so the same basket typed in a different order hashes the same
    return ITEM_SEPARATOR.join(sorted(_format_item(item) for item in items))


# =============================================================================
# CANONICALIZE + HASH
# =============================================================================

def canonicalize(record) -> str:
    """
    Build the canonical text of a receipt.

    Args:
        record: a Receipt (or subclass) or any mapping with receipt keys

    Returns:
        Newline-joined key=value lines in CANONICAL_KEYS order.
        Blank text fields and empty item lists are left out entirely;
        amounts are always present (missing ones print as 0.00).
    """
    data = _as_mapping(record)
    lines = []

    merchant = _clean_text(data.get("merchant")).lower()
    if merchant:
        lines.append(f"merchant={merchant}")

    date = _clean_text(data.get("date"))
    if date:
        lines.append(f"date={date}")

    currency = _clean_text(data.get("currency")).upper()
    if currency:
        lines.append(f"currency={currency}")

    for key in AMOUNT_KEYS:
        lines.append(f"{key}={format_amount(data.get(key))}")

    items = data.get(ITEMS_KEY)
    if items:
        lines.append(f"{ITEMS_KEY}={_format_items(items)}")

    return "\n".join(lines)


def compute_fingerprint(canonical_text: str) -> str:
    """SHA-256 hex digest (64 chars) of the canonical text."""
    return hashlib.sha256(canonical_text.encode("utf-8")).hexdigest()


def is_fingerprint(value) -> bool:
    """True if value has the shape of a fingerprint (64 hex chars)."""
    return isinstance(value, str) and bool(FINGERPRINT_PATTERN.match(value.strip()))


# =============================================================================
# PARSE + RE-NORMALIZE (user-supplied canonical text)
# =============================================================================

def _parse_items(raw: str) -> list[dict]:
    items = []
    for chunk in raw.split(ITEM_SEPARATOR):
        if not chunk.strip():
            continue
        # Names may contain ":", so split price and quantity off the right
        parts = chunk.rsplit(":", 2)
        if len(parts) == 3:
            name, price, quantity = parts
        elif len(parts) == 2:
            name, price, quantity = parts[0], parts[1], "1"
        else:
            name, price, quantity = parts[0], "0", "1"
        items.append({"name": name, "price": price, "quantity": quantity})
    return items


def parse_canonical_text(text: str) -> tuple[dict, dict]:
    """
    Split canonical text back into fields.

    Returns:
        (fields, extras): fields holds the known receipt keys (items as a
        list of dicts), extras holds any other key=value lines verbatim.
        Lines without "=" (or starting with it) are ignored.
    """
    fields: dict = {}
    extras: dict = {}

    for line in (text or "").split("\n"):
        idx = line.find("=")
        if idx <= 0:
            continue
        key = line[:idx].strip()
        value = line[idx + 1:].strip()

        if key == ITEMS_KEY:
            fields[key] = _parse_items(value)
        elif key in CANONICAL_KEYS:
            fields[key] = value
        else:
            extras[key] = value

    return fields, extras


def normalize_canonical_text(text: str) -> str:
    """
    Re-render canonical text supplied by a client.

    Clients may send text they formatted themselves ("Campus Mart",
    "12.5", "cad"). Re-rendering through canonicalize() removes those
    differences so they never cause a false verification mismatch.
    Unknown keys are kept (trimmed) and appended in sorted order.
    """
    fields, extras = parse_canonical_text(text)
    canonical = canonicalize(fields)

    extra_lines = [f"{key}={extras[key]}" for key in sorted(extras)]
    return "\n".join([canonical, *extra_lines])
