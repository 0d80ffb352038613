"""
Forensic diff between a certified canonical text and a presented one.

When verification fails, "the fingerprints differ" is not much help to a
reviewer. Both texts are key=value lines, so we can say exactly which
fields moved: e.g. total went from 14.11 to 19.11.

Field order is fixed (merchant, date, currency, subtotal, tax, total,
items, then any other keys alphabetically) and only differing fields are
returned.
"""

from receiptproof.models.schemas import FieldDiff
from receiptproof.services.canonical import CANONICAL_KEYS, ITEMS_KEY


def _line_map(text: str | None) -> dict[str, str]:
    fields = {}
    for line in (text or "").split("\n"):
        idx = line.find("=")
        if idx <= 0:
            continue
        fields[line[:idx].strip()] = line[idx + 1:].strip()
    return fields


def diff_canonical_texts(certified: str | None, presented: str | None) -> list[FieldDiff]:
    """Field-by-field differences from certified to presented."""
    before = _line_map(certified)
    after = _line_map(presented)

    known = (*CANONICAL_KEYS, ITEMS_KEY)
    others = sorted((before.keys() | after.keys()) - set(known))

    diffs = []
    for key in (*known, *others):
        old, new = before.get(key), after.get(key)
        if old == new:
            continue
        if old is None:
            change = "added"
        elif new is None:
            change = "removed"
        else:
            change = "changed"
        diffs.append(FieldDiff(field=key, certified=old, presented=new, change=change))

    return diffs
