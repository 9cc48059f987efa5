"""
recon_engines.matching.canonicalize -- Text, identifier and invoice-number canonicalization.

Responsibility:
    Pure string primitives shared by every other matching component:
    free-text normalization, vendor-name normalization, identifier
    canonicalization (IBAN / end-to-end id), conservative invoice-number
    extraction and invoice-number lookup inside noisy bank text.

Architecture position:
    Engines -- pure functions, zero I/O, leaf of the matching package.

Invariants enforced:
    - ``normalize_text`` is total and idempotent:
      ``normalize_text(normalize_text(x)) == normalize_text(x)``.
    - Identifier equality is exact after canonicalization (no fuzziness).
    - Invoice-number extraction prefers ``None`` over a wrong guess.

Failure modes:
    None.  Every function accepts ``None`` and empty input.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

VENDOR_SUFFIXES = frozenset({
    "gmbh", "mbh", "ag", "kg", "gbr", "ohg", "ug", "ltd", "limited", "inc",
    "corp", "co", "company", "sarl", "sa", "bv", "nv", "oy", "ab", "aps",
    "plc", "llc", "kgaa", "eg", "ev",
})

VENDOR_STOP_TOKENS = frozenset({"the", "and", "und", "of", "fur", "zum", "zur", "bei"})

INVOICE_TRIGGERS = frozenset({
    "rechnung", "rg", "re", "invoice", "inv", "beleg", "ref", "referenz", "refer",
})

_INVOICE_SEPARATORS = frozenset({"nr", "no", "#", ":"})

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_NON_INVOICE = re.compile(r"[^a-z0-9/_-]+")
_INVOICE_EDGE = re.compile(r"^[-/_]+|[-/_]+$")
_STRONG_INVOICE = re.compile(r"^[A-Z0-9][A-Z0-9/_-]{3,25}$")
_WEAK_INVOICE = re.compile(r"^[A-Z0-9/_-]+$")
_COMPACT = re.compile(r"[^A-Z0-9]")
_WHITESPACE = re.compile(r"\s+")
_ASCII_DIGITS = re.compile(r"[0-9]+")


def strip_diacritics(value: str) -> str:
    """NFKD-decompose and drop combining marks ("Müller" -> "Muller")."""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def tokenize(value: str) -> list[str]:
    return [token for token in value.split(" ") if token]


def normalize_text(value: str | None) -> str:
    """Lowercase, strip diacritics, collapse non-alphanumeric runs to one space."""
    if not value:
        return ""
    lowered = strip_diacritics(value.strip().lower())
    return _NON_ALNUM.sub(" ", lowered).strip()


def normalize_vendor(value: str | None) -> str:
    """``normalize_text`` minus legal-form suffixes and stop words."""
    base = normalize_text(value)
    if not base:
        return ""
    kept = [
        token for token in tokenize(base)
        if token not in VENDOR_SUFFIXES and token not in VENDOR_STOP_TOKENS
    ]
    return " ".join(kept)


def canon_compact(value: str | None) -> str:
    """Trim, uppercase and remove all whitespace."""
    return _WHITESPACE.sub("", (value or "").strip().upper())


def canon_id(value: str | None) -> str:
    return canon_compact(value)


def identifiers_equal(left: str | None, right: str | None) -> bool:
    """Exact identifier equality after canonicalization; blanks never match."""
    if not left or not right:
        return False
    left_canon = canon_compact(left)
    return bool(left_canon) and left_canon == canon_compact(right)


# ---------------------------------------------------------------------------
# Invoice numbers
# ---------------------------------------------------------------------------


def _normalize_for_invoice(value: str) -> str:
    lowered = strip_diacritics(value.strip().lower())
    return _NON_INVOICE.sub(" ", lowered).strip()


def _normalize_invoice_token(token: str) -> str | None:
    cleaned = _INVOICE_EDGE.sub("", token or "")
    return cleaned.upper() if cleaned else None


def _is_strong_invoice_token(token: str) -> bool:
    if not _STRONG_INVOICE.match(token):
        return False
    return any(ch.isdigit() for ch in token) and not token.isalpha()


def _is_weak_invoice_token(token: str) -> bool:
    if len(token) < 5 or len(token) > 20:
        return False
    digits = sum(1 for ch in token if ch.isdigit())
    return digits >= 2 and bool(_WEAK_INVOICE.match(token))


def extract_invoice_no(value: str | None) -> str | None:
    """
    Extract an invoice number from free text.

    Requires an invoice trigger word ("rechnung", "invoice", "beleg",
    "ref", ...).  The token after the trigger (skipping a "nr"/"no"/"#"/":"
    separator) wins when it looks strong; otherwise the first weak
    invoice-like token anywhere in the text is accepted.
    """
    if not value:
        return None
    normalized = _normalize_for_invoice(value)
    if not normalized:
        return None

    tokens = tokenize(normalized)
    if not any(token in INVOICE_TRIGGERS for token in tokens):
        return None

    for index, token in enumerate(tokens):
        if token not in INVOICE_TRIGGERS:
            continue
        following = tokens[index + 1] if index + 1 < len(tokens) else ""
        if following in _INVOICE_SEPARATORS:
            following = tokens[index + 2] if index + 2 < len(tokens) else ""
        candidate = _normalize_invoice_token(following)
        if candidate and _is_strong_invoice_token(candidate):
            return candidate

    for token in tokens:
        candidate = _normalize_invoice_token(token)
        if candidate and _is_weak_invoice_token(candidate):
            return candidate

    return None


def match_invoice_no_in_text(invoice_no: str | None, text: str | None) -> bool:
    """
    True when ``invoice_no`` occurs in ``text``.

    Numeric needles need a non-digit boundary on both sides; alphanumeric
    needles need at least 4 canonical characters and are matched as a
    compacted substring.
    """
    if not invoice_no or not text:
        return False
    needle = _normalize_invoice_token(invoice_no.strip())
    if not needle:
        return False

    haystack = strip_diacritics(text).upper()
    if not haystack.strip():
        return False

    if _ASCII_DIGITS.fullmatch(needle):
        if re.search(rf"(^|\D){re.escape(needle)}(\D|$)", haystack, re.ASCII):
            return True

    compact_needle = _COMPACT.sub("", needle)
    if len(compact_needle) < 4:
        return False
    return compact_needle in _COMPACT.sub("", haystack)


# ---------------------------------------------------------------------------
# Keywords
# ---------------------------------------------------------------------------


def contains_keyword(haystack: str | None, keywords: Iterable[str]) -> bool:
    """Whole-token phrase containment after normalizing both sides."""
    normalized = normalize_text(haystack)
    if not normalized:
        return False
    padded = f" {normalized} "
    for keyword in keywords:
        needle = normalize_text(keyword)
        if needle and f" {needle} " in padded:
            return True
    return False


def join_text(*parts: str | None) -> str:
    return " ".join(part for part in parts if part)
