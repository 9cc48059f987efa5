"""
recon_engines.matching.ingestion -- Raw record to canonical entity mapping.

Responsibility:
    Turn loosely-typed document / transaction records (JSON payloads,
    database rows, fixtures) into the frozen ``Document`` / ``Transaction``
    snapshot the engine reads.  Each concept has exactly one canonical
    field after ingestion: dual-cased spellings (``due_date`` / ``dueDate``,
    ``ref`` / ``reference``, ``vendor_key`` / ``vendorKey`` ...) are
    collapsed here and nowhere else.

Architecture position:
    Engines -- pure transformation, ZERO I/O.

Invariants enforced:
    - Unparseable dates become ``None`` (permissive windows downstream).
    - Unparseable amounts become ``None`` (entity excluded downstream).
    - Transaction amounts are stored unsigned; the sign of a raw amount
      only decides the direction when no explicit direction is given.
    - ``vendor_norm`` / ``text_norm`` are derived from raw fields when the
      record carries no normalized value.

Failure modes:
    - InvalidRecordError when a record has no id.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from recon_engines.matching.amounts import to_decimal
from recon_engines.matching.canonicalize import (
    extract_invoice_no,
    join_text,
    normalize_text,
    normalize_vendor,
)
from recon_engines.matching.types import (
    Direction,
    DocType,
    Document,
    LineItem,
    LinkState,
    PaymentHint,
    Transaction,
)
from recon_kernel.exceptions import InvalidRecordError

# -----------------------------------------------------------------------------
# Field coercion (pure)
# -----------------------------------------------------------------------------


def _pick(record: Mapping[str, Any], *keys: str) -> Any:
    """First non-None value among the given spellings."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def parse_date(value: Any) -> date | None:
    """ISO date or timestamp (``2025-01-31``, ``2025-01-31T00:00:00.000Z``)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if len(text) < 10:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value)


def _optional_flag(value: Any) -> bool | None:
    return None if value is None else _flag(value)


def _enum(enum_type: type, value: Any, default: Any) -> Any:
    if value is None:
        return default
    try:
        return enum_type(str(value).strip().lower())
    except ValueError:
        return default


def _currency(value: Any) -> str | None:
    text = _text(value)
    return text.upper() if text else None


def _require_id(record: Mapping[str, Any], entity_type: str) -> str:
    raw = _pick(record, "id", "external_id", "externalId")
    identifier = _text(raw)
    if identifier is None:
        raise InvalidRecordError(entity_type, "record has no id")
    return identifier


# -----------------------------------------------------------------------------
# Documents
# -----------------------------------------------------------------------------


def line_item_from_record(record: Mapping[str, Any], index: int | None = None) -> LineItem:
    line_index = _pick(record, "line_index", "lineIndex")
    return LineItem(
        id=_text(_pick(record, "id", "line_item_id", "lineItemId")),
        line_index=int(line_index) if line_index is not None else index,
        description=_text(record.get("description")),
        amount_signed=to_decimal(_pick(record, "amount_signed", "amountSigned", "amount")),
        amount_abs=to_decimal(_pick(record, "amount_abs", "amountAbs")),
        currency=_currency(record.get("currency")),
        link_state=_enum(LinkState, _pick(record, "link_state", "linkState"), LinkState.UNLINKED),
        open_amount=to_decimal(_pick(record, "open_amount", "openAmount")),
    )


def document_from_record(record: Mapping[str, Any]) -> Document:
    """Map one raw document record onto a ``Document``."""
    doc_id = _require_id(record, "document")

    vendor_raw = _text(_pick(record, "vendor_raw", "vendorRaw", "vendor_name", "vendorName"))
    vendor_norm = _text(_pick(record, "vendor_norm", "vendorNorm")) or (
        normalize_vendor(vendor_raw) or None
    )
    buyer_raw = _text(_pick(record, "buyer_raw", "buyerRaw", "buyer_name", "buyerName"))
    buyer_norm = _text(_pick(record, "buyer_norm", "buyerNorm")) or (
        normalize_vendor(buyer_raw) or None
    )
    text_raw = _text(_pick(record, "text_raw", "textRaw"))
    text_norm = _text(_pick(record, "text_norm", "textNorm")) or (normalize_text(text_raw) or None)
    invoice_no = _text(_pick(record, "invoice_no", "invoiceNo")) or extract_invoice_no(text_raw)

    raw_items = _pick(record, "items", "line_items", "lineItems") or ()
    items = tuple(
        line_item_from_record(item, index) for index, item in enumerate(raw_items)
        if isinstance(item, Mapping)
    )
    raw_candidates = _pick(record, "amount_candidates", "amountCandidates") or ()
    amount_candidates = tuple(
        value for value in (to_decimal(candidate) for candidate in raw_candidates)
        if value is not None
    )

    return Document(
        id=doc_id,
        tenant_id=_text(_pick(record, "tenant_id", "tenantId")),
        amount=to_decimal(record.get("amount")),
        currency=_currency(record.get("currency")),
        link_state=_enum(LinkState, _pick(record, "link_state", "linkState"), LinkState.UNLINKED),
        invoice_date=parse_date(_pick(record, "invoice_date", "invoiceDate")),
        due_date=parse_date(_pick(record, "due_date", "dueDate")),
        document_date=parse_date(_pick(record, "document_date", "documentDate")),
        doc_type=_enum(DocType, _pick(record, "doc_type", "docType", "document_type"), DocType.UNKNOWN),
        payment_hint=_enum(
            PaymentHint, _pick(record, "payment_hint", "paymentHint"), PaymentHint.UNKNOWN
        ),
        open_amount=to_decimal(_pick(record, "open_amount", "openAmount")),
        items=items,
        iban=_text(record.get("iban")),
        invoice_no=invoice_no,
        e2e_id=_text(_pick(record, "e2e_id", "e2eId", "end_to_end_id")),
        vendor_raw=vendor_raw,
        vendor_norm=vendor_norm,
        buyer_raw=buyer_raw,
        buyer_norm=buyer_norm,
        text_raw=text_raw,
        text_norm=text_norm,
        amount_candidates=amount_candidates,
        duplicate_key=_text(_pick(record, "duplicate_key", "duplicateKey")),
        has_required_fields=_optional_flag(_pick(record, "has_required_fields", "hasRequiredFields")),
        private_hint=_flag(_pick(record, "private_hint", "privateHint")),
        split_hint=_flag(_pick(record, "split_hint", "splitHint")),
    )


# -----------------------------------------------------------------------------
# Transactions
# -----------------------------------------------------------------------------


def _direction(raw: Any, amount: Decimal | None) -> Direction:
    if raw is not None:
        return _enum(Direction, raw, Direction.OUT)
    if amount is not None and amount > 0:
        return Direction.IN
    return Direction.OUT


def transaction_from_record(record: Mapping[str, Any]) -> Transaction:
    """Map one raw bank transaction record onto a ``Transaction``."""
    tx_id = _require_id(record, "transaction")

    signed_amount = to_decimal(record.get("amount"))
    reference = _text(_pick(record, "reference", "ref"))
    counterparty = _text(
        _pick(record, "counterparty_name", "counterpartyName", "vendor_raw", "vendorRaw")
    )
    vendor_norm = _text(_pick(record, "vendor_key", "vendorKey", "vendor_norm", "vendorNorm")) or (
        normalize_vendor(counterparty) or None
    )
    text_raw = _text(_pick(record, "text_raw", "textRaw")) or (join_text(counterparty, reference) or None)
    text_norm = _text(_pick(record, "text_norm", "textNorm")) or (normalize_text(text_raw) or None)
    foreign_amount = to_decimal(_pick(record, "foreign_amount", "foreignAmount"))

    return Transaction(
        id=tx_id,
        tenant_id=_text(_pick(record, "tenant_id", "tenantId")),
        amount=abs(signed_amount) if signed_amount is not None else None,
        direction=_direction(record.get("direction"), signed_amount),
        currency=_currency(record.get("currency")),
        foreign_amount=abs(foreign_amount) if foreign_amount is not None else None,
        foreign_currency=_currency(_pick(record, "foreign_currency", "foreignCurrency")),
        exchange_rate=to_decimal(_pick(record, "exchange_rate", "exchangeRate", "fx_rate")),
        booking_date=parse_date(_pick(record, "booking_date", "bookingDate")),
        value_date=parse_date(_pick(record, "value_date", "valueDate")),
        link_state=_enum(LinkState, _pick(record, "link_state", "linkState"), LinkState.UNLINKED),
        iban=_text(record.get("iban")),
        reference=reference,
        e2e_id=_text(_pick(record, "e2e_id", "e2eId", "end_to_end_id")),
        counterparty_name=counterparty,
        vendor_raw=_text(_pick(record, "vendor_raw", "vendorRaw")),
        vendor_norm=vendor_norm,
        text_raw=text_raw,
        text_norm=text_norm,
        private_hint=_flag(_pick(record, "private_hint", "privateHint")),
        is_recurring_hint=_flag(_pick(record, "is_recurring_hint", "isRecurringHint")),
    )
