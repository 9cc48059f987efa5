"""
recon_engines.matching.windowing -- Date-window policy.

Responsibility:
    Compute a document's booking-date window, day deltas, the stricter
    hard-key date compatibility check and overdue status.

Architecture position:
    Engines -- pure functions, zero I/O.  Reads ``MatchingConfig``.

Invariants enforced:
    - The window is anchored on ``invoice_date`` (preferred) or
      ``due_date`` and extends ``date_window_days`` on both sides; its
      upper bound reaches ``due_date + due_date_extend_days`` when later.
    - A document without an anchor has an unbounded window.
    - Unknown dates never raise; they widen (window) or fail closed
      (``date_matches``, ``is_overdue``).
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta

from recon_config.schema import MatchingConfig
from recon_engines.matching.types import DateWindow, Document, Transaction


def _as_date(value: date | datetime | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    return value


def calc_window(doc: Document, cfg: MatchingConfig) -> DateWindow:
    anchor = doc.invoice_date or doc.due_date
    if anchor is None:
        return DateWindow()

    start = anchor - timedelta(days=cfg.date_window_days)
    end = anchor + timedelta(days=cfg.date_window_days)
    if doc.due_date is not None:
        extended = doc.due_date + timedelta(days=cfg.due_date_extend_days)
        if extended > end:
            end = extended
    return DateWindow(start=start, end=end)


def in_date_window(booking_date: date | None, window: DateWindow) -> bool:
    return window.contains(booking_date)


def days_between(a: date | None, b: date | None) -> float:
    """Signed day difference ``a - b``; ``math.nan`` when either is unknown."""
    if a is None or b is None:
        return math.nan
    return float((a - b).days)


def days_delta(doc: Document, tx: Transaction) -> float:
    """Absolute distance between booking date and the document anchor."""
    anchor = doc.invoice_date or doc.due_date
    if anchor is None or tx.booking_date is None:
        return math.inf
    return float(abs((tx.booking_date - anchor).days))


def within_days(a: date, b: date, days: int) -> bool:
    return abs((a - b).days) <= days


def date_matches(doc: Document, tx: Transaction, cfg: MatchingConfig) -> bool:
    """
    Hard-key date compatibility.

    With both dates the booking must fall between invoice and due date or
    within ``grace_days`` of the due date.  With only one date it must be
    within ``grace_days`` of the due date, or within ``date_window_days``
    of the invoice date.  No dates means no match.
    """
    booking = tx.booking_date
    if booking is None:
        return False
    due = doc.due_date
    invoice = doc.invoice_date
    if due is not None and invoice is not None:
        low, high = min(invoice, due), max(invoice, due)
        if low <= booking <= high:
            return True
        return within_days(booking, due, cfg.grace_days)
    if due is not None:
        return within_days(booking, due, cfg.grace_days)
    if invoice is not None:
        return within_days(booking, invoice, cfg.date_window_days)
    return False


def is_overdue(doc: Document, now: date | datetime, cfg: MatchingConfig) -> bool:
    """True once ``now`` is past ``due_date + grace_days``."""
    today = _as_date(now)
    if doc.due_date is None or today is None:
        return False
    return today > doc.due_date + timedelta(days=cfg.grace_days)
