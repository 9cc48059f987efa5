"""
recon_engines.matching.doc_lifecycle -- Lifecycle classification of documents.

Responsibility:
    Classify a document that currently has no transaction counterpart
    (doc-only partition) into the state the user sees: duplicate, broken,
    private, needing a split, overdue, awaiting payment, or eigenbeleg
    (self-issued receipt) candidate.  Each result names the next action
    and, where useful, the window in which to look for a payment again.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Classification is first-match in a fixed order: duplicate,
      missing required fields, private, split, due date (overdue or
      awaiting), expects payment, eigenbeleg candidate, fallback.
    - Rematch hints anchor on the due date (due windows) or on the issue
      date (invoice windows); no anchor means no hint.
"""

from __future__ import annotations

from datetime import date, datetime

from recon_config.schema import MatchingConfig
from recon_engines.matching.types import (
    DocLifecycleKind,
    DocLifecycleResult,
    DocType,
    Document,
    NextAction,
    PaymentHint,
    RematchHint,
    Severity,
)
from recon_engines.matching.windowing import is_overdue
from recon_engines.tracer import traced_engine

_NON_TRANSFER_HINTS = (PaymentHint.CASH, PaymentHint.EC, PaymentHint.CARD)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_duplicate_doc(doc: Document) -> bool:
    return bool(doc.duplicate_key)


def has_required_fields(doc: Document, cfg: MatchingConfig) -> bool:
    if doc.has_required_fields is False:
        return False
    rules = cfg.required_fields
    if rules.require_amount and not (doc.amount is not None and doc.amount > 0):
        return False
    if rules.require_currency and not doc.currency:
        return False
    if rules.require_invoice_date and doc.issue_date is None:
        return False
    return True


def is_private(doc: Document) -> bool:
    return doc.private_hint


def needs_split(doc: Document) -> bool:
    return doc.split_hint


def has_due_date(doc: Document) -> bool:
    return doc.due_date is not None


def expects_payment(doc: Document) -> bool:
    """Invoices and transfer-paid documents expect a bank transaction."""
    if doc.doc_type == DocType.RECEIPT:
        return False
    if doc.payment_hint in _NON_TRANSFER_HINTS:
        return False
    return doc.doc_type == DocType.INVOICE or doc.payment_hint == PaymentHint.TRANSFER


def is_eigenbeleg_candidate(doc: Document) -> bool:
    if doc.doc_type == DocType.RECEIPT:
        return True
    return doc.payment_hint in _NON_TRANSFER_HINTS


def build_due_rematch_hint(anchor: date | None, cfg: MatchingConfig) -> RematchHint | None:
    if anchor is None:
        return None
    return RematchHint(
        anchor_date=anchor,
        window_before_days=cfg.window_before_due_days,
        window_after_days=cfg.window_after_due_days,
    )


def build_invoice_rematch_hint(anchor: date | None, cfg: MatchingConfig) -> RematchHint | None:
    if anchor is None:
        return None
    return RematchHint(
        anchor_date=anchor,
        window_before_days=cfg.window_before_invoice_days,
        window_after_days=cfg.window_after_invoice_days,
    )


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _result(
    doc: Document,
    kind: DocLifecycleKind,
    severity: Severity,
    next_action: NextAction,
    codes: tuple[str, ...],
    hint: RematchHint | None = None,
) -> DocLifecycleResult:
    return DocLifecycleResult(
        doc_id=doc.id,
        kind=kind,
        severity=severity,
        next_action=next_action,
        explanation_codes=codes,
        rematch_hint=hint,
    )


@traced_engine("doc_lifecycle", "1.0", fingerprint_fields=("doc",))
def evaluate_doc_lifecycle(
    doc: Document,
    now: date | datetime,
    cfg: MatchingConfig,
) -> DocLifecycleResult:
    if is_duplicate_doc(doc):
        return _result(doc, DocLifecycleKind.DOC_DUPLICATE, Severity.INFO, NextAction.NONE, ("DUPLICATE",))

    if not has_required_fields(doc, cfg):
        return _result(
            doc, DocLifecycleKind.DOC_ERROR, Severity.ACTION, NextAction.REUPLOAD_REQUEST, ("MISSING_FIELDS",),
        )

    if is_private(doc):
        return _result(doc, DocLifecycleKind.PRIVATE, Severity.INFO, NextAction.ASK_USER, ("PRIVATE_HINT",))

    if needs_split(doc):
        return _result(
            doc, DocLifecycleKind.SPLIT_REQUIRED, Severity.ACTION, NextAction.START_SPLIT_UI, ("SPLIT_HINT",),
        )

    if has_due_date(doc):
        hint = build_due_rematch_hint(doc.due_date, cfg)
        if is_overdue(doc, now, cfg):
            return _result(
                doc, DocLifecycleKind.OVERDUE, Severity.WARNING, NextAction.INBOX_TASK,
                ("HAS_DUE_DATE", "OVERDUE"), hint,
            )
        return _result(
            doc, DocLifecycleKind.AWAITING_TX, Severity.INFO, NextAction.NONE,
            ("HAS_DUE_DATE", "NOT_OVERDUE"), hint,
        )

    if expects_payment(doc):
        return _result(
            doc, DocLifecycleKind.AWAITING_TX, Severity.INFO, NextAction.NONE,
            ("EXPECTS_PAYMENT", "NO_DUE_DATE"), build_invoice_rematch_hint(doc.issue_date, cfg),
        )

    if is_eigenbeleg_candidate(doc):
        return _result(
            doc, DocLifecycleKind.EIGENBELEG, Severity.ACTION, NextAction.START_EIGENBELEG_FLOW,
            ("EIGENBELEG_CANDIDATE",),
        )

    return _result(
        doc, DocLifecycleKind.AWAITING_TX, Severity.INFO, NextAction.NONE,
        ("FALLBACK_AWAITING",), build_invoice_rematch_hint(doc.issue_date, cfg),
    )
