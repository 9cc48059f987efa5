"""
Stable digests for reconciliation artifacts.

Match-group ids, config checksums and the JSON stored with edges and audit
rows all come from here.  Two runs over the same snapshot must produce
byte-identical output, so nothing in this module depends on dict order,
set order or the scale a Decimal happened to be parsed with.
"""

import hashlib
import json
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _encode_value(value: Any) -> Any:
    # 18.380 and 18.38 are the same amount and must encode the same way.
    if isinstance(value, Decimal):
        return str(value.normalize())
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, tuple):
        return list(value)
    raise TypeError(f"cannot canonicalize {type(value).__name__}")


def canonicalize_json(data: Any) -> str:
    """Compact JSON with sorted keys; the form every digest is taken over."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_encode_value,
    )


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: dict) -> str:
    """SHA-256 hex digest (64 chars) of ``canonicalize_json(payload)``."""
    return _sha256(canonicalize_json(payload))


def hash_id_sets(tx_ids: Iterable[str], doc_ids: Iterable[str]) -> str:
    """
    Digest of a (transactions, documents) id pairing.

    Each side is de-duplicated and sorted, so the digest names the set of
    ids rather than the order a matcher happened to collect them in.  The
    two sides are kept apart: ``(["a"], ["b"])`` and ``(["b"], ["a"])``
    differ.
    """
    key = {"docs": sorted(set(doc_ids)), "txs": sorted(set(tx_ids))}
    return _sha256(canonicalize_json(key))
