"""
recon_engines.matching.subset_sum -- Bounded subset-sum over document candidates.

Responsibility:
    Find subsets of at least two documents whose remaining claims (open
    amount when positive, else the absolute nominal amount) sum,
    within tolerance, to a transaction amount.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Deterministic: candidates are ordered by amount descending, then
      document id ascending, and explored exclude-first.
    - Every returned subset has at least two documents and a
      tolerance-compatible sum.
    - The search stops once more than ``subset_sum.max_solutions``
      solutions exist; callers read 0 / 1 / >1 solutions as
      "no match" / "unique" / "ambiguous".
    - Branches whose running total already overshoots the target beyond
      tolerance are cut; they cannot hold a solution.
    - Callers bound the input size by ``subset_sum.max_candidates``.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from recon_config.schema import MatchingConfig
from recon_engines.matching.amounts import amount_compatible, doc_target_amount
from recon_engines.matching.types import DocCandidate
from recon_engines.tracer import traced_engine

_ZERO = Decimal("0")


def _candidate_amount(candidate: DocCandidate) -> Decimal:
    amount = doc_target_amount(candidate.document)
    return amount if amount is not None else _ZERO


@traced_engine("subset_sum", "1.0", fingerprint_fields=("candidates", "target"))
def subset_sum_docs_to_amount(
    candidates: Sequence[DocCandidate],
    target: Decimal,
    cfg: MatchingConfig,
) -> list[tuple[DocCandidate, ...]]:
    ordered = sorted(
        (candidate for candidate in candidates if doc_target_amount(candidate.document) is not None),
        key=lambda candidate: (-_candidate_amount(candidate), candidate.document.id),
    )
    max_solutions = cfg.subset_sum.max_solutions
    solutions: list[tuple[DocCandidate, ...]] = []

    def backtrack(index: int, current: list[DocCandidate], total: Decimal) -> None:
        if len(solutions) > max_solutions:
            return
        if len(current) >= 2 and amount_compatible(total, target, cfg):
            solutions.append(tuple(current))
            return
        # Amounts are non-negative, so an overshoot only grows down this branch.
        if total > target and not amount_compatible(total, target, cfg):
            return
        if index >= len(ordered):
            return
        candidate = ordered[index]
        backtrack(index + 1, current, total)
        current.append(candidate)
        backtrack(index + 1, current, total + _candidate_amount(candidate))
        current.pop()

    backtrack(0, [], _ZERO)
    return solutions
