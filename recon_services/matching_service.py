"""
recon_services.matching_service -- Runs the matching engine and persists results.

Responsibility:
    The imperative shell around ``MatchingEngine``: resolve "now" from an
    injected clock, load transaction history for subscription detection,
    run the pure pipeline and hand the resolved decisions to a
    ``MatchRepository``.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

Invariants enforced:
    - History is only loaded for ``tx_created`` events and only when
      ``enable_subscription_history`` is on.
    - ``apply_matches`` receives only accepted binding decisions,
      ``save_suggestions`` only suggestions, ``audit`` every decision.

Failure modes:
    - RepositoryError propagates from the repository unchanged.
    - RepositoryNotConfiguredError when persistence or history loading
      is requested without a repository.

Audit relevance:
    Each run is logged with a run_id bound into ``LogContext``, so every
    engine trace of the run can be correlated.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from enum import Enum
from uuid import uuid4

from recon_config.schema import MatchingConfig
from recon_engines.matching.partition import partition_by_link_state
from recon_engines.matching.pipeline import MatchingEngine, PipelineOptions, PipelineResult
from recon_engines.matching.types import Document, Transaction, TxHistoryOptions
from recon_engines.matching.vendor import tx_vendor_key
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.exceptions import RepositoryNotConfiguredError
from recon_kernel.logging_config import LogContext, get_logger
from recon_services.repository import MatchRepository

logger = get_logger("services.matching")


class EventType(str, Enum):
    TX_CREATED = "tx_created"
    DOC_CREATED = "doc_created"
    NIGHTLY = "nightly"


class MatchingService:
    """
    Orchestrates one reconciliation run.

    Contract:
        Given a snapshot and an event type, run the engine and persist the
        outcome through the repository.

    Guarantees:
        - The engine sees the same "now" as the repository's timestamps
          when both share the injected clock.

    Non-goals:
        - Does NOT load documents or transactions; callers pass the snapshot.
    """

    def __init__(
        self,
        repository: MatchRepository | None = None,
        config: MatchingConfig | None = None,
        clock: Clock | None = None,
        options: PipelineOptions | None = None,
    ):
        self._repository = repository
        self._config = config or MatchingConfig()
        self._clock = clock or SystemClock()
        self._engine = MatchingEngine(self._config, options, self._clock)

    def _require_repository(self, operation: str) -> MatchRepository:
        if self._repository is None:
            raise RepositoryNotConfiguredError(operation)
        return self._repository

    def load_history(self, txs: Sequence[Transaction]) -> dict[str, list[Transaction]]:
        repository = self._require_repository("load_tx_history")
        policy = self._config.subscription_detection
        history: dict[str, list[Transaction]] = {}
        for tx in txs:
            options = TxHistoryOptions(
                lookback_days=policy.lookback_days,
                limit=policy.history_limit,
                vendor_key=tx_vendor_key(tx),
            )
            history[tx.id] = repository.load_tx_history(tx.tenant_id, options)
        return history

    def run(
        self,
        docs: Sequence[Document],
        txs: Sequence[Transaction],
        now: date | datetime | None = None,
        event_type: EventType | str = EventType.NIGHTLY,
        dry_run: bool = False,
    ) -> PipelineResult:
        """Run the engine; unless ``dry_run``, persist through the repository."""
        event = EventType(event_type)
        today = now if now is not None else self._clock.today()
        run_id = str(uuid4())

        with LogContext.bind(run_id=run_id):
            logger.info(
                "matching_run_started",
                extra={"event_type": event.value, "doc_count": len(docs), "tx_count": len(txs)},
            )

            history = None
            if event == EventType.TX_CREATED and self._config.enable_subscription_history:
                tx_only = partition_by_link_state(docs, txs).tx_only
                history = self.load_history(tx_only)

            result = self._engine.run(docs, txs, now=today, tx_history=history)

            if not dry_run:
                repository = self._require_repository("apply_matches")
                repository.apply_matches(result.final)
                repository.save_suggestions(result.suggestions)
                repository.audit(result.decisions)

            logger.info(
                "matching_run_completed",
                extra={
                    "final_count": len(result.final),
                    "suggestion_count": len(result.suggestions),
                    "doc_lifecycle_count": len(result.doc_lifecycle),
                    "tx_lifecycle_count": len(result.tx_lifecycle),
                },
            )
        return result
