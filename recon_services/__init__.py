"""
recon_services -- Package init and public API.

Responsibility:
    Imperative shell around the pure matching engines: repository
    contract, SQL persistence and the matching service.  This is the only
    layer that holds database sessions or reads wall-clock time.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction (enforced by tests/architecture/test_layer_boundaries.py):
        recon_services/ -> recon_engines/  (allowed)
        recon_services/ -> recon_kernel/   (allowed)
        recon_engines/  -> recon_services/ (FORBIDDEN)
        recon_kernel/   -> recon_services/ (FORBIDDEN)
"""

from recon_kernel.logging_config import get_logger

logger = get_logger("services")

from recon_services.matching_service import EventType, MatchingService  # noqa: E402
from recon_services.repository import InMemoryMatchRepository, MatchRepository  # noqa: E402
from recon_services.sql_repository import SqlMatchRepository  # noqa: E402

__all__ = [
    "EventType",
    "InMemoryMatchRepository",
    "MatchRepository",
    "MatchingService",
    "SqlMatchRepository",
]
