"""
Reconciliation Kernel

Shared infrastructure for the document/transaction reconciliation engine:
- Structured JSON logging with request-scoped context
- Typed exception hierarchy with machine-readable codes
- Injectable clock for deterministic runs
- Deterministic hashing
- SQLAlchemy base, engine helpers and persistence models
"""

__version__ = "0.1.0"
