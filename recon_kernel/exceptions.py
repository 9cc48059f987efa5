"""
Typed Exception Hierarchy for the Reconciliation Kernel.

Every error has a typed class (catch by type, not message), a class-level
``code`` attribute (machine-readable, API-safe) and structured attributes
instead of data buried in the message string.

The matching engine itself does not raise for data defects: a document
without currency is excluded from candidate generation, an unparseable date
is treated as unknown, and ambiguity is returned as an ``ambiguous``
decision.  Exceptions are reserved for configuration errors, policy
violations at the persistence boundary and repository failures.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ReconKernelError (base)
    |
    +-- ConfigError
    |   +-- InvalidConfigError
    |   +-- ConfigFileError
    |
    +-- DecisionError
    |   +-- DecisionNotPersistableError
    |
    +-- IngestionError
    |   +-- InvalidRecordError
    |
    +-- RepositoryError
        +-- RepositoryNotConfiguredError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Config          | INVALID_CONFIG              | Unknown override key or bad value type
                | CONFIG_FILE_ERROR           | YAML file missing or not a mapping
----------------|-----------------------------|-----------------------------------------
Decision        | DECISION_NOT_PERSISTABLE    | final/partial without ids, final N:N
----------------|-----------------------------|-----------------------------------------
Ingestion       | INVALID_RECORD              | Raw record without an id
----------------|-----------------------------|-----------------------------------------
Repository      | REPOSITORY_ERROR            | Storage write/read failed
                | REPOSITORY_NOT_CONFIGURED   | Service run without a repository
"""


class ReconKernelError(Exception):
    """
    Base exception for all reconciliation kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "RECON_KERNEL_ERROR"


# Configuration exceptions


class ConfigError(ReconKernelError):
    """Base exception for configuration errors."""

    code: str = "CONFIG_ERROR"


class InvalidConfigError(ConfigError):
    """A config override names an unknown key or carries a bad value."""

    code: str = "INVALID_CONFIG"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid config key '{key}': {reason}")


class ConfigFileError(ConfigError):
    """A config file could not be read or did not contain a mapping."""

    code: str = "CONFIG_FILE_ERROR"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot load config file {path}: {reason}")


# Decision exceptions


class DecisionError(ReconKernelError):
    """Base exception for match decision errors."""

    code: str = "DECISION_ERROR"


class DecisionNotPersistableError(DecisionError):
    """A decision violates the persistability invariants."""

    code: str = "DECISION_NOT_PERSISTABLE"

    def __init__(self, decision_key: str, reason: str):
        self.decision_key = decision_key
        self.reason = reason
        super().__init__(
            f"Decision {decision_key} is not persistable: {reason}"
        )


# Ingestion exceptions


class IngestionError(ReconKernelError):
    """Base exception for raw record ingestion errors."""

    code: str = "INGESTION_ERROR"


class InvalidRecordError(IngestionError):
    """A raw document/transaction record cannot be ingested."""

    code: str = "INVALID_RECORD"

    def __init__(self, entity_type: str, reason: str):
        self.entity_type = entity_type
        self.reason = reason
        super().__init__(f"Invalid {entity_type} record: {reason}")


# Repository exceptions


class RepositoryError(ReconKernelError):
    """Storage operation failed."""

    code: str = "REPOSITORY_ERROR"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Repository operation '{operation}' failed: {reason}")


class RepositoryNotConfiguredError(RepositoryError):
    """A service was asked to persist without a repository."""

    code: str = "REPOSITORY_NOT_CONFIGURED"

    def __init__(self, operation: str):
        super().__init__(operation, "no repository configured")
