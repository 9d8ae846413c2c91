"""
dataplane_orchestrator/errors.py

Exception hierarchy shared by the declarative store, the dataplane helpers,
the admission gate and the controllers.

Waiting on a dependency is never an exception: controllers express it as a
False/Info condition plus a requeue. Exceptions are reserved for things that
either must be retried from scratch (ConflictError) or must be surfaced on
the owning resource's status (everything else).
"""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator failures.

    Attributes:
        message (str): Human readable description.
        reason (Optional[str]): Condition reason to surface, if any.
    """

    def __init__(self, message: str, reason: Optional[str] = None) -> None:
        """
        Initialize an OrchestratorError.

        Args:
            message (str): Human readable description.
            reason (Optional[str]): Condition reason to surface, if any.
        """
        super().__init__(message)
        self.message = message
        self.reason = reason


class NotFoundError(OrchestratorError):
    """Raised when a record does not exist in the declarative store.

    Attributes:
        kind (str): Record kind that was looked up.
        namespace (str): Namespace of the lookup.
        name (str): Name of the lookup.
    """

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f'{kind} "{name}" not found in namespace "{namespace}"')
        self.kind = kind
        self.namespace = namespace
        self.name = name


class AlreadyExistsError(OrchestratorError):
    """Raised when creating a record whose key is already taken."""


class ConflictError(OrchestratorError):
    """Raised when a write carries a stale resource version token.

    Attributes:
        expected (int): Version the caller read.
        actual (int): Version currently stored.
    """

    def __init__(self, message: str, expected: int, actual: int) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ConfigurationError(OrchestratorError):
    """Raised for misconfiguration that will not heal until the spec changes."""


class JobConsistencyError(OrchestratorError):
    """Raised when more than one automation run matches a dedup label set."""


class CertificateError(OrchestratorError):
    """Raised when certificate material cannot be requested for a node."""


class AdmissionError(OrchestratorError):
    """Raised by the admission gate to reject a create or update.

    Attributes:
        field (Optional[str]): Dotted path of the offending field, if known.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ExecutionFailedError(OrchestratorError):
    """Raised when an automation run exhausted its retry budget.

    The run's failure reason (for example BackoffLimitExceeded) is carried in
    `reason`.
    """
