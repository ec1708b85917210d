"""Exception hierarchy for stack reconciliation.

Every failure that can end a reconcile attempt derives from
:class:`StackReconcileError`. The ``kind`` tag names the failure class so the
recorded outcome message keeps the taxonomy even after the exception itself
is gone.

Exceptions
----------
StackReconcileError
ConfigError
ResourceNotFoundError
AccessDeniedError
ResourceReadError
GitAuthError
GitSourceError
DependencyInstallError
RefreshDriftError
EngineError
EngineConflictError
EnginePendingOperationsError
EngineStackNotFoundError
EngineFailedError
ReconcileCancelledError
ReconcileInProgressError

Examples
--------
>>> str(ConfigError("branch and commit are mutually exclusive").describe())
'ConfigError: branch and commit are mutually exclusive'
"""

from __future__ import annotations


class StackReconcileError(Exception):
    """Base error for stack reconciliation failures."""

    kind = "StackReconcileError"

    def describe(self) -> str:
        """Return the message prefixed with the failure kind."""
        return f"{self.kind}: {self}"


class ConfigError(StackReconcileError):
    """Raised when the stack specification is malformed or contradictory."""

    kind = "ConfigError"


class ResourceNotFoundError(StackReconcileError):
    """Raised when an environment variable, secret, key, or stack is missing."""

    kind = "NotFound"


class AccessDeniedError(StackReconcileError):
    """Raised when the secret backend refuses access."""

    kind = "AccessDenied"


class ResourceReadError(StackReconcileError):
    """Raised when a filesystem reference cannot be read."""

    kind = "IOError"


class GitAuthError(StackReconcileError):
    """Raised when git credentials cannot be resolved or are rejected."""

    kind = "AuthError"


class GitSourceError(StackReconcileError):
    """Raised when the requested revision or project cannot be checked out."""

    kind = "SourceError"


class RefreshDriftError(StackReconcileError):
    """Raised when a refresh reports changes although none were expected."""

    kind = "RefreshDrift"


class DependencyInstallError(StackReconcileError):
    """Raised when the project's package manager fails to install dependencies."""

    kind = "DependencyInstall"


class EngineError(StackReconcileError):
    """Base error for failures reported by the provisioning engine."""

    kind = "EngineFailed"

    def __init__(self, message: str, *, permalink: str | None = None) -> None:
        super().__init__(message)
        self.permalink = permalink


class EngineConflictError(EngineError):
    """Raised when another update is already running for the stack (HTTP 409)."""

    kind = "EngineConflict"


class EnginePendingOperationsError(EngineError):
    """Raised when pending operations from an interrupted run block the update."""

    kind = "EnginePendingOperations"


class EngineStackNotFoundError(EngineError, ResourceNotFoundError):
    """Raised when the engine reports the stack does not exist (HTTP 404)."""

    kind = "NotFound"


class EngineFailedError(EngineError):
    """Raised for any other engine failure."""

    kind = "EngineFailed"


class ReconcileCancelledError(Exception):
    """Raised when an attempt is cancelled or exceeds its deadline.

    Not a :class:`StackReconcileError`; a cancelled attempt has no terminal
    outcome and is never recorded.
    """


class ReconcileInProgressError(Exception):
    """Raised when an attempt for the same stack is already running."""
