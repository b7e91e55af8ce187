"""Error taxonomy shared by the provisioning components.

Components raise these exceptions; the bootstrap state machine is the only
place that converts them into a ``Failed`` outcome, decides whether a failure
is absorbed (``AlreadyPresent``) and maps categories to exit codes.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class SolrbootError(RuntimeError):
    """Base class for every failure raised by solrboot."""

    category = "error"
    exit_code: int = ExitCode.PROVIDER


class ConfigError(SolrbootError):
    """Raised when configuration or topology input is malformed."""

    category = "config"
    exit_code = ExitCode.VALIDATION


class Unreachable(SolrbootError):
    """Raised when the engine does not answer within the allotted budget."""

    category = "unreachable"
    exit_code = ExitCode.UNREACHABLE


class SolrRequestError(SolrbootError):
    """Raised when the administrative API rejects a request."""

    category = "http"
    exit_code = ExitCode.PROVIDER

    def __init__(self, message: str, *, status: int | None = None) -> None:
        """Store the HTTP status alongside the message."""
        super().__init__(message)
        self.status = status

    @property
    def transient(self) -> bool:
        """Return ``True`` when the failure is worth retrying (HTTP 5xx)."""
        return self.status is not None and self.status >= 500


class AlreadyPresent(SolrRequestError):
    """Raised when the engine reports that a resource already exists.

    Never fatal: the provisioner translates it into an ``already-present``
    outcome.
    """

    category = "already-present"
    exit_code = ExitCode.OK

    @property
    def transient(self) -> bool:
        """Existing resources never become absent by retrying."""
        return False


class Conflict(SolrbootError):
    """Raised when an existing schema element has an incompatible definition."""

    category = "conflict"
    exit_code = ExitCode.CONFLICT

    def __init__(self, message: str, *, entity: str | None = None, field: str | None = None) -> None:
        """Record which entity and field conflicted."""
        super().__init__(message)
        self.entity = entity
        self.field = field


class AuthFailure(SolrbootError):
    """Raised when the engine rejects a credential."""

    category = "auth"
    exit_code = ExitCode.AUTH

    def __init__(self, message: str, *, status: int | None = None) -> None:
        """Store the HTTP status (401/403) alongside the message."""
        super().__init__(message)
        self.status = status


class Cancelled(SolrbootError):
    """Raised when the operator cancels a provisioning run."""

    category = "cancelled"
    exit_code = ExitCode.CANCELLED


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` when *exc* is a retryable network or server failure."""
    if isinstance(exc, Unreachable):
        return True
    if isinstance(exc, SolrRequestError):
        return exc.transient
    return False


__all__ = [
    "AlreadyPresent",
    "AuthFailure",
    "Cancelled",
    "ConfigError",
    "Conflict",
    "SolrRequestError",
    "SolrbootError",
    "Unreachable",
    "is_transient",
]
