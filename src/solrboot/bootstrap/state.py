"""Progress markers and the machine-readable summary of a bootstrap run."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ..exit_codes import ExitCode


class BootstrapState(str, Enum):
    """Progress of one provisioning run."""

    NOT_STARTED = "NotStarted"
    WAITING_FOR_READY = "WaitingForReady"
    ENTITIES_CREATED = "EntitiesCreated"
    SCHEMA_APPLIED = "SchemaApplied"
    AUTH_BOOTSTRAPPED = "AuthBootstrapped"
    CREDENTIALS_ROTATED = "CredentialsRotated"
    COMPLETE = "Complete"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        """Return ``True`` for ``Complete`` and ``Failed``."""
        return self in {BootstrapState.COMPLETE, BootstrapState.FAILED}


_ORDER = [
    BootstrapState.NOT_STARTED,
    BootstrapState.WAITING_FOR_READY,
    BootstrapState.ENTITIES_CREATED,
    BootstrapState.SCHEMA_APPLIED,
    BootstrapState.AUTH_BOOTSTRAPPED,
    BootstrapState.CREDENTIALS_ROTATED,
    BootstrapState.COMPLETE,
]

TRANSITIONS: dict[BootstrapState, frozenset[BootstrapState]] = {
    current: frozenset({successor, BootstrapState.FAILED})
    for current, successor in zip(_ORDER, _ORDER[1:])
}
TRANSITIONS[BootstrapState.COMPLETE] = frozenset()
TRANSITIONS[BootstrapState.FAILED] = frozenset()


class InvalidTransition(RuntimeError):
    """Raised when code attempts to skip or reverse a bootstrap state."""


def next_state(current: BootstrapState) -> BootstrapState:
    """Return the successful successor of *current*."""
    index = _ORDER.index(current)
    if index + 1 >= len(_ORDER):
        raise InvalidTransition(f"{current.value} has no successor.")
    return _ORDER[index + 1]


@dataclass(frozen=True)
class BootstrapFailure:
    """Why a run stopped: the step, the entity/field and HTTP status involved."""

    stage: BootstrapState
    category: str
    reason: str
    exit_code: int = ExitCode.PROVIDER
    entity: str | None = None
    field: str | None = None
    http_status: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "stage": self.stage.value,
            "category": self.category,
            "reason": self.reason,
            "entity": self.entity,
            "field": self.field,
            "http_status": self.http_status,
        }


@dataclass(frozen=True)
class EnsureResult:
    """Outcome of an idempotent ensure call."""

    entity: str
    kind: str
    name: str
    outcome: str

    @property
    def created(self) -> bool:
        """Return ``True`` when the call changed the engine."""
        return self.outcome == "created"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "entity": self.entity,
            "kind": self.kind,
            "name": self.name,
            "outcome": self.outcome,
        }


@dataclass(frozen=True)
class RotationOutcome:
    """Result of a credential rotation attempt."""

    status: str
    step: str | None = None
    reason: str | None = None
    category: str | None = None
    http_status: int | None = None
    exit_code: int = ExitCode.OK

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when only the caller credential remains valid."""
        return self.status in {"rotated", "already-rotated"}

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status,
            "step": self.step,
            "reason": self.reason,
            "category": self.category,
            "http_status": self.http_status,
        }


@dataclass
class BootstrapReport:
    """Machine-readable summary of a run; never contains secrets."""

    state: BootstrapState = BootstrapState.NOT_STARTED
    failure: BootstrapFailure | None = None
    history: list[BootstrapState] = field(default_factory=lambda: [BootstrapState.NOT_STARTED])
    entities: list[EnsureResult] = field(default_factory=list)
    schema: list[EnsureResult] = field(default_factory=list)
    auth: str | None = None
    rotation: RotationOutcome | None = None
    bootstrap_revoked: bool | None = None

    def advance(self, target: BootstrapState) -> None:
        """Move to *target*, enforcing the transition table."""
        if self.state.terminal:
            raise InvalidTransition(f"{self.state.value} is final; cannot move to {target.value}.")
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {target.value}.")
        self.state = target
        self.history.append(target)

    def fail(self, failure: BootstrapFailure) -> None:
        """Record *failure* and move to ``Failed``."""
        self.failure = failure
        self.advance(BootstrapState.FAILED)

    @property
    def exit_code(self) -> int:
        """Return the process exit code for this report."""
        if self.state is BootstrapState.COMPLETE:
            return ExitCode.OK
        if self.failure is not None:
            return int(self.failure.exit_code)
        return ExitCode.PROVIDER

    @property
    def created_count(self) -> int:
        """Return how many entities and schema elements were created."""
        return sum(1 for result in [*self.entities, *self.schema] if result.created)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "failure": self.failure.to_dict() if self.failure else None,
            "history": [state.value for state in self.history],
            "entities": [result.to_dict() for result in self.entities],
            "schema": [result.to_dict() for result in self.schema],
            "auth": self.auth,
            "rotation": self.rotation.to_dict() if self.rotation else None,
            "bootstrap_revoked": self.bootstrap_revoked,
            "exit_code": self.exit_code,
        }


__all__ = [
    "BootstrapFailure",
    "BootstrapReport",
    "BootstrapState",
    "EnsureResult",
    "InvalidTransition",
    "RotationOutcome",
    "TRANSITIONS",
    "next_state",
]
