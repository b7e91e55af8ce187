"""Bootstrap sequence: state machine, provisioner and credential rotation."""
from __future__ import annotations

from .machine import BootstrapOptions, BootstrapStateMachine, bootstrap
from .provisioner import SchemaProvisioner
from .rotation import CredentialRotator
from .state import (
    BootstrapFailure,
    BootstrapReport,
    BootstrapState,
    EnsureResult,
    RotationOutcome,
)

__all__ = [
    "BootstrapFailure",
    "BootstrapOptions",
    "BootstrapReport",
    "BootstrapState",
    "BootstrapStateMachine",
    "CredentialRotator",
    "EnsureResult",
    "RotationOutcome",
    "SchemaProvisioner",
    "bootstrap",
]
