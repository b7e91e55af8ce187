"""Swap the bootstrap administrator for the caller-supplied account.

The ordering is what keeps the engine administrable:

1. create the caller account with the admin role, authenticated as bootstrap;
2. prove the caller account authenticates;
3. delete the bootstrap account (and its role binding) authenticated as the
   caller, so the deletion itself proves the caller holds admin rights.

When step 2 fails the run stops with both accounts intact. At no point can
both credentials be invalid.
"""
from __future__ import annotations

from ..errors import Cancelled, SolrbootError
from ..exit_codes import ExitCode
from ..security import ADMIN_ROLE, Credential
from ..solr.client import SolrAdminClient
from .state import RotationOutcome

STEP_CREATE = "create-caller"
STEP_VERIFY = "verify-caller"
STEP_REVOKE = "revoke-bootstrap"


class CredentialRotator:
    """Perform the bootstrap-to-caller credential swap."""

    def rotate(
        self,
        client: SolrAdminClient,
        bootstrap: Credential,
        caller: Credential,
    ) -> RotationOutcome:
        """Rotate *bootstrap* to *caller* and return a typed outcome.

        Only :class:`Cancelled` escapes; every other failure is reported in
        the returned :class:`RotationOutcome`.
        """
        as_bootstrap = client.as_user(bootstrap)
        try:
            as_bootstrap.set_user(caller)
            as_bootstrap.set_user_role(caller.username, ADMIN_ROLE)
        except Cancelled:
            raise
        except SolrbootError as exc:
            return _failed(STEP_CREATE, exc)

        try:
            verified = client.check_credential(caller)
        except Cancelled:
            raise
        except SolrbootError as exc:
            return _failed(STEP_VERIFY, exc)
        if not verified:
            return RotationOutcome(
                status="failed",
                step=STEP_VERIFY,
                reason=f"caller account '{caller.username}' did not authenticate",
                category="auth",
                exit_code=ExitCode.AUTH,
            )

        as_caller = client.as_user(caller)
        try:
            as_caller.delete_user(bootstrap.username)
            as_caller.set_user_role(bootstrap.username, None)
        except Cancelled:
            raise
        except SolrbootError as exc:
            return _failed(STEP_REVOKE, exc)
        return RotationOutcome(status="rotated")


def _failed(step: str, exc: SolrbootError) -> RotationOutcome:
    return RotationOutcome(
        status="failed",
        step=step,
        reason=str(exc),
        category=exc.category,
        http_status=getattr(exc, "status", None),
        exit_code=int(exc.exit_code),
    )


__all__ = ["CredentialRotator", "STEP_CREATE", "STEP_REVOKE", "STEP_VERIFY"]
