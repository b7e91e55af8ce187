"""Credentials and the authentication/authorization policy document.

Solr's ``BasicAuthPlugin`` stores credentials as
``base64(sha256(sha256(salt + password))) + " " + base64(salt)``. The helpers
here produce and verify that format so the policy document can be generated
for any bootstrap credential instead of shipping a fixed hash.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field

from .errors import ConfigError

DEFAULT_REALM = "My Solr users"
DEFAULT_BOOTSTRAP_USERNAME = "solr"
DEFAULT_BOOTSTRAP_SECRET = "SolrRocks"  # noqa: S105 - Solr's documented default
ADMIN_ROLE = "admin"
SALT_BYTES = 16
MIN_PASSWORD_LENGTH = 15
PASSWORD_SPECIALS = "!@#$%^&*_-[]()"


@dataclass(frozen=True)
class Credential:
    """Username/secret pair; the secret never appears in ``repr``."""

    username: str
    secret: str = field(repr=False)

    def as_auth(self) -> tuple[str, str]:
        """Return the pair in the form accepted by HTTP basic auth."""
        return (self.username, self.secret)


@dataclass(frozen=True)
class SecurityPolicy:
    """Realm plus the bootstrap and caller credentials for one run."""

    realm: str
    bootstrap: Credential
    caller: Credential

    def __post_init__(self) -> None:
        """Reject policies that would make the rotation meaningless."""
        if not self.bootstrap.username or not self.caller.username:
            raise ConfigError("Bootstrap and caller usernames must be non-empty.")
        if self.bootstrap.username == self.caller.username:
            raise ConfigError(
                f"Caller username '{self.caller.username}' must differ from the "
                "bootstrap username."
            )
        problems = password_policy_violations(self.caller.secret)
        if problems:
            raise ConfigError(
                "Caller password does not satisfy the password policy: "
                + "; ".join(problems)
                + "."
            )


def password_policy_violations(secret: str) -> list[str]:
    """Return the reasons *secret* is rejected (empty when acceptable).

    Long passwords are accepted outright; shorter ones need a lowercase
    letter, an uppercase letter, a digit and a special character.
    """
    if len(secret) >= MIN_PASSWORD_LENGTH:
        return []
    problems: list[str] = []
    if not re.search(r"[a-z]", secret):
        problems.append("missing lowercase letter")
    if not re.search(r"[A-Z]", secret):
        problems.append("missing uppercase letter")
    if not re.search(r"[0-9]", secret):
        problems.append("missing digit")
    if not any(char in PASSWORD_SPECIALS for char in secret):
        problems.append(f"missing special character ({PASSWORD_SPECIALS})")
    return problems


def _digest(secret: str, salt: bytes) -> bytes:
    first = hashlib.sha256(salt + secret.encode("utf-8")).digest()
    return hashlib.sha256(first).digest()


def hash_solr_credential(secret: str, *, salt: bytes | None = None) -> str:
    """Return the stored form of *secret* for ``security.json``."""
    if salt is None:
        salt = secrets.token_bytes(SALT_BYTES)
    hashed = base64.b64encode(_digest(secret, salt)).decode("ascii")
    encoded_salt = base64.b64encode(salt).decode("ascii")
    return f"{hashed} {encoded_salt}"


def verify_solr_credential(secret: str, stored: str) -> bool:
    """Return ``True`` when *secret* matches the stored credential."""
    try:
        hashed, encoded_salt = stored.split(" ", 1)
        salt = base64.b64decode(encoded_salt)
        expected = base64.b64decode(hashed)
    except ValueError:
        return False
    return hmac.compare_digest(_digest(secret, salt), expected)


def build_security_document(
    policy: SecurityPolicy,
    *,
    salt: bytes | None = None,
) -> dict[str, object]:
    """Return the ``security.json`` payload enabling authentication.

    Only the bootstrap account is declared; the caller account is created
    later through the API so the rotation can prove it works before the
    bootstrap account is removed.
    """
    username = policy.bootstrap.username
    return {
        "authentication": {
            "blockUnknown": True,
            "class": "solr.BasicAuthPlugin",
            "credentials": {
                username: hash_solr_credential(policy.bootstrap.secret, salt=salt),
            },
            "realm": policy.realm,
            "forwardCredentials": False,
        },
        "authorization": {
            "class": "solr.RuleBasedAuthorizationPlugin",
            "permissions": [{"name": "security-edit", "role": ADMIN_ROLE}],
            "user-role": {username: ADMIN_ROLE},
        },
    }


__all__ = [
    "ADMIN_ROLE",
    "Credential",
    "DEFAULT_BOOTSTRAP_SECRET",
    "DEFAULT_BOOTSTRAP_USERNAME",
    "DEFAULT_REALM",
    "SecurityPolicy",
    "build_security_document",
    "hash_solr_credential",
    "password_policy_violations",
    "verify_solr_credential",
]
