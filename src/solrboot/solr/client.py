"""Thin client for Solr's administrative HTTP API.

Every request carries an explicit timeout and runs inside a small, bounded
tenacity retry loop. Only transient failures (transport errors and HTTP 5xx
responses) are retried; the backoff sleep observes the cancellation event
before and after waiting so an operator can abort a stuck run.
"""
from __future__ import annotations

import copy
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..errors import (
    AlreadyPresent,
    AuthFailure,
    Cancelled,
    SolrRequestError,
    Unreachable,
    is_transient,
)
from ..security import ADMIN_ROLE, Credential
from ..topology import EntityKind, SearchEntity

DEFAULT_CONFIGSET = "_default"
HEALTH_PATH = "/solr/admin/info/system"
AUTHENTICATION_PATH = "/solr/admin/authentication"
AUTHORIZATION_PATH = "/solr/admin/authorization"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry budget applied to each request."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0


@dataclass(frozen=True)
class EngineProbe:
    """Outcome of a single health probe.

    ``status`` is ``None`` when the engine could not be reached at all.
    ``start_time`` is the JVM start time reported by a successful probe and
    changes whenever the engine restarts.
    """

    status: int | None
    start_time: str | None = None

    @property
    def answered(self) -> bool:
        """Return ``True`` when the engine produced any HTTP response."""
        return self.status is not None


class SolrAdminClient:
    """Issue administrative requests against a single Solr endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 10.0,
        connect_timeout: float = 3.0,
        retry: RetryPolicy | None = None,
        cancel: threading.Event | None = None,
        transport: httpx.BaseTransport | None = None,
        credential: Credential | None = None,
    ) -> None:
        """Create a client for *endpoint* (e.g. ``http://localhost:8983``)."""
        self.endpoint = endpoint.rstrip("/")
        self.retry = retry or RetryPolicy()
        self.cancel = cancel
        self._credential = credential
        self._http = httpx.Client(
            base_url=self.endpoint,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            transport=transport,
        )

    @property
    def credential(self) -> Credential | None:
        """Return the credential requests are authenticated with."""
        return self._credential

    def as_user(self, credential: Credential | None) -> SolrAdminClient:
        """Return a client sharing this connection pool but using *credential*."""
        clone = copy.copy(self)
        clone._credential = credential
        return clone

    def close(self) -> None:
        """Release pooled connections."""
        self._http.close()

    def __enter__(self) -> SolrAdminClient:
        """Support ``with`` blocks."""
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the client when leaving a ``with`` block."""
        self.close()

    # ------------------------------------------------------------------
    # Health
    def probe(self) -> EngineProbe:
        """Probe the health surface once, without retries."""
        try:
            response = self._http.request(
                "GET",
                HEALTH_PATH,
                params={"wt": "json"},
                auth=self._auth(),
            )
        except httpx.TransportError:
            return EngineProbe(status=None)
        start_time: str | None = None
        if response.status_code == 200:
            payload = _json_body(response)
            jvm = payload.get("jvm")
            if isinstance(jvm, Mapping):
                jmx = jvm.get("jmx")
                if isinstance(jmx, Mapping) and jmx.get("startTime") is not None:
                    start_time = str(jmx["startTime"])
        return EngineProbe(status=response.status_code, start_time=start_time)

    # ------------------------------------------------------------------
    # Entities
    def entity_exists(self, entity: SearchEntity) -> bool:
        """Return ``True`` when *entity* is already present."""
        if entity.kind is EntityKind.COLLECTION:
            return entity.name in self.list_collections()
        status = self.core_status(entity.name)
        return bool(status)

    def core_status(self, name: str) -> dict[str, object]:
        """Return the STATUS block for core *name* (empty when absent)."""
        payload = self._send(
            "GET",
            "/solr/admin/cores",
            params={"action": "STATUS", "core": name, "wt": "json"},
        )
        cores = payload.get("status")
        if not isinstance(cores, Mapping):
            return {}
        block = cores.get(name)
        return dict(block) if isinstance(block, Mapping) else {}

    def list_collections(self) -> list[str]:
        """Return the names of all collections in the cluster."""
        payload = self._send(
            "GET",
            "/solr/admin/collections",
            params={"action": "LIST", "wt": "json"},
        )
        names = payload.get("collections")
        return [str(name) for name in names] if isinstance(names, list) else []

    def create_entity(self, entity: SearchEntity) -> dict[str, object]:
        """Create *entity* with the verb its kind requires."""
        if entity.kind is EntityKind.COLLECTION:
            return self._send(
                "GET",
                "/solr/admin/collections",
                params={
                    "action": "CREATE",
                    "name": entity.name,
                    "numShards": entity.shard_count,
                    "replicationFactor": entity.replication_factor,
                    "collection.configName": DEFAULT_CONFIGSET,
                    "wt": "json",
                },
            )
        return self._send(
            "GET",
            "/solr/admin/cores",
            params={
                "action": "CREATE",
                "name": entity.name,
                "configSet": DEFAULT_CONFIGSET,
                "wt": "json",
            },
        )

    # ------------------------------------------------------------------
    # Schema
    def get_field(self, entity: str, name: str) -> dict[str, object] | None:
        """Return the definition of field *name*, or ``None`` when absent."""
        try:
            payload = self._send("GET", f"/solr/{entity}/schema/fields/{name}")
        except SolrRequestError as exc:
            if exc.status == 404:
                return None
            raise
        definition = payload.get("field")
        return dict(definition) if isinstance(definition, Mapping) else None

    def add_field(self, entity: str, definition: Mapping[str, object]) -> None:
        """Add a field through the Schema API."""
        self._send("POST", f"/solr/{entity}/schema", json={"add-field": dict(definition)})

    def list_copy_fields(self, entity: str, source: str) -> list[str]:
        """Return the destinations currently copied from *source*."""
        payload = self._send(
            "GET",
            f"/solr/{entity}/schema/copyfields",
            params={"source.fl": source},
        )
        rules = payload.get("copyFields")
        if not isinstance(rules, list):
            return []
        return [
            str(rule.get("dest"))
            for rule in rules
            if isinstance(rule, Mapping) and rule.get("source") == source
        ]

    def add_copy_field(self, entity: str, source: str, destinations: Sequence[str]) -> None:
        """Add copy-field rules from *source* to *destinations*."""
        self._send(
            "POST",
            f"/solr/{entity}/schema",
            json={"add-copy-field": {"source": source, "dest": list(destinations)}},
        )

    # ------------------------------------------------------------------
    # Config API
    def config_overlay(self, entity: str) -> dict[str, object]:
        """Return the Config API overlay for *entity*."""
        payload = self._send("GET", f"/solr/{entity}/config/overlay")
        overlay = payload.get("overlay")
        return dict(overlay) if isinstance(overlay, Mapping) else {}

    def post_config(self, entity: str, command: Mapping[str, object]) -> None:
        """Send a Config API command for *entity*."""
        self._send("POST", f"/solr/{entity}/config", json=dict(command))

    # ------------------------------------------------------------------
    # Security
    def set_user(self, credential: Credential) -> None:
        """Create or update a BasicAuth user."""
        self._send(
            "POST",
            AUTHENTICATION_PATH,
            json={"set-user": {credential.username: credential.secret}},
        )

    def set_user_role(self, username: str, role: str | None = ADMIN_ROLE) -> None:
        """Bind *username* to *role*; ``None`` removes the binding."""
        roles: list[str] | None = [role] if role is not None else None
        self._send("POST", AUTHORIZATION_PATH, json={"set-user-role": {username: roles}})

    def delete_user(self, username: str) -> None:
        """Delete a BasicAuth user."""
        self._send("POST", AUTHENTICATION_PATH, json={"delete-user": [username]})

    def check_credential(self, credential: Credential) -> bool:
        """Return ``True`` when the engine accepts *credential*."""
        try:
            self.as_user(credential)._send("GET", AUTHENTICATION_PATH)
        except AuthFailure:
            return False
        return True

    # ------------------------------------------------------------------
    def _auth(self) -> httpx.BasicAuth | None:
        if self._credential is None:
            return None
        return httpx.BasicAuth(*self._credential.as_auth())

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, object] | None = None,
        json: Mapping[str, object] | None = None,
    ) -> dict[str, object]:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential(multiplier=self.retry.base_delay, max=self.retry.max_delay),
            retry=retry_if_exception(is_transient),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._send_once, method, path, params=params, json=json)

    def _send_once(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, object] | None,
        json: Mapping[str, object] | None,
    ) -> dict[str, object]:
        self._check_cancelled()
        try:
            response = self._http.request(
                method,
                path,
                params=dict(params) if params else None,
                json=dict(json) if json is not None else None,
                auth=self._auth(),
            )
        except httpx.TransportError as exc:
            raise Unreachable(f"{method} {path}: {exc.__class__.__name__}") from exc
        payload = _json_body(response)
        status = response.status_code
        if status in {401, 403}:
            raise AuthFailure(f"{method} {path} rejected credentials (HTTP {status})", status=status)
        if status >= 400:
            message = _error_message(payload) or response.reason_phrase or "request failed"
            error_type = AlreadyPresent if "already exists" in message.lower() else SolrRequestError
            raise error_type(f"{method} {path} failed (HTTP {status}): {message}", status=status)
        errors = payload.get("errors")
        if errors:
            # Older Schema API versions report failures with HTTP 200.
            message = _error_message(payload) or str(errors)
            error_type = AlreadyPresent if "already exists" in message.lower() else SolrRequestError
            raise error_type(f"{method} {path} failed: {message}", status=400)
        return payload

    def _sleep(self, seconds: float) -> None:
        if self.cancel is None:
            time.sleep(seconds)
            return
        self._check_cancelled()
        self.cancel.wait(seconds)
        self._check_cancelled()

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise Cancelled("cancelled")


def _json_body(response: httpx.Response) -> dict[str, object]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_message(payload: Mapping[str, object]) -> str:
    parts: list[str] = []
    error = payload.get("error")
    if isinstance(error, Mapping):
        if error.get("msg"):
            parts.append(str(error["msg"]))
        details = error.get("details")
        if isinstance(details, list):
            for detail in details:
                if isinstance(detail, Mapping):
                    parts.extend(str(item) for item in detail.get("errorMessages") or [])
    errors = payload.get("errors")
    if isinstance(errors, list):
        for item in errors:
            if isinstance(item, Mapping):
                parts.extend(str(text) for text in item.get("errorMessages") or [])
    return "; ".join(part.strip() for part in parts if str(part).strip())


__all__ = ["EngineProbe", "RetryPolicy", "SolrAdminClient"]
