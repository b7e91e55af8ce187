"""Pytest fixtures: an in-process Solr admin API and a recording launcher."""

from __future__ import annotations

import base64
import json
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest

from solrboot.providers.launcher import LaunchParameters
from solrboot.security import Credential, SecurityPolicy, hash_solr_credential, verify_solr_credential
from solrboot.solr.client import RetryPolicy, SolrAdminClient

ENDPOINT = "http://solr.test:8983"
BOOTSTRAP = Credential("solr", "SolrRocks")
CALLER = Credential("ops", "Str0ngPass!2345")

DEFAULT_FIELDS = {
    "id": {"name": "id", "type": "string", "stored": True, "indexed": True},
    "_text_": {"name": "_text_", "type": "text_general", "stored": False, "indexed": True},
}


@dataclass
class FakeEntity:
    """Schema and config state held for one core/collection."""

    fields: dict[str, dict[str, Any]] = field(default_factory=lambda: dict(DEFAULT_FIELDS))
    copy_fields: list[tuple[str, str]] = field(default_factory=list)
    overlay: dict[str, dict[str, Any]] = field(
        default_factory=lambda: {"searchComponent": {}, "requestHandler": {}}
    )
    commands: list[str] = field(default_factory=list)
    params: dict[str, str] = field(default_factory=dict)


class FakeSolr:
    """Just enough of Solr's admin API for the orchestrator, served via MockTransport."""

    def __init__(self, *, distributed: bool = False) -> None:
        self.distributed = distributed
        self.entities: dict[str, FakeEntity] = {}
        self.auth_enabled = False
        self.users: dict[str, str] = {}
        self.roles: dict[str, list[str]] = {}
        self.start_count = 1
        self.down_polls = 0
        self.restart_down_polls = 1
        self.transient_failures = 0
        self.create_error: tuple[int, str] | None = None
        self.break_new_users = False
        self.pending_security: Mapping[str, Any] | None = None
        self.requests: list[tuple[str, str, str | None]] = []
        self._lock = threading.Lock()

    # -- helpers used by tests -------------------------------------------
    @property
    def start_time(self) -> str:
        return f"2026-10-19T00:00:{self.start_count:02d}Z"

    def add_entity(self, name: str, **fields: str) -> FakeEntity:
        entity = FakeEntity()
        for field_name, field_type in fields.items():
            entity.fields[field_name] = {"name": field_name, "type": field_type}
        self.entities[name] = entity
        return entity

    def enable_auth(self, *credentials: Credential) -> None:
        self.auth_enabled = True
        for credential in credentials:
            self.users[credential.username] = hash_solr_credential(credential.secret)
            self.roles[credential.username] = ["admin"]

    def restart(self) -> None:
        document = self.pending_security
        if document is not None:
            authentication = document["authentication"]
            authorization = document["authorization"]
            self.auth_enabled = True
            self.users = dict(authentication["credentials"])
            self.roles = {
                user: [role] if isinstance(role, str) else list(role)
                for user, role in authorization["user-role"].items()
            }
            self.pending_security = None
        self.start_count += 1
        self.down_polls = self.restart_down_polls

    def count(self, method: str, path: str) -> int:
        return sum(1 for entry in self.requests if entry[0] == method and entry[1] == path)

    # -- transport -------------------------------------------------------
    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            return self._handle(request)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        params = request.url.params
        user = self._authenticate(request)
        self.requests.append((request.method, path, user))

        if path == "/solr/admin/info/system" and self.down_polls > 0:
            self.down_polls -= 1
            raise httpx.ConnectError("connection refused", request=request)

        if self.auth_enabled and user is None:
            return _error(401, "require authentication")

        if path == "/solr/admin/info/system":
            return httpx.Response(200, json={"jvm": {"jmx": {"startTime": self.start_time}}})
        if path == "/solr/admin/cores":
            return self._cores(params)
        if path == "/solr/admin/collections":
            return self._collections(params)
        if path == "/solr/admin/authentication":
            return self._authentication(request, user)
        if path == "/solr/admin/authorization":
            return self._authorization(request, user)

        parts = path.strip("/").split("/")
        if len(parts) >= 3 and parts[0] == "solr":
            entity = self.entities.get(parts[1])
            if entity is None:
                return _error(404, f"Can not find: {path}")
            return self._entity(request, entity, parts[2:], params)
        return _error(404, f"Can not find: {path}")

    def _authenticate(self, request: httpx.Request) -> str | None:
        header = request.headers.get("Authorization")
        if not header or not header.startswith("Basic "):
            return None
        username, _, secret = base64.b64decode(header[6:]).decode("utf-8").partition(":")
        stored = self.users.get(username)
        if stored is None or not verify_solr_credential(secret, stored):
            if self.auth_enabled:
                return None
            return username
        return username

    def _cores(self, params: httpx.QueryParams) -> httpx.Response:
        action = params.get("action")
        name = params.get("core") or params.get("name") or ""
        if action == "STATUS":
            status = {"name": name, "instanceDir": name} if name in self.entities else {}
            return httpx.Response(200, json={"status": {name: status}})
        if action == "CREATE":
            return self._create(name, params, f"Core with name '{name}' already exists.", 500)
        return _error(400, f"Unsupported action {action}")

    def _collections(self, params: httpx.QueryParams) -> httpx.Response:
        action = params.get("action")
        if action == "LIST":
            return httpx.Response(200, json={"collections": sorted(self.entities)})
        if action == "CREATE":
            name = params.get("name") or ""
            return self._create(name, params, f"collection already exists: {name}", 400)
        return _error(400, f"Unsupported action {action}")

    def _create(
        self, name: str, params: httpx.QueryParams, exists_message: str, exists_status: int
    ) -> httpx.Response:
        if self.transient_failures > 0:
            self.transient_failures -= 1
            return _error(503, "Service Unavailable")
        if self.create_error is not None:
            status, message = self.create_error
            return _error(status, message)
        if name in self.entities:
            return _error(exists_status, exists_message)
        entity = FakeEntity(params=dict(params))
        self.entities[name] = entity
        return httpx.Response(200, json={"responseHeader": {"status": 0}, "core": name})

    def _entity(
        self,
        request: httpx.Request,
        entity: FakeEntity,
        rest: list[str],
        params: httpx.QueryParams,
    ) -> httpx.Response:
        if rest[:2] == ["schema", "fields"] and len(rest) == 3:
            definition = entity.fields.get(rest[2])
            if definition is None:
                return _error(404, f"No such path /schema/fields/{rest[2]}")
            return httpx.Response(200, json={"field": definition})
        if rest == ["schema", "copyfields"]:
            sources = set((params.get("source.fl") or "").split(","))
            rules = [
                {"source": source, "dest": dest}
                for source, dest in entity.copy_fields
                if source in sources
            ]
            return httpx.Response(200, json={"copyFields": rules})
        if rest == ["schema"] and request.method == "POST":
            return self._schema_command(entity, _body(request))
        if rest == ["config", "overlay"]:
            return httpx.Response(200, json={"overlay": entity.overlay})
        if rest == ["config"] and request.method == "POST":
            return self._config_command(entity, _body(request))
        return _error(404, "unknown entity path")

    def _schema_command(self, entity: FakeEntity, body: dict[str, Any]) -> httpx.Response:
        if "add-field" in body:
            definition = body["add-field"]
            entity.commands.append("add-field")
            if definition["name"] in entity.fields:
                return _schema_error(f"Field '{definition['name']}' already exists.")
            entity.fields[definition["name"]] = dict(definition)
        elif "add-copy-field" in body:
            command = body["add-copy-field"]
            entity.commands.append("add-copy-field")
            dests = command["dest"] if isinstance(command["dest"], list) else [command["dest"]]
            for dest in dests:
                entity.copy_fields.append((command["source"], dest))
        else:
            return _schema_error("Unknown command")
        return httpx.Response(200, json={"responseHeader": {"status": 0}})

    def _config_command(self, entity: FakeEntity, body: dict[str, Any]) -> httpx.Response:
        kinds = {"add-searchcomponent": "searchComponent", "add-requesthandler": "requestHandler"}
        for command, kind in kinds.items():
            if command in body:
                definition = body[command]
                entity.commands.append(command)
                if definition["name"] in entity.overlay[kind]:
                    return _schema_error(f"'{definition['name']}' already exists .")
                entity.overlay[kind][definition["name"]] = dict(definition)
                return httpx.Response(200, json={"responseHeader": {"status": 0}})
        return _schema_error("Unknown command")

    def _require_admin(self, user: str | None) -> httpx.Response | None:
        if not self.auth_enabled:
            return None
        if user is None:
            return _error(401, "require authentication")
        if "admin" not in self.roles.get(user, []):
            return _error(403, "Unauthorized request")
        return None

    def _authentication(self, request: httpx.Request, user: str | None) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"authentication": {"class": "solr.BasicAuthPlugin"}})
        denied = self._require_admin(user)
        if denied is not None:
            return denied
        body = _body(request)
        for username, secret in (body.get("set-user") or {}).items():
            stored_secret = f"{secret}-broken" if self.break_new_users else secret
            self.users[username] = hash_solr_credential(stored_secret)
        for username in body.get("delete-user") or []:
            self.users.pop(username, None)
        return httpx.Response(200, json={"responseHeader": {"status": 0}})

    def _authorization(self, request: httpx.Request, user: str | None) -> httpx.Response:
        denied = self._require_admin(user)
        if denied is not None:
            return denied
        body = _body(request)
        for username, roles in (body.get("set-user-role") or {}).items():
            if roles is None:
                self.roles.pop(username, None)
            else:
                self.roles[username] = list(roles)
        return httpx.Response(200, json={"responseHeader": {"status": 0}})


def _body(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content or b"{}")


def _error(status: int, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"msg": message, "code": status}})


def _schema_error(message: str) -> httpx.Response:
    return httpx.Response(
        400,
        json={
            "error": {
                "msg": "error processing commands",
                "details": [{"errorMessages": [message]}],
                "code": 400,
            }
        },
    )


class FakeLauncher:
    """Launcher that applies the security document to a :class:`FakeSolr`."""

    def __init__(self, solr: FakeSolr) -> None:
        self.solr = solr
        self.prepared: list[LaunchParameters] = []
        self.documents: list[Mapping[str, Any]] = []
        self.restarts = 0

    def prepare(self, parameters: LaunchParameters) -> None:
        self.prepared.append(parameters)

    def install_security(self, document: Mapping[str, Any]) -> None:
        self.documents.append(document)
        self.solr.pending_security = document

    def restart(self) -> None:
        self.restarts += 1
        self.solr.restart()


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_client(solr: FakeSolr, **kwargs: Any) -> SolrAdminClient:
    """Return a client wired to *solr* with zero-delay retries."""
    kwargs.setdefault("retry", RetryPolicy(max_attempts=3, base_delay=0, max_delay=0))
    return SolrAdminClient(ENDPOINT, transport=httpx.MockTransport(solr), **kwargs)


@pytest.fixture()
def fake_solr() -> FakeSolr:
    """Return a fresh standalone fake engine with authentication disabled."""
    return FakeSolr()


@pytest.fixture()
def solr_client(fake_solr: FakeSolr) -> Iterator[SolrAdminClient]:
    """Return an admin client talking to ``fake_solr``."""
    client = make_client(fake_solr)
    yield client
    client.close()


@pytest.fixture()
def launcher(fake_solr: FakeSolr) -> FakeLauncher:
    """Return a launcher bound to ``fake_solr``."""
    return FakeLauncher(fake_solr)


@pytest.fixture()
def policy() -> SecurityPolicy:
    """Return the default bootstrap/caller policy used across tests."""
    return SecurityPolicy(realm="My Solr users", bootstrap=BOOTSTRAP, caller=CALLER)
