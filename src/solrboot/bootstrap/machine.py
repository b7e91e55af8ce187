"""Bootstrap state machine.

Drives an engine from "unknown" to "ready, schematized and secured":

``NotStarted → WaitingForReady → EntitiesCreated → SchemaApplied →
AuthBootstrapped → CredentialsRotated → Complete``

with ``Failed`` reachable from every non-terminal state. The machine is safe
to re-run against a partially provisioned engine: existing entities, fields,
components, an already active security policy and an already rotated
credential are all detected and treated as progress. It is also the only
place where component errors become a ``Failed`` outcome.
"""
from __future__ import annotations

import concurrent.futures
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

import httpx

from ..catalog import EntitySchema, FieldSpec
from ..errors import AuthFailure, Cancelled, ConfigError, SolrbootError, Unreachable
from ..logging import OperationScope
from ..providers.launcher import Launcher, build_launch_parameters
from ..security import Credential, SecurityPolicy, build_security_document
from ..solr.client import EngineProbe, RetryPolicy, SolrAdminClient
from ..topology import ClusterTopology, SearchEntity
from .provisioner import SchemaProvisioner
from .rotation import CredentialRotator
from .state import (
    BootstrapFailure,
    BootstrapReport,
    BootstrapState,
    EnsureResult,
    RotationOutcome,
    next_state,
)

AUTH_INACTIVE = "inactive"
AUTH_ACTIVE = "active"
AUTH_ACTIVATED = "activated"
AUTH_ROTATED = "rotated"

SchemaInput = EntitySchema | Sequence[FieldSpec]


@dataclass(frozen=True)
class BootstrapOptions:
    """Timing and concurrency knobs for a run (seconds)."""

    ready_timeout: float = 120.0
    poll_interval: float = 2.0
    schema_concurrency: int = 1


class _StepFailed(Exception):
    """Carries the entity/field that was being worked on when *cause* hit."""

    def __init__(self, cause: SolrbootError, *, entity: str, field: str | None = None) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.entity = entity
        self.field = field


class BootstrapStateMachine:
    """Run the ordered, idempotent bootstrap sequence against one endpoint."""

    def __init__(
        self,
        client: SolrAdminClient,
        launcher: Launcher,
        *,
        options: BootstrapOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
        cancel: threading.Event | None = None,
        rotator: CredentialRotator | None = None,
    ) -> None:
        """Bind the machine to its collaborators."""
        self.client = client
        self.launcher = launcher
        self.options = options or BootstrapOptions()
        self.cancel = cancel or client.cancel or threading.Event()
        self.rotator = rotator or CredentialRotator()
        self._clock = clock
        self._sleep = sleep or self._wait

    def run(
        self,
        topology: ClusterTopology,
        entities: Sequence[SearchEntity],
        schemas: Mapping[str, SchemaInput],
        security: SecurityPolicy,
        *,
        op: OperationScope | None = None,
    ) -> BootstrapReport:
        """Execute the sequence and return the final report.

        Never raises for engine, configuration, launcher or cancellation
        failures; those end the run in ``Failed`` with the stage, entity,
        field and HTTP status recorded on the report.
        """
        report = BootstrapReport()
        target = next_state(report.state)
        try:
            normalised = _normalise_schemas(entities, schemas)

            self._enter(report, target, op)
            self.launcher.prepare(build_launch_parameters(topology))
            probe = self.wait_until_ready(None)

            target = next_state(report.state)
            self._check_cancelled()
            session = self._detect_auth(report, probe, security)
            provisioner = SchemaProvisioner(self.client.as_user(session))
            for entity in entities:
                self._check_cancelled()
                result = self._ensure(provisioner.ensure_entity, entity, entity=entity.name)
                report.entities.append(result)
                _log_result(op, result)
            self._enter(report, target, op)

            target = next_state(report.state)
            self._check_cancelled()
            for result in self._apply_schemas(provisioner, entities, normalised):
                report.schema.append(result)
                _log_result(op, result)
            self._enter(report, target, op)

            target = next_state(report.state)
            self._check_cancelled()
            if report.auth == AUTH_INACTIVE:
                self._activate_auth(security)
                report.auth = AUTH_ACTIVATED
            self._enter(report, target, op)

            target = next_state(report.state)
            self._check_cancelled()
            if report.rotation is None:
                report.rotation = self.rotator.rotate(
                    self.client, security.bootstrap, security.caller
                )
            if not report.rotation.succeeded:
                self._fail_rotation(report, report.rotation, op)
                return report
            self._enter(report, target, op)

            target = next_state(report.state)
            self._check_cancelled()
            self.wait_until_ready(security.caller)
            report.bootstrap_revoked = not self.client.check_credential(security.bootstrap)
            self._enter(report, target, op)
        except _StepFailed as exc:
            self._fail(report, target, exc.cause, op, entity=exc.entity, field=exc.field)
        except SolrbootError as exc:
            self._fail(report, target, exc, op)
        return report

    # ------------------------------------------------------------------
    def wait_until_ready(
        self,
        credential: Credential | None,
        *,
        previous_start: str | None = None,
    ) -> EngineProbe:
        """Poll the health surface until it answers or the deadline passes.

        Without a credential a 401/403 counts as an answer (authentication is
        active). With one, a 401/403 is an :class:`AuthFailure`. When
        *previous_start* is given the engine must also report a different
        start time, so an engine that has not yet restarted is not treated as
        ready.
        """
        client = self.client.as_user(credential)
        deadline = self._clock() + self.options.ready_timeout
        while True:
            self._check_cancelled()
            probe = client.probe()
            if probe.answered:
                if probe.status == 200:
                    if previous_start is None or probe.start_time != previous_start:
                        return probe
                elif probe.status in {401, 403}:
                    if credential is None:
                        return probe
                    raise AuthFailure(
                        f"Engine rejected the credential for '{credential.username}'.",
                        status=probe.status,
                    )
            if self._clock() >= deadline:
                raise Unreachable("engine unreachable")
            self._sleep(self.options.poll_interval)

    def _detect_auth(
        self,
        report: BootstrapReport,
        probe: EngineProbe,
        security: SecurityPolicy,
    ) -> Credential | None:
        if probe.status == 200:
            report.auth = AUTH_INACTIVE
            return None
        if self.client.check_credential(security.bootstrap):
            report.auth = AUTH_ACTIVE
            return security.bootstrap
        if self.client.check_credential(security.caller):
            report.auth = AUTH_ROTATED
            report.rotation = RotationOutcome(status="already-rotated")
            return security.caller
        raise AuthFailure(
            "Authentication is active but neither the bootstrap nor the caller "
            "credential is accepted.",
            status=probe.status,
        )

    def _activate_auth(self, security: SecurityPolicy) -> None:
        before = self.client.as_user(None).probe()
        self.launcher.install_security(build_security_document(security))
        self.launcher.restart()
        self.wait_until_ready(security.bootstrap, previous_start=before.start_time)
        if self.client.as_user(None).probe().status == 200:
            raise AuthFailure("Authentication did not become active after the restart.")
        if not self.client.check_credential(security.bootstrap):
            raise AuthFailure(
                f"Bootstrap credential '{security.bootstrap.username}' is not accepted "
                "after installing the security policy."
            )

    def _apply_schemas(
        self,
        provisioner: SchemaProvisioner,
        entities: Sequence[SearchEntity],
        schemas: Mapping[str, EntitySchema],
    ) -> list[EnsureResult]:
        work = [(entity.name, schemas[entity.name]) for entity in entities if entity.name in schemas]
        workers = min(self.options.schema_concurrency, len(work))
        if workers <= 1:
            batches = [self._apply_entity_schema(provisioner, name, schema) for name, schema in work]
        else:
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [
                    executor.submit(self._apply_entity_schema, provisioner, name, schema)
                    for name, schema in work
                ]
                batches = [future.result() for future in futures]
        return [result for batch in batches for result in batch]

    def _apply_entity_schema(
        self,
        provisioner: SchemaProvisioner,
        entity: str,
        schema: EntitySchema,
    ) -> list[EnsureResult]:
        # Fields first: copy rules and components may reference them.
        self._check_cancelled()
        results: list[EnsureResult] = []
        for spec in schema.fields:
            results.append(
                self._ensure(provisioner.ensure_field, entity, spec, entity=entity, field=spec.name)
            )
        for rule in schema.copy_fields:
            results.append(
                self._ensure(
                    provisioner.ensure_copy_field, entity, rule, entity=entity, field=rule.source
                )
            )
        for component in schema.components:
            results.append(
                self._ensure(
                    provisioner.ensure_component,
                    entity,
                    component,
                    entity=entity,
                    field=component.name,
                )
            )
        return results

    def _ensure(
        self,
        action: Callable[..., EnsureResult],
        *args: object,
        entity: str,
        field: str | None = None,
    ) -> EnsureResult:
        try:
            return action(*args)
        except Cancelled:
            raise
        except SolrbootError as exc:
            raise _StepFailed(exc, entity=entity, field=field) from exc

    # ------------------------------------------------------------------
    def _enter(
        self,
        report: BootstrapReport,
        state: BootstrapState,
        op: OperationScope | None,
    ) -> None:
        report.advance(state)
        if op is not None:
            op.add_step(f"state.{state.value}", detail={"auth": report.auth})

    def _fail(
        self,
        report: BootstrapReport,
        stage: BootstrapState,
        exc: SolrbootError,
        op: OperationScope | None,
        *,
        entity: str | None = None,
        field: str | None = None,
    ) -> None:
        failure = BootstrapFailure(
            stage=stage,
            category=exc.category,
            reason=str(exc),
            exit_code=int(exc.exit_code),
            entity=entity or getattr(exc, "entity", None),
            field=field or getattr(exc, "field", None),
            http_status=getattr(exc, "status", None),
        )
        report.fail(failure)
        if op is not None:
            op.add_step(f"state.{BootstrapState.FAILED.value}", status="error", detail=failure.to_dict())

    def _fail_rotation(
        self,
        report: BootstrapReport,
        outcome: RotationOutcome,
        op: OperationScope | None,
    ) -> None:
        failure = BootstrapFailure(
            stage=BootstrapState.CREDENTIALS_ROTATED,
            category=outcome.category or "auth",
            reason=f"{outcome.step}: {outcome.reason}",
            exit_code=outcome.exit_code,
            http_status=outcome.http_status,
        )
        report.fail(failure)
        if op is not None:
            op.add_step(f"state.{BootstrapState.FAILED.value}", status="error", detail=failure.to_dict())

    def _check_cancelled(self) -> None:
        if self.cancel.is_set():
            raise Cancelled("cancelled")

    def _wait(self, seconds: float) -> None:
        self.cancel.wait(seconds)


def _normalise_schemas(
    entities: Sequence[SearchEntity],
    schemas: Mapping[str, SchemaInput],
) -> dict[str, EntitySchema]:
    names = {entity.name for entity in entities}
    unknown = sorted(set(schemas) - names)
    if unknown:
        raise ConfigError(f"Schema definitions reference unknown entities: {', '.join(unknown)}.")
    normalised: dict[str, EntitySchema] = {}
    for name, value in schemas.items():
        normalised[name] = value if isinstance(value, EntitySchema) else EntitySchema(fields=tuple(value))
    return normalised


def _log_result(op: OperationScope | None, result: EnsureResult) -> None:
    if op is None:
        return
    op.add_step(
        f"{result.kind}.{result.entity}.{result.name}",
        status=result.outcome,
    )


def bootstrap(
    topology: ClusterTopology,
    endpoint: str,
    entities: Sequence[SearchEntity],
    fields: Mapping[str, SchemaInput],
    security: SecurityPolicy,
    *,
    launcher: Launcher,
    options: BootstrapOptions | None = None,
    retry: RetryPolicy | None = None,
    timeout: float = 10.0,
    connect_timeout: float = 3.0,
    cancel: threading.Event | None = None,
    transport: httpx.BaseTransport | None = None,
    op: OperationScope | None = None,
) -> BootstrapReport:
    """Provision and secure the engine at *endpoint*; return the final report."""
    cancel = cancel or threading.Event()
    with SolrAdminClient(
        endpoint,
        timeout=timeout,
        connect_timeout=connect_timeout,
        retry=retry,
        cancel=cancel,
        transport=transport,
    ) as client:
        machine = BootstrapStateMachine(client, launcher, options=options, cancel=cancel)
        return machine.run(topology, entities, fields, security, op=op)


__all__ = [
    "AUTH_ACTIVATED",
    "AUTH_ACTIVE",
    "AUTH_INACTIVE",
    "AUTH_ROTATED",
    "BootstrapOptions",
    "BootstrapStateMachine",
    "bootstrap",
]
