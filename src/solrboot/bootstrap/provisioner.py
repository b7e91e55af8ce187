"""Idempotent entity and schema provisioning.

Each ``ensure_*`` call checks what the engine already holds, creates only
what is missing and reports ``created`` or ``already-present``. An
``AlreadyPresent`` error raised by a concurrent or earlier run is absorbed
the same way. A field whose existing type differs is a :class:`Conflict`.
"""
from __future__ import annotations

from ..catalog import ConfigComponent, CopyFieldRule, FieldSpec
from ..errors import AlreadyPresent, Conflict
from ..solr.client import SolrAdminClient
from ..topology import SearchEntity
from .state import EnsureResult

CREATED = "created"
ALREADY_PRESENT = "already-present"


class SchemaProvisioner:
    """Stateless helper applying catalog definitions through the admin API."""

    def __init__(self, client: SolrAdminClient) -> None:
        """Bind the provisioner to *client*."""
        self.client = client

    def ensure_entity(self, entity: SearchEntity) -> EnsureResult:
        """Create *entity* unless it already exists."""
        kind = entity.kind.value
        if self.client.entity_exists(entity):
            return EnsureResult(entity.name, kind, entity.name, ALREADY_PRESENT)
        try:
            self.client.create_entity(entity)
        except AlreadyPresent:
            return EnsureResult(entity.name, kind, entity.name, ALREADY_PRESENT)
        return EnsureResult(entity.name, kind, entity.name, CREATED)

    def ensure_field(self, entity: str, spec: FieldSpec) -> EnsureResult:
        """Add *spec* to *entity*; an existing field must have the same type."""
        existing = self.client.get_field(entity, spec.name)
        if existing is None:
            try:
                self.client.add_field(entity, spec.to_payload())
            except AlreadyPresent:
                existing = self.client.get_field(entity, spec.name)
            else:
                return EnsureResult(entity, "field", spec.name, CREATED)
        if existing is not None and existing.get("type") != spec.type:
            raise Conflict(
                f"Field '{spec.name}' on '{entity}' has type '{existing.get('type')}', "
                f"expected '{spec.type}'.",
                entity=entity,
                field=spec.name,
            )
        return EnsureResult(entity, "field", spec.name, ALREADY_PRESENT)

    def ensure_copy_field(self, entity: str, rule: CopyFieldRule) -> EnsureResult:
        """Add the destinations of *rule* that are not yet copied."""
        present = set(self.client.list_copy_fields(entity, rule.source))
        missing = [dest for dest in rule.destinations if dest not in present]
        label = f"{rule.source}->{','.join(rule.destinations)}"
        if not missing:
            return EnsureResult(entity, "copy-field", label, ALREADY_PRESENT)
        try:
            self.client.add_copy_field(entity, rule.source, missing)
        except AlreadyPresent:
            return EnsureResult(entity, "copy-field", label, ALREADY_PRESENT)
        return EnsureResult(entity, "copy-field", label, CREATED)

    def ensure_component(self, entity: str, component: ConfigComponent) -> EnsureResult:
        """Register *component* through the Config API unless already overlaid."""
        overlay = self.client.config_overlay(entity)
        registered = overlay.get(component.kind)
        if isinstance(registered, dict) and component.name in registered:
            return EnsureResult(entity, component.kind, component.name, ALREADY_PRESENT)
        try:
            self.client.post_config(entity, component.to_payload())
        except AlreadyPresent:
            return EnsureResult(entity, component.kind, component.name, ALREADY_PRESENT)
        return EnsureResult(entity, component.kind, component.name, CREATED)


__all__ = ["ALREADY_PRESENT", "CREATED", "SchemaProvisioner"]
