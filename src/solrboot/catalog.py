"""Declarative entity and schema definitions.

The catalog is versioned alongside the orchestrator: the built-in
:data:`DEFAULT_CATALOG` describes the job-search stack (``auth``, ``jobs`` and
``logo``), and :func:`load_catalog` reads the same structure from YAML for
other deployments.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigError
from .topology import ClusterTopology, SearchEntity

COMPONENT_COMMANDS = {
    "searchComponent": "add-searchcomponent",
    "requestHandler": "add-requesthandler",
}


@dataclass(frozen=True)
class FieldSpec:
    """A schema field to ensure on an entity."""

    name: str
    type: str
    stored: bool = True
    indexed: bool = True
    multi_valued: bool | None = None
    doc_values: bool | None = None
    extra: Mapping[str, object] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        """Return the ``add-field`` body for this field."""
        payload: dict[str, object] = {
            "name": self.name,
            "type": self.type,
            "stored": self.stored,
            "indexed": self.indexed,
        }
        if self.multi_valued is not None:
            payload["multiValued"] = self.multi_valued
        if self.doc_values is not None:
            payload["docValues"] = self.doc_values
        payload.update(self.extra)
        return payload


@dataclass(frozen=True)
class CopyFieldRule:
    """Copy *source* into every destination, in order."""

    source: str
    destinations: tuple[str, ...]

    def __post_init__(self) -> None:
        """Require at least one destination."""
        if not self.destinations:
            raise ConfigError(f"Copy field rule for '{self.source}' has no destinations.")


@dataclass(frozen=True)
class ConfigComponent:
    """A Config API element (search component or request handler)."""

    kind: str
    name: str
    definition: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Restrict components to the kinds the Config API accepts here."""
        if self.kind not in COMPONENT_COMMANDS:
            allowed = ", ".join(sorted(COMPONENT_COMMANDS))
            raise ConfigError(f"Unsupported component kind '{self.kind}'. Allowed: {allowed}.")

    @property
    def command(self) -> str:
        """Return the Config API command that adds this component."""
        return COMPONENT_COMMANDS[self.kind]

    def to_payload(self) -> dict[str, object]:
        """Return the Config API body for this component."""
        return {self.command: {"name": self.name, **self.definition}}


@dataclass(frozen=True)
class EntitySchema:
    """Schema mutations for one entity, applied in declaration order."""

    fields: tuple[FieldSpec, ...] = ()
    copy_fields: tuple[CopyFieldRule, ...] = ()
    components: tuple[ConfigComponent, ...] = ()


@dataclass(frozen=True)
class CatalogEntry:
    """An entity definition independent of topology."""

    name: str
    shard_count: int = 1
    replication_factor: int = 1
    schema: EntitySchema = EntitySchema()


@dataclass(frozen=True)
class Catalog:
    """Ordered collection of entity definitions."""

    entries: tuple[CatalogEntry, ...]

    def entities(self, topology: ClusterTopology) -> list[SearchEntity]:
        """Return the entities to create, typed for *topology*."""
        return [
            topology.entity(
                entry.name,
                shard_count=entry.shard_count,
                replication_factor=entry.replication_factor,
            )
            for entry in self.entries
        ]

    def schemas(self) -> dict[str, EntitySchema]:
        """Return the schema mutations keyed by entity name."""
        return {entry.name: entry.schema for entry in self.entries}


def _text_field(name: str) -> FieldSpec:
    return FieldSpec(
        name=name,
        type="text_general",
        multi_valued=True,
        extra={"uninvertible": True},
    )


DEFAULT_CATALOG = Catalog(
    entries=(
        CatalogEntry(name="auth"),
        CatalogEntry(
            name="jobs",
            schema=EntitySchema(
                fields=(
                    _text_field("job_link"),
                    _text_field("job_title"),
                    _text_field("company"),
                    FieldSpec(
                        name="company_str",
                        type="string",
                        doc_values=True,
                        extra={
                            "uninvertible": True,
                            "omitNorms": True,
                            "omitTermFreqAndPositions": True,
                            "sortMissingLast": True,
                        },
                    ),
                    _text_field("hiringOrganization.name"),
                    _text_field("country"),
                    _text_field("city"),
                    _text_field("county"),
                ),
                copy_fields=(
                    CopyFieldRule("job_link", ("_text_",)),
                    CopyFieldRule("job_title", ("_text_",)),
                    CopyFieldRule("company", ("_text_", "company_str", "hiringOrganization.name")),
                    CopyFieldRule("hiringOrganization.name", ("hiringOrganization.name_str",)),
                    CopyFieldRule("country", ("_text_",)),
                    CopyFieldRule("city", ("_text_",)),
                ),
                components=(
                    ConfigComponent(
                        kind="searchComponent",
                        name="suggest",
                        definition={
                            "class": "solr.SuggestComponent",
                            "suggester": {
                                "name": "jobTitleSuggester",
                                "lookupImpl": "FuzzyLookupFactory",
                                "dictionaryImpl": "DocumentDictionaryFactory",
                                "field": "job_title",
                                "suggestAnalyzerFieldType": "text_general",
                                "buildOnCommit": "true",
                                "buildOnStartup": "false",
                            },
                        },
                    ),
                    ConfigComponent(
                        kind="requestHandler",
                        name="/suggest",
                        definition={
                            "class": "solr.SearchHandler",
                            "startup": "lazy",
                            "defaults": {
                                "suggest": "true",
                                "suggest.dictionary": "jobTitleSuggester",
                                "suggest.count": "10",
                            },
                            "components": ["suggest"],
                        },
                    ),
                ),
            ),
        ),
        CatalogEntry(
            name="logo",
            schema=EntitySchema(fields=(_text_field("url"),)),
        ),
    )
)

_FIELD_KEYS = {"name", "type", "stored", "indexed", "multiValued", "docValues"}


def load_catalog(path: Path | None) -> Catalog:
    """Load a catalog from YAML, or return :data:`DEFAULT_CATALOG` for ``None``."""
    if path is None:
        return DEFAULT_CATALOG
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Catalog file {path} does not exist.") from exc
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse catalog file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Catalog file {path} must contain a mapping at the top level.")
    raw_entities = data.get("entities")
    if not isinstance(raw_entities, Sequence) or isinstance(raw_entities, str):
        raise ConfigError(f"Catalog file {path} must define an 'entities' list.")
    entries = [_parse_entry(item, index) for index, item in enumerate(raw_entities)]
    names = [entry.name for entry in entries]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigError(f"Catalog defines duplicate entities: {', '.join(duplicates)}.")
    return Catalog(entries=tuple(entries))


def _parse_entry(raw: object, index: int) -> CatalogEntry:
    label = f"entities[{index}]"
    mapping = _expect_mapping(raw, label)
    name = mapping.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"{label}.name must be a non-empty string.")
    fields = tuple(
        _parse_field(item, f"{label}.fields[{position}]")
        for position, item in enumerate(_expect_list(mapping.get("fields"), f"{label}.fields"))
    )
    copy_fields = tuple(
        _parse_copy_field(item, f"{label}.copy_fields[{position}]")
        for position, item in enumerate(
            _expect_list(mapping.get("copy_fields"), f"{label}.copy_fields")
        )
    )
    components = tuple(
        _parse_component(item, f"{label}.components[{position}]")
        for position, item in enumerate(
            _expect_list(mapping.get("components"), f"{label}.components")
        )
    )
    return CatalogEntry(
        name=name.strip(),
        shard_count=_expect_count(mapping.get("shards", 1), f"{label}.shards"),
        replication_factor=_expect_count(
            mapping.get("replication_factor", 1), f"{label}.replication_factor"
        ),
        schema=EntitySchema(fields=fields, copy_fields=copy_fields, components=components),
    )


def _parse_field(raw: object, label: str) -> FieldSpec:
    mapping = _expect_mapping(raw, label)
    name = mapping.get("name")
    field_type = mapping.get("type")
    if not isinstance(name, str) or not name or not isinstance(field_type, str) or not field_type:
        raise ConfigError(f"{label} requires string 'name' and 'type'.")
    multi_valued = mapping.get("multiValued")
    doc_values = mapping.get("docValues")
    return FieldSpec(
        name=name,
        type=field_type,
        stored=bool(mapping.get("stored", True)),
        indexed=bool(mapping.get("indexed", True)),
        multi_valued=None if multi_valued is None else bool(multi_valued),
        doc_values=None if doc_values is None else bool(doc_values),
        extra={key: value for key, value in mapping.items() if key not in _FIELD_KEYS},
    )


def _parse_copy_field(raw: object, label: str) -> CopyFieldRule:
    mapping = _expect_mapping(raw, label)
    source = mapping.get("source")
    dest = mapping.get("dest")
    if not isinstance(source, str) or not source:
        raise ConfigError(f"{label}.source must be a non-empty string.")
    destinations = (dest,) if isinstance(dest, str) else tuple(_expect_list(dest, f"{label}.dest"))
    if not all(isinstance(item, str) and item for item in destinations):
        raise ConfigError(f"{label}.dest must contain non-empty strings.")
    return CopyFieldRule(source=source, destinations=tuple(str(item) for item in destinations))


def _parse_component(raw: object, label: str) -> ConfigComponent:
    mapping = _expect_mapping(raw, label)
    kind = mapping.get("kind")
    name = mapping.get("name")
    if not isinstance(kind, str) or not isinstance(name, str) or not name:
        raise ConfigError(f"{label} requires string 'kind' and 'name'.")
    definition = _expect_mapping(mapping.get("definition", {}), f"{label}.definition")
    return ConfigComponent(kind=kind, name=name, definition=definition)


def _expect_mapping(value: object, label: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return {str(key): item for key, item in value.items()}


def _expect_list(value: object, label: str) -> list[object]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    return list(value)


def _expect_count(value: object, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{label} must be an integer >= 1.")
    return value


__all__ = [
    "Catalog",
    "CatalogEntry",
    "ConfigComponent",
    "CopyFieldRule",
    "DEFAULT_CATALOG",
    "EntitySchema",
    "FieldSpec",
    "load_catalog",
]
