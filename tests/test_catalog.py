"""Catalog definition and loading tests."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from solrboot.catalog import (
    DEFAULT_CATALOG,
    ConfigComponent,
    CopyFieldRule,
    FieldSpec,
    load_catalog,
)
from solrboot.errors import ConfigError
from solrboot.topology import STANDALONE, CoordinationConfig, EntityKind, resolve_topology


def test_default_catalog_entities() -> None:
    """The built-in catalog provisions the job-search entities in order."""
    entities = DEFAULT_CATALOG.entities(STANDALONE)

    assert [entity.name for entity in entities] == ["auth", "jobs", "logo"]
    assert {entity.kind for entity in entities} == {EntityKind.CORE}


def test_default_catalog_jobs_schema() -> None:
    """The jobs entity carries fields, copy rules and the suggester."""
    jobs = DEFAULT_CATALOG.schemas()["jobs"]

    assert len(jobs.fields) == 8
    assert [rule.source for rule in jobs.copy_fields][:2] == ["job_link", "job_title"]
    assert [component.command for component in jobs.components] == [
        "add-searchcomponent",
        "add-requesthandler",
    ]
    company = next(rule for rule in jobs.copy_fields if rule.source == "company")
    assert company.destinations == ("_text_", "company_str", "hiringOrganization.name")


def test_field_payloads_are_valid_json() -> None:
    """Every field payload serialises to well-formed JSON."""
    for schema in DEFAULT_CATALOG.schemas().values():
        for spec in schema.fields:
            decoded = json.loads(json.dumps({"add-field": spec.to_payload()}))
            assert decoded["add-field"]["name"] == spec.name


def test_field_payload_attributes() -> None:
    """Optional attributes are only emitted when set."""
    plain = FieldSpec(name="url", type="string").to_payload()
    rich = FieldSpec(
        name="company_str",
        type="string",
        multi_valued=False,
        doc_values=True,
        extra={"sortMissingLast": True},
    ).to_payload()

    assert plain == {"name": "url", "type": "string", "stored": True, "indexed": True}
    assert rich["multiValued"] is False
    assert rich["docValues"] is True
    assert rich["sortMissingLast"] is True


def test_component_payload_and_validation() -> None:
    """Components map to Config API commands; unknown kinds are rejected."""
    component = ConfigComponent(kind="requestHandler", name="/suggest", definition={"startup": "lazy"})

    assert component.to_payload() == {
        "add-requesthandler": {"name": "/suggest", "startup": "lazy"}
    }
    with pytest.raises(ConfigError):
        ConfigComponent(kind="queryParser", name="x")


def test_copy_rule_requires_destination() -> None:
    """Copy rules need at least one destination."""
    with pytest.raises(ConfigError):
        CopyFieldRule("job_title", ())


def test_load_catalog_none_returns_default() -> None:
    """No catalog file means the built-in catalog."""
    assert load_catalog(None) is DEFAULT_CATALOG


def test_load_catalog_from_yaml(tmp_path: Path) -> None:
    """Catalog files use the same structure as the built-in definitions."""
    path = tmp_path / "catalog.yml"
    path.write_text(
        "entities:\n"
        "  - name: products\n"
        "    shards: 2\n"
        "    replication_factor: 2\n"
        "    fields:\n"
        "      - {name: title, type: text_general, multiValued: true, uninvertible: true}\n"
        "    copy_fields:\n"
        "      - {source: title, dest: _text_}\n"
        "    components:\n"
        "      - kind: searchComponent\n"
        "        name: suggest\n"
        "        definition: {class: solr.SuggestComponent}\n"
        "  - name: logs\n"
    )

    catalog = load_catalog(path)
    distributed = resolve_topology(CoordinationConfig(enabled=True, connect_string="zk1:2181"))
    entities = catalog.entities(distributed)
    products = catalog.schemas()["products"]

    assert [entity.name for entity in entities] == ["products", "logs"]
    assert entities[0].kind is EntityKind.COLLECTION
    assert entities[0].shard_count == 2
    assert products.fields[0].multi_valued is True
    assert products.fields[0].extra == {"uninvertible": True}
    assert products.copy_fields[0].destinations == ("_text_",)
    assert products.components[0].definition == {"class": "solr.SuggestComponent"}
    assert catalog.schemas()["logs"].fields == ()


@pytest.mark.parametrize(
    "body",
    [
        "entities: {}\n",
        "entities:\n  - name: a\n  - name: a\n",
        "entities:\n  - name: a\n    shards: 0\n",
        "entities:\n  - name: a\n    fields:\n      - {name: x}\n",
        "entities:\n  - name: a\n    copy_fields:\n      - {source: x, dest: []}\n",
        "- just a list\n",
    ],
)
def test_load_catalog_rejects_invalid_files(tmp_path: Path, body: str) -> None:
    """Malformed catalogs raise ConfigError."""
    path = tmp_path / "catalog.yml"
    path.write_text(body)

    with pytest.raises(ConfigError):
        load_catalog(path)


def test_load_catalog_missing_file(tmp_path: Path) -> None:
    """A configured but missing catalog file is an error."""
    with pytest.raises(ConfigError, match="does not exist"):
        load_catalog(tmp_path / "missing.yml")
