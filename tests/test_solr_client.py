"""Admin HTTP client tests against the in-process fake engine."""
from __future__ import annotations

import threading

import httpx
import pytest
from conftest import BOOTSTRAP, CALLER, FakeSolr, make_client

from solrboot.errors import AlreadyPresent, AuthFailure, Cancelled, SolrRequestError, Unreachable
from solrboot.solr.client import RetryPolicy, SolrAdminClient
from solrboot.topology import STANDALONE, CoordinationConfig, resolve_topology


def test_probe_reports_status_and_start_time(
    fake_solr: FakeSolr, solr_client: SolrAdminClient
) -> None:
    """A healthy engine answers 200 with its JVM start time."""
    probe = solr_client.probe()

    assert probe.status == 200
    assert probe.start_time == fake_solr.start_time
    assert probe.answered


def test_probe_does_not_retry_connection_errors(
    fake_solr: FakeSolr, solr_client: SolrAdminClient
) -> None:
    """Probes are single attempts; an unreachable engine yields no status."""
    fake_solr.down_polls = 5

    probe = solr_client.probe()

    assert probe.status is None
    assert not probe.answered
    assert fake_solr.count("GET", "/solr/admin/info/system") == 1


def test_probe_with_auth_enabled(fake_solr: FakeSolr, solr_client: SolrAdminClient) -> None:
    """Anonymous probes see 401 once authentication is active."""
    fake_solr.enable_auth(BOOTSTRAP)

    assert solr_client.probe().status == 401
    assert solr_client.as_user(BOOTSTRAP).probe().status == 200


def test_create_core_and_status(fake_solr: FakeSolr, solr_client: SolrAdminClient) -> None:
    """Standalone entities are created as cores from the _default config set."""
    jobs = STANDALONE.entity("jobs")

    assert solr_client.entity_exists(jobs) is False
    solr_client.create_entity(jobs)

    assert solr_client.entity_exists(jobs) is True
    assert fake_solr.entities["jobs"].params["configSet"] == "_default"


def test_create_collection_passes_shards_and_replicas() -> None:
    """Distributed entities are created as collections with shard parameters."""
    fake = FakeSolr(distributed=True)
    topology = resolve_topology(CoordinationConfig(enabled=True, connect_string="zk1:2181"))
    entity = topology.entity("jobs", shard_count=2, replication_factor=3)

    with make_client(fake) as client:
        client.create_entity(entity)
        assert client.list_collections() == ["jobs"]
        assert client.entity_exists(entity) is True

    params = fake.entities["jobs"].params
    assert params["action"] == "CREATE"
    assert params["numShards"] == "2"
    assert params["replicationFactor"] == "3"
    assert params["collection.configName"] == "_default"


def test_existing_entity_raises_already_present(
    fake_solr: FakeSolr, solr_client: SolrAdminClient
) -> None:
    """'already exists' responses map to AlreadyPresent and are not retried."""
    fake_solr.add_entity("jobs")

    with pytest.raises(AlreadyPresent):
        solr_client.create_entity(STANDALONE.entity("jobs"))
    assert fake_solr.count("GET", "/solr/admin/cores") == 1


def test_transient_server_errors_are_retried(
    fake_solr: FakeSolr, solr_client: SolrAdminClient
) -> None:
    """HTTP 5xx responses are retried within the attempt budget."""
    fake_solr.transient_failures = 2

    solr_client.create_entity(STANDALONE.entity("jobs"))

    assert "jobs" in fake_solr.entities
    assert fake_solr.count("GET", "/solr/admin/cores") == 3


def test_retry_budget_is_bounded(fake_solr: FakeSolr, solr_client: SolrAdminClient) -> None:
    """Persistent 5xx responses surface after max_attempts."""
    fake_solr.transient_failures = 10

    with pytest.raises(SolrRequestError) as excinfo:
        solr_client.create_entity(STANDALONE.entity("jobs"))

    assert excinfo.value.status == 503
    assert fake_solr.count("GET", "/solr/admin/cores") == 3


def test_client_errors_are_not_retried(fake_solr: FakeSolr, solr_client: SolrAdminClient) -> None:
    """HTTP 4xx responses fail immediately with their status."""
    fake_solr.create_error = (400, "Invalid core name")

    with pytest.raises(SolrRequestError) as excinfo:
        solr_client.create_entity(STANDALONE.entity("jobs"))

    assert excinfo.value.status == 400
    assert "Invalid core name" in str(excinfo.value)
    assert fake_solr.count("GET", "/solr/admin/cores") == 1


def test_transport_errors_become_unreachable() -> None:
    """Connection failures are retried, then reported as Unreachable."""
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    client = SolrAdminClient(
        "http://solr.test:8983",
        retry=RetryPolicy(max_attempts=2, base_delay=0, max_delay=0),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(Unreachable):
        client.list_collections()
    assert len(calls) == 2


def test_cancellation_interrupts_retry_sleep() -> None:
    """A cancel request during backoff stops further attempts."""
    cancel = threading.Event()
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        cancel.set()
        return httpx.Response(503, json={"error": {"msg": "busy"}})

    client = SolrAdminClient(
        "http://solr.test:8983",
        retry=RetryPolicy(max_attempts=5, base_delay=0, max_delay=0),
        cancel=cancel,
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(Cancelled):
        client.list_collections()
    assert len(calls) == 1


def test_rejected_credentials_raise_auth_failure(
    fake_solr: FakeSolr, solr_client: SolrAdminClient
) -> None:
    """401 responses raise AuthFailure without retrying."""
    fake_solr.enable_auth(BOOTSTRAP)

    with pytest.raises(AuthFailure) as excinfo:
        solr_client.as_user(CALLER).list_collections()

    assert excinfo.value.status == 401
    assert solr_client.check_credential(BOOTSTRAP) is True
    assert solr_client.check_credential(CALLER) is False


def test_schema_field_round_trip(fake_solr: FakeSolr, solr_client: SolrAdminClient) -> None:
    """Fields are read back after being added; unknown fields are None."""
    fake_solr.add_entity("jobs")

    assert solr_client.get_field("jobs", "job_title") is None
    solr_client.add_field("jobs", {"name": "job_title", "type": "text_general"})

    assert solr_client.get_field("jobs", "job_title") == {
        "name": "job_title",
        "type": "text_general",
    }
    with pytest.raises(AlreadyPresent):
        solr_client.add_field("jobs", {"name": "job_title", "type": "text_general"})


def test_copy_fields_and_overlay(fake_solr: FakeSolr, solr_client: SolrAdminClient) -> None:
    """Copy rules and config overlay entries are listed per entity."""
    fake_solr.add_entity("jobs")

    solr_client.add_copy_field("jobs", "company", ["_text_", "company_str"])
    solr_client.post_config("jobs", {"add-searchcomponent": {"name": "suggest"}})

    assert solr_client.list_copy_fields("jobs", "company") == ["_text_", "company_str"]
    assert solr_client.list_copy_fields("jobs", "city") == []
    assert "suggest" in solr_client.config_overlay("jobs")["searchComponent"]


def test_user_management(fake_solr: FakeSolr, solr_client: SolrAdminClient) -> None:
    """Users and role bindings are managed through the security endpoints."""
    fake_solr.enable_auth(BOOTSTRAP)
    admin = solr_client.as_user(BOOTSTRAP)

    admin.set_user(CALLER)
    admin.set_user_role(CALLER.username)
    assert fake_solr.roles["ops"] == ["admin"]
    assert solr_client.check_credential(CALLER) is True

    admin.set_user_role(CALLER.username, None)
    admin.delete_user(CALLER.username)
    assert "ops" not in fake_solr.roles
    assert "ops" not in fake_solr.users


def test_as_user_does_not_change_original(solr_client: SolrAdminClient) -> None:
    """Switching credentials returns a new client bound to the same pool."""
    switched = solr_client.as_user(CALLER)

    assert switched.credential == CALLER
    assert solr_client.credential is None
