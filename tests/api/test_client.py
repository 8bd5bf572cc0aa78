from __future__ import annotations

from datetime import datetime, timezone

import pytest

from fake_service import API_KEY, make_client
from tdcloud_client import ClientConfigBuilder, TDClient, TableSchema
from tdcloud_client.exceptions import (
    AlreadyExistsError,
    AuthError,
    ClientClosedError,
    NotFoundError,
    SchemaParseError,
    ValidationError,
)
from tdcloud_client.models import (
    BulkLoadSessionStartRequest,
    ExportJobRequest,
    JobType,
    SavedQueryUpdateRequest,
    SaveQueryRequest,
)


def test_server_status(client):
    assert client.server_status() == "ok"


def test_database_lifecycle(client, service):
    client.create_database("a")
    assert client.create_database_if_not_exists("a") is False
    assert client.create_database_if_not_exists("b") is True
    assert client.list_database_names() == ["a", "b"]
    assert client.exists_database("b")

    with pytest.raises(AlreadyExistsError):
        client.create_database("a")

    client.delete_database("a")
    assert client.delete_database_if_exists("a") is False
    assert client.list_database_names() == ["b"]


def test_table_lifecycle(client, service):
    client.create_database("db")
    client.create_table("db", "t1")
    assert client.create_table_if_not_exists("db", "t1") is False
    assert client.create_table_if_not_exists("db", "t2") is True
    assert client.exists_table("db", "t1")
    assert not client.exists_table("missing-db", "t1")

    client.rename_table("db", "t2", "t3")
    with pytest.raises(AlreadyExistsError):
        client.rename_table("db", "t1", "t3")
    client.rename_table("db", "t1", "t3", overwrite=True)
    assert [t.name for t in client.list_tables("db")] == ["t3"]

    client.delete_table("db", "t3")
    assert client.delete_table_if_exists("db", "t3") is False


def test_update_schema(client, service):
    client.create_database("db")
    client.create_table("db", "t")
    client.update_table_schema("db", "t", ["name:string", "tags:array<string>"])

    [table] = client.list_tables("db")
    assert table.database == "db"
    assert table.table_schema() == TableSchema.parse(["name:string", "tags:array<string>"])


def test_invalid_schema_never_reaches_the_service(client, service):
    client.create_database("db")
    client.create_table("db", "t")
    with pytest.raises(SchemaParseError):
        client.update_table_schema("db", "t", ["col:bogus"])
    assert service.count("POST", "/v3/table/update-schema") == 0


def test_swap_tables(client, service):
    client.create_database("db")
    client.create_table("db", "a")
    client.create_table("db", "b")
    client.update_table_schema("db", "a", ["x:int"])
    client.swap_tables("db", "a", "b")
    schemas = {t.name: t.table_schema().to_strings() for t in client.list_tables("db")}
    assert schemas == {"a": [], "b": ["x:int"]}


def test_partial_delete(client, service):
    client.create_database("db")
    client.create_table("db", "t")
    with pytest.raises(ValidationError):
        client.partial_delete("db", "t", 1, 3600)
    job = client.partial_delete("db", "t", 3600, 7200)
    assert (job.from_, job.to, job.table) == (3600, 7200, "t")


def test_names_with_reserved_characters_are_escaped(client, service):
    client.create_database("my db/x")
    assert client.list_database_names() == ["my db/x"]


def test_saved_queries(client, service):
    client.create_database("db")
    saved = client.save_query(SaveQueryRequest(
        name="daily", cron="0 * * * *", type=JobType.PRESTO, query="select 1", database="db",
    ))
    assert saved.name == "daily"
    assert saved.type is JobType.PRESTO

    updated = client.update_saved_query("daily", SavedQueryUpdateRequest(query="select 2"))
    assert updated.query == "select 2"
    assert [q.name for q in client.list_saved_queries()] == ["daily"]

    job_id = client.start_saved_query("daily", datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert job_id in service.jobs

    client.delete_saved_query("daily")
    with pytest.raises(NotFoundError):
        client.delete_saved_query("daily")


def test_export_and_bulk_load(client, service):
    client.create_database("db")
    client.create_table("db", "t")
    export_id = client.submit_export_job(ExportJobRequest(
        database="db", table="t",
        **{"from": datetime(2024, 1, 1, tzinfo=timezone.utc)},
        to=datetime(2024, 1, 2, tzinfo=timezone.utc),
        access_key_id="AK", secret_access_key="SK", bucket="bucket",
    ))
    assert service.jobs[export_id]["type"] == "export"

    result = client.start_bulk_load_session("nightly", BulkLoadSessionStartRequest(scheduled_time=1700000000))
    assert service.jobs[result.job_id]["scheduled_time"] == 1700000000


def test_bad_api_key_is_auth_error(service):
    with make_client(service, api_key="wrong") as cli:
        with pytest.raises(AuthError):
            cli.list_databases()
    assert service.count("GET", "/v3/database/list") == 1


def test_password_login(service):
    builder = (
        ClientConfigBuilder(load_env=False, load_conf_file=False)
        .set_endpoint("api.test").set_user("alice").set_password("secret")
    )
    with TDClient.new_client(builder, transport=service.transport()) as cli:
        assert cli.config.api_key == "alice-key"
        assert cli.config.password is None
        assert cli.server_status() == "ok"
    assert cli.closed


def test_derived_clients_share_the_pool(client, service):
    other = client.with_api_key(API_KEY)
    assert other._pool is client._pool

    other.close()
    assert other.closed
    assert not client.closed
    assert client.server_status() == "ok"
    with pytest.raises(ClientClosedError):
        other.server_status()

    sibling = client.authenticate("alice", "secret")
    client.close()
    assert sibling.closed
    with pytest.raises(ClientClosedError):
        sibling.server_status()


def test_closed_client_rejects_calls(client, service):
    client.close()
    client.close()
    with pytest.raises(ClientClosedError):
        client.list_databases()
    with pytest.raises(ClientClosedError):
        client.with_api_key("x")


def test_failed_attempts_release_their_responses(client, service):
    service.fail("GET", "/v3/database/list", status=503, times=2)
    service.fail("GET", "/v3/database/list", status=429, headers={"Retry-After": "0"})

    assert client.list_databases() == []
    assert service.count("GET", "/v3/database/list") == 4
    assert [s.close_count for s in service.failure_streams] == [1, 1, 1]
