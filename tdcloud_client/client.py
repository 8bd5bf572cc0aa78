# tdcloud_client/client.py
from __future__ import annotations
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, TypeVar, Union

import httpx

from .backoff import BackoffPolicy
from .bulk_import import BulkImportController, PartData
from .classify import parse_model
from .config import ClientConfig, ClientConfigBuilder
from .exceptions import AlreadyExistsError, ClientClosedError, MalformedResponseError, NotFoundError, ValidationError
from .executor import RequestExecutor, RequestSpec, api_path
from .jobs import DEFAULT_POLL_INTERVAL_S, JobController, ResultStream
from .models import (
    BulkImportSession,
    BulkLoadSessionStartRequest,
    BulkLoadSessionStartResult,
    Database,
    ExportJobRequest,
    Job,
    JobList,
    JobRequest,
    JobStatus,
    JobSummary,
    PartialDeleteJob,
    Priority,
    ResultFormat,
    SavedQuery,
    SavedQueryUpdateRequest,
    SaveQueryRequest,
    Table,
)
from .pool import SharedHttpPool
from .schema import Column, TableSchema

log = logging.getLogger("tdcloud")

R = TypeVar("R")

USER_AGENT = "tdcloud-client/0.1.0"

SchemaLike = Union[TableSchema, Iterable[Column], Iterable[str]]


def _default_headers(config: ClientConfig) -> dict[str, str]:
    headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    if config.api_key:
        headers["Authorization"] = f"TD1 {config.api_key}"
    return headers


def _to_schema(schema: SchemaLike) -> TableSchema:
    if isinstance(schema, TableSchema):
        return schema
    items = list(schema)
    if all(isinstance(c, Column) for c in items):
        return TableSchema(tuple(items))
    return TableSchema.parse(str(c) for c in items)


class _ClientExecutor(RequestExecutor):
    """Executor bound to one client instance; refuses work once that client is closed."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.closed = False

    def _run(self, spec, *, stream, cancel):
        if self.closed:
            raise ClientClosedError("client has been closed", operation=spec.operation, resource=spec.resource)
        return super()._run(spec, stream=stream, cancel=cancel)


class TDClient:
    """
    Client for the cloud service's REST API.

    A client owns a connection pool unless it was derived from another one
    (with_api_key / authenticate). Derived clients share the pool:
    closing a derived client leaves the pool open for everyone else, while
    closing the client that created the pool closes it for all of them.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: httpx.BaseTransport | None = None,
        pool: SharedHttpPool | None = None,
        owns_pool: bool | None = None,
    ):
        self.config = config
        self._pool = pool if pool is not None else SharedHttpPool(config, transport=transport)
        self._owns_pool = (pool is None) if owns_pool is None else owns_pool
        self._executor = _ClientExecutor(
            self._pool, BackoffPolicy.from_config(config), headers=_default_headers(config)
        )
        self.jobs = JobController(self._executor)
        self.bulk_imports = BulkImportController(self._executor)

    @classmethod
    def new_client(
        cls,
        builder: ClientConfigBuilder | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> "TDClient":
        """Build a client from the builder (defaults: environment + td.conf).

        With user/password but no api key, logs in once and returns a client
        that authenticates with the issued key.
        """
        config = (builder or ClientConfigBuilder()).build()
        client = cls(config, transport=transport)
        if config.api_key or not (config.user and config.password):
            return client
        try:
            api_key = client._login(config.user, config.password)
        except BaseException:
            client.close()
            raise
        return cls(config.with_api_key(api_key), pool=client._pool, owns_pool=True)

    # ------------ lifecycle ------------
    @property
    def closed(self) -> bool:
        return self._executor.closed or self._pool.closed

    def close(self) -> None:
        if self._executor.closed:
            return
        self._executor.closed = True
        if self._owns_pool:
            self._pool.close()

    def __enter__(self) -> "TDClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------ auth ------------
    def with_api_key(self, api_key: str) -> "TDClient":
        """A client using `api_key` that shares this client's connection pool."""
        if self.closed:
            raise ClientClosedError("client has been closed", operation="with_api_key")
        return TDClient(self.config.with_api_key(api_key), pool=self._pool, owns_pool=False)

    def authenticate(self, user: str, password: str) -> "TDClient":
        """Exchange user/password for an api key; the returned client uses the key only."""
        return self.with_api_key(self._login(user, password))

    def _login(self, user: str, password: str) -> str:
        spec = RequestSpec(
            "POST",
            api_path("v3", "user", "authenticate"),
            operation="authenticate",
            resource=user,
            json={"user": user, "password": password},
        )
        data = self._executor.execute_json(spec)
        api_key = data.get("apikey") if isinstance(data, dict) else None
        if not api_key:
            raise MalformedResponseError("authenticate response has no apikey", operation="authenticate", resource=user)
        log.info("[auth] authenticated %s", user)
        return api_key

    # ------------ low-level helpers ------------
    def _json(self, method: str, *segments: Any, operation: str, resource: str | None = None, **kw) -> Any:
        spec = RequestSpec(method, api_path("v3", *segments), operation=operation, resource=resource, **kw)
        return self._executor.execute_json(spec)

    def _call(self, method: str, *segments: Any, operation: str, resource: str | None = None, **kw) -> None:
        spec = RequestSpec(method, api_path("v3", *segments), operation=operation, resource=resource, **kw)
        self._executor.execute(spec)

    @staticmethod
    def _field(data: Any, key: str, operation: str, resource: str | None = None) -> Any:
        if not isinstance(data, dict) or key not in data:
            raise MalformedResponseError(f"response has no {key!r}", operation=operation, resource=resource)
        return data[key]

    def server_status(self) -> str:
        data = self._json("GET", "system", "server_status", operation="server_status")
        return str(self._field(data, "status", "server_status"))

    # ------------ Databases ------------
    def list_databases(self) -> list[Database]:
        data = self._json("GET", "database", "list", operation="list_databases")
        return [parse_model(Database, x, operation="list_databases") for x in self._field(data, "databases", "list_databases")]

    def list_database_names(self) -> list[str]:
        return [db.name for db in self.list_databases()]

    def exists_database(self, database: str) -> bool:
        return database in self.list_database_names()

    def create_database(self, database: str) -> None:
        self._call("POST", "database", "create", database, operation="create_database", resource=database)
        log.info("[database] created %s", database)

    def create_database_if_not_exists(self, database: str) -> bool:
        if self.exists_database(database):
            return False
        try:
            self.create_database(database)
        except AlreadyExistsError:
            return False
        return True

    def delete_database(self, database: str) -> None:
        self._call("POST", "database", "delete", database, operation="delete_database", resource=database)
        log.info("[database] deleted %s", database)

    def delete_database_if_exists(self, database: str) -> bool:
        try:
            self.delete_database(database)
        except NotFoundError:
            return False
        return True

    # ------------ Tables ------------
    def list_tables(self, database: str) -> list[Table]:
        data = self._json("GET", "table", "list", database, operation="list_tables", resource=database)
        tables = self._field(data, "tables", "list_tables", database)
        return [
            parse_model(Table, {"database": database, **t}, operation="list_tables", resource=database)
            for t in tables
        ]

    def exists_table(self, database: str, table: str) -> bool:
        try:
            return any(t.name == table for t in self.list_tables(database))
        except NotFoundError:
            return False

    def create_table(self, database: str, table: str) -> None:
        self._call(
            "POST", "table", "create", database, table, "log",
            operation="create_table", resource=f"{database}.{table}",
        )
        log.info("[table] created %s.%s", database, table)

    def create_table_if_not_exists(self, database: str, table: str) -> bool:
        if self.exists_table(database, table):
            return False
        try:
            self.create_table(database, table)
        except AlreadyExistsError:
            return False
        return True

    def rename_table(self, database: str, table: str, new_table: str, overwrite: bool = False) -> None:
        self._call(
            "POST", "table", "rename", database, table, new_table,
            operation="rename_table", resource=f"{database}.{table}",
            params={"overwrite": str(overwrite).lower()},
        )

    def delete_table(self, database: str, table: str) -> None:
        self._call("POST", "table", "delete", database, table, operation="delete_table", resource=f"{database}.{table}")
        log.info("[table] deleted %s.%s", database, table)

    def delete_table_if_exists(self, database: str, table: str) -> bool:
        try:
            self.delete_table(database, table)
        except NotFoundError:
            return False
        return True

    def partial_delete(self, database: str, table: str, from_: int, to: int) -> PartialDeleteJob:
        """Delete rows with time in [from_, to). Both bounds must be whole hours (unix seconds)."""
        resource = f"{database}.{table}"
        if from_ % 3600 or to % 3600:
            raise ValidationError("from/to must be multiples of 3600", operation="partial_delete", resource=resource)
        if from_ >= to:
            raise ValidationError("from must be earlier than to", operation="partial_delete", resource=resource)
        data = self._json(
            "POST", "table", "partialdelete", database, table,
            operation="partial_delete", resource=resource,
            params={"from": from_, "to": to}, idempotent=False,
        )
        return parse_model(PartialDeleteJob, data, operation="partial_delete", resource=resource)

    def swap_tables(self, database: str, table1: str, table2: str) -> None:
        self._call(
            "POST", "table", "swap", database, table1, table2,
            operation="swap_tables", resource=f"{database}.{table1}",
        )

    def update_table_schema(self, database: str, table: str, schema: SchemaLike) -> None:
        # parse before sending; bad type strings never reach the network
        table_schema = _to_schema(schema)
        self._call(
            "POST", "table", "update-schema", database, table,
            operation="update_table_schema", resource=f"{database}.{table}",
            json={"schema": table_schema.to_pairs()},
        )

    # ------------ Jobs ------------
    def submit(self, request: JobRequest, *, at_least_once: bool = False) -> str:
        return self.jobs.submit(request, at_least_once=at_least_once)

    def list_jobs(self, from_id: int | None = None, to_id: int | None = None) -> JobList:
        return self.jobs.list(from_id, to_id)

    def kill_job(self, job_id: str) -> JobStatus | None:
        return self.jobs.kill(job_id)

    def job_status(self, job_id: str) -> JobSummary:
        return self.jobs.status(job_id)

    def job_info(self, job_id: str) -> Job:
        return self.jobs.info(job_id)

    def job_result(
        self,
        job_id: str,
        fmt: ResultFormat | str = ResultFormat.TSV,
        handler: Callable[[ResultStream], R] | None = None,
    ) -> ResultStream | R:
        if handler is None:
            return self.jobs.result(job_id, fmt)
        return self.jobs.result_with(job_id, fmt, handler)

    def wait_for_job(
        self,
        job_id: str,
        *,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        timeout_s: float | None = None,
        cancel: threading.Event | None = None,
    ) -> JobSummary:
        return self.jobs.wait(job_id, poll_interval_s=poll_interval_s, timeout_s=timeout_s, cancel=cancel)

    # ------------ Bulk import ------------
    def list_bulk_import_sessions(self) -> list[BulkImportSession]:
        return self.bulk_imports.list()

    def list_bulk_import_parts(self, session: str) -> list[str]:
        return self.bulk_imports.list_parts(session)

    def create_bulk_import_session(self, session: str, database: str, table: str) -> None:
        self.bulk_imports.create(session, database, table)

    def create_bulk_import_session_if_not_exists(self, session: str, database: str, table: str) -> bool:
        return self.bulk_imports.create_if_not_exists(session, database, table)

    def get_bulk_import_session(self, session: str) -> BulkImportSession:
        return self.bulk_imports.show(session)

    def upload_bulk_import_part(self, session: str, part_name: str, data: PartData) -> None:
        self.bulk_imports.upload_part(session, part_name, data)

    def delete_bulk_import_part(self, session: str, part_name: str) -> None:
        self.bulk_imports.delete_part(session, part_name)

    def freeze_bulk_import_session(self, session: str) -> None:
        self.bulk_imports.freeze(session)

    def unfreeze_bulk_import_session(self, session: str) -> None:
        self.bulk_imports.unfreeze(session)

    def perform_bulk_import_session(self, session: str, priority: Priority | None = None) -> str:
        return self.bulk_imports.perform(session, priority)

    def commit_bulk_import_session(self, session: str) -> None:
        self.bulk_imports.commit(session)

    def delete_bulk_import_session(self, session: str) -> None:
        self.bulk_imports.delete(session)

    def delete_bulk_import_session_if_exists(self, session: str) -> bool:
        return self.bulk_imports.delete_if_exists(session)

    def get_bulk_import_error_records(self, session: str, handler: Callable[[ResultStream], R]) -> R:
        return self.bulk_imports.error_records(session, handler)

    # ------------ Saved queries ------------
    def start_saved_query(self, name: str, scheduled_time: datetime) -> str:
        data = self._json(
            "POST", "schedule", "run", name, int(scheduled_time.timestamp()),
            operation="start_saved_query", resource=name, idempotent=False,
        )
        jobs = self._field(data, "jobs", "start_saved_query", name)
        if not jobs:
            raise MalformedResponseError("saved query run started no job", operation="start_saved_query", resource=name)
        return str(self._field(jobs[0], "job_id", "start_saved_query", name))

    def list_saved_queries(self) -> list[SavedQuery]:
        data = self._json("GET", "schedule", "list", operation="list_saved_queries")
        return [
            parse_model(SavedQuery, x, operation="list_saved_queries")
            for x in self._field(data, "schedules", "list_saved_queries")
        ]

    def save_query(self, request: SaveQueryRequest) -> SavedQuery:
        data = self._json(
            "POST", "schedule", "create", request.name,
            operation="save_query", resource=request.name,
            json=request.model_dump(mode="json", exclude={"name"}, exclude_none=True),
        )
        return parse_model(SavedQuery, {"name": request.name, **data}, operation="save_query", resource=request.name)

    def update_saved_query(self, name: str, request: SavedQueryUpdateRequest) -> SavedQuery:
        data = self._json(
            "POST", "schedule", "update", name,
            operation="update_saved_query", resource=name,
            json=request.model_dump(mode="json", exclude_none=True),
        )
        return parse_model(SavedQuery, {"name": name, **data}, operation="update_saved_query", resource=name)

    def delete_saved_query(self, name: str) -> SavedQuery:
        data = self._json("POST", "schedule", "delete", name, operation="delete_saved_query", resource=name)
        return parse_model(SavedQuery, {"name": name, **data}, operation="delete_saved_query", resource=name)

    # ------------ Export / bulk load ------------
    def submit_export_job(self, request: ExportJobRequest) -> str:
        resource = f"{request.database}.{request.table}"
        data = self._json(
            "POST", "export", "run", request.database, request.table,
            operation="submit_export_job", resource=resource,
            json=request.to_body(), idempotent=False,
        )
        return str(self._field(data, "job_id", "submit_export_job", resource))

    def start_bulk_load_session(
        self, name: str, request: BulkLoadSessionStartRequest | None = None
    ) -> BulkLoadSessionStartResult:
        body = (request or BulkLoadSessionStartRequest()).model_dump(exclude_none=True)
        data = self._json(
            "POST", "bulk_loads", name, "jobs",
            operation="start_bulk_load_session", resource=name,
            json=body, idempotent=False,
        )
        return parse_model(BulkLoadSessionStartResult, data, operation="start_bulk_load_session", resource=name)
