# tdcloud_client/models.py
from __future__ import annotations
import json
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .schema import TableSchema


class _Model(BaseModel):
    # tolerate fields added by newer server versions
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# -------- Databases / tables --------
class Database(_Model):
    name: str
    count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    permission: Optional[str] = None


class Table(_Model):
    name: str
    database: Optional[str] = None
    type: str = "log"
    count: int = 0
    # raw [[name, type], ...] pairs; see Table.table_schema()
    schema_pairs: list[list[str]] = Field(default_factory=list, alias="schema")
    estimated_storage_size: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("schema_pairs", mode="before")
    @classmethod
    def _decode_schema(cls, v: Any) -> Any:
        # the service sends the schema as a JSON-encoded string
        if isinstance(v, str):
            return json.loads(v) if v.strip() else []
        return v or []

    def table_schema(self) -> TableSchema:
        return TableSchema.from_pairs(self.schema_pairs)


class PartialDeleteJob(_Model):
    job_id: str
    database: str
    table: str
    from_: int = Field(alias="from")
    to: int

    @field_validator("job_id", mode="before")
    @classmethod
    def _str_id(cls, v: Any) -> str:
        return str(v)


# -------- Jobs --------
class JobType(str, Enum):
    HIVE = "hive"
    PRESTO = "presto"
    PIG = "pig"
    BULKLOAD = "bulkload"
    BULK_IMPORT = "bulk_import"
    EXPORT = "export"
    PARTIAL_DELETE = "partialdelete"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class JobStatus(str, Enum):
    QUEUED = "queued"
    BOOTING = "booting"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    KILLED = "killed"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value.lower() != value:
            return cls(value.lower())
        return cls.UNKNOWN

    @property
    def is_finished(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.ERROR, JobStatus.KILLED})


class Priority(IntEnum):
    VERY_LOW = -2
    LOW = -1
    NORMAL = 0
    HIGH = 1
    VERY_HIGH = 2


class ResultFormat(str, Enum):
    TSV = "tsv"
    CSV = "csv"
    JSON = "json"
    MSGPACK = "msgpack"
    MSGPACK_GZ = "msgpack.gz"


class JobRequest(_Model):
    database: str
    type: JobType = JobType.PRESTO
    query: str
    priority: Priority = Priority.NORMAL
    result_output: Optional[str] = None
    retry_limit: int = 0
    pool_name: Optional[str] = None
    # client-chosen correlation token; lets an ambiguous submit be looked up
    domain_key: Optional[str] = None

    @classmethod
    def new_presto_query(cls, database: str, query: str, result_output: str | None = None, **kw) -> "JobRequest":
        return cls(database=database, type=JobType.PRESTO, query=query, result_output=result_output, **kw)

    @classmethod
    def new_hive_query(
        cls, database: str, query: str, result_output: str | None = None, pool_name: str | None = None, **kw
    ) -> "JobRequest":
        return cls(
            database=database, type=JobType.HIVE, query=query,
            result_output=result_output, pool_name=pool_name, **kw,
        )

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"query": self.query, "priority": int(self.priority), "retry_limit": self.retry_limit}
        if self.result_output:
            body["result"] = self.result_output
        if self.pool_name:
            body["pool_name"] = self.pool_name
        if self.domain_key:
            body["domain_key"] = self.domain_key
        return body


class JobSummary(_Model):
    job_id: str
    status: JobStatus = JobStatus.UNKNOWN
    created_at: Optional[str] = None
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    cpu_time: Optional[int] = None
    result_size: Optional[int] = None
    duration: Optional[int] = None

    @field_validator("job_id", mode="before")
    @classmethod
    def _str_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("status", mode="before")
    @classmethod
    def _lenient_status(cls, v: Any) -> JobStatus:
        return JobStatus.UNKNOWN if v is None else JobStatus(v)

    @property
    def is_finished(self) -> bool:
        return self.status.is_finished


class Job(JobSummary):
    type: JobType = JobType.UNKNOWN
    database: Optional[str] = None
    query: Optional[str] = None
    priority: Priority = Priority.NORMAL
    retry_limit: int = 0
    result: Optional[str] = None
    url: Optional[str] = None
    num_records: Optional[int] = None
    domain_key: Optional[str] = None
    hive_result_schema: Optional[str] = None
    debug: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _lenient_type(cls, v: Any) -> JobType:
        return JobType.UNKNOWN if v is None else JobType(v)

    @field_validator("debug", mode="before")
    @classmethod
    def _none_debug(cls, v: Any) -> Any:
        return v or {}


class JobList(_Model):
    count: int = 0
    from_: Optional[int] = Field(default=None, alias="from")
    to: Optional[int] = None
    jobs: list[Job] = Field(default_factory=list)


# -------- Bulk import --------
class BulkImportStatus(str, Enum):
    UPLOADING = "uploading"
    PERFORMING = "performing"
    READY = "ready"
    COMMITTING = "committing"
    COMMITTED = "committed"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN


class BulkImportSession(_Model):
    name: str
    database: Optional[str] = None
    table: Optional[str] = None
    status: BulkImportStatus = BulkImportStatus.UNKNOWN
    upload_frozen: bool = False
    job_id: Optional[str] = None
    valid_records: Optional[int] = None
    error_records: Optional[int] = None
    valid_parts: Optional[int] = None
    error_parts: Optional[int] = None

    @field_validator("status", mode="before")
    @classmethod
    def _lenient_status(cls, v: Any) -> BulkImportStatus:
        return BulkImportStatus.UNKNOWN if v is None else BulkImportStatus(v)

    @field_validator("job_id", mode="before")
    @classmethod
    def _str_id(cls, v: Any) -> Any:
        return None if v is None else str(v)


# -------- Saved queries --------
class SavedQuery(_Model):
    name: str
    cron: Optional[str] = None
    type: JobType = JobType.UNKNOWN
    query: Optional[str] = None
    timezone: Optional[str] = None
    delay: int = 0
    database: Optional[str] = None
    priority: Priority = Priority.NORMAL
    retry_limit: int = 0
    result: Optional[str] = None
    next_time: Optional[str] = None


class SaveQueryRequest(_Model):
    name: str
    cron: str
    type: JobType
    query: str
    timezone: str = "UTC"
    delay: int = 0
    database: str
    priority: Priority = Priority.NORMAL
    retry_limit: int = 0
    result: Optional[str] = None


class SavedQueryUpdateRequest(_Model):
    cron: Optional[str] = None
    type: Optional[JobType] = None
    query: Optional[str] = None
    timezone: Optional[str] = None
    delay: Optional[int] = None
    database: Optional[str] = None
    priority: Optional[Priority] = None
    retry_limit: Optional[int] = None
    result: Optional[str] = None


# -------- Export / bulk load --------
class ExportJobRequest(_Model):
    database: str
    table: str
    from_: datetime = Field(alias="from")
    to: datetime
    access_key_id: str = Field(repr=False)
    secret_access_key: str = Field(repr=False)
    bucket: str
    prefix: Optional[str] = None
    file_format: str = "json.gz"
    pool_name: Optional[str] = None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "storage_type": "s3",
            "bucket": self.bucket,
            "access_key_id": self.access_key_id,
            "secret_access_key": self.secret_access_key,
            "file_format": self.file_format,
            "from": int(self.from_.timestamp()),
            "to": int(self.to.timestamp()),
        }
        if self.prefix:
            body["file_prefix"] = self.prefix
        if self.pool_name:
            body["pool_name"] = self.pool_name
        return body


class BulkLoadSessionStartRequest(_Model):
    scheduled_time: Optional[int] = None


class BulkLoadSessionStartResult(_Model):
    job_id: str

    @field_validator("job_id", mode="before")
    @classmethod
    def _str_id(cls, v: Any) -> str:
        return str(v)
