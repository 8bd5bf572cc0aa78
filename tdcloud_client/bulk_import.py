# tdcloud_client/bulk_import.py
from __future__ import annotations
import logging
import os
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable, Iterator, TypeVar, Union

from .classify import parse_model
from .exceptions import AlreadyExistsError, MalformedResponseError, NotFoundError, ValidationError
from .executor import RequestExecutor, RequestSpec, api_path
from .jobs import ResultStream
from .models import BulkImportSession, BulkImportStatus, Priority

log = logging.getLogger("tdcloud")

R = TypeVar("R")

PartData = Union[bytes, bytearray, memoryview, str, os.PathLike, IO[bytes]]

UPLOAD_CHUNK_SIZE = 1024 * 1024


class SessionState(str, Enum):
    CREATED = "created"
    FROZEN = "frozen"
    PERFORMING = "performing"
    READY = "ready"
    COMMITTING = "committing"
    COMMITTED = "committed"
    DELETED = "deleted"


def session_state(session: BulkImportSession | None) -> SessionState:
    """Lifecycle state as observed from the server's session record."""
    if session is None:
        return SessionState.DELETED
    status = session.status
    if status is BulkImportStatus.PERFORMING:
        return SessionState.PERFORMING
    if status is BulkImportStatus.READY:
        return SessionState.READY
    if status is BulkImportStatus.COMMITTING:
        return SessionState.COMMITTING
    if status is BulkImportStatus.COMMITTED:
        return SessionState.COMMITTED
    return SessionState.FROZEN if session.upload_frozen else SessionState.CREATED


# -------- part payloads --------
def _iter_path(path: Path) -> Iterator[bytes]:
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(UPLOAD_CHUNK_SIZE), b""):
            yield chunk


def _iter_fileobj(f: IO[bytes], start: int) -> Iterator[bytes]:
    f.seek(start)
    for chunk in iter(lambda: f.read(UPLOAD_CHUNK_SIZE), b""):
        yield chunk


def _part_body(data: PartData) -> dict[str, Any]:
    """RequestSpec body arguments for one part; sources are re-opened per attempt."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return {"content": bytes(data)}
    if isinstance(data, (str, os.PathLike)):
        path = Path(data)
        size = path.stat().st_size
        return {
            "content_factory": lambda: _iter_path(path),
            "headers": {"Content-Length": str(size)},
        }
    if hasattr(data, "read"):
        seekable = getattr(data, "seekable", lambda: False)()
        if seekable:
            start = data.tell()
            return {"content_factory": lambda: _iter_fileobj(data, start)}
        return {
            "content_factory": lambda: iter(lambda: data.read(UPLOAD_CHUNK_SIZE), b""),
            "replayable": False,
        }
    raise ValidationError(f"unsupported part data type {type(data).__name__}", operation="upload_part")


class BulkImportController:
    """
    Bulk import session lifecycle:

        CREATED -> (upload parts) -> FROZEN -> PERFORMING -> READY -> COMMITTED

    DELETED is reachable from every state before COMMITTED. Transitions past
    FROZEN happen on the server; this controller only observes them.
    """

    def __init__(self, executor: RequestExecutor):
        self.executor = executor

    def _json(self, spec: RequestSpec) -> Any:
        return self.executor.execute_json(spec)

    # ------------ reads ------------
    def list(self) -> list[BulkImportSession]:
        spec = RequestSpec("GET", api_path("v3", "bulk_import", "list"), operation="list_bulk_import_sessions")
        data = self._json(spec)
        items = data.get("bulk_imports", []) if isinstance(data, dict) else data
        return [parse_model(BulkImportSession, x, operation=spec.operation) for x in items]

    def show(self, name: str) -> BulkImportSession:
        spec = RequestSpec(
            "GET", api_path("v3", "bulk_import", "show", name), operation="get_bulk_import_session", resource=name
        )
        return parse_model(BulkImportSession, self._json(spec), operation=spec.operation, resource=name)

    def exists(self, name: str) -> bool:
        try:
            self.show(name)
        except NotFoundError:
            return False
        return True

    def state(self, name: str) -> SessionState:
        try:
            return session_state(self.show(name))
        except NotFoundError:
            return SessionState.DELETED

    def list_parts(self, name: str) -> list[str]:
        spec = RequestSpec(
            "GET", api_path("v3", "bulk_import", "list_parts", name), operation="list_bulk_import_parts", resource=name
        )
        data = self._json(spec)
        parts = data.get("parts") if isinstance(data, dict) else None
        if parts is None:
            raise MalformedResponseError("list_parts response has no parts", operation=spec.operation, resource=name)
        return [str(p) for p in parts]

    # ------------ create ------------
    def create(self, name: str, database: str, table: str) -> None:
        spec = RequestSpec(
            "POST",
            api_path("v3", "bulk_import", "create", name, database, table),
            operation="create_bulk_import_session",
            resource=name,
        )
        self.executor.execute(spec)
        log.info("[bulk_import] created session %s for %s.%s", name, database, table)

    def create_if_not_exists(self, name: str, database: str, table: str) -> bool:
        """Create the session unless it already exists. Returns True if created."""
        if self.exists(name):
            return False
        try:
            self.create(name, database, table)
        except AlreadyExistsError:
            log.debug("[bulk_import] session %s was created concurrently", name)
            return False
        return True

    # ------------ parts ------------
    def upload_part(self, name: str, part_name: str, data: PartData) -> None:
        """Upload (or overwrite) one part. Paths and seekable files are streamed."""
        body = _part_body(data)
        headers = {"Content-Type": "application/octet-stream", **body.pop("headers", {})}
        spec = RequestSpec(
            "PUT",
            api_path("v3", "bulk_import", "upload_part", name, part_name),
            operation="upload_bulk_import_part",
            resource=f"{name}/{part_name}",
            headers=headers,
            **body,
        )
        self.executor.execute(spec)
        log.debug("[bulk_import] uploaded part %s to %s", part_name, name)

    def delete_part(self, name: str, part_name: str) -> None:
        spec = RequestSpec(
            "POST",
            api_path("v3", "bulk_import", "delete_part", name, part_name),
            operation="delete_bulk_import_part",
            resource=f"{name}/{part_name}",
        )
        self.executor.execute(spec)

    # ------------ freeze ------------
    def freeze(self, name: str) -> None:
        """Freeze the upload set. Fails if the session is already frozen."""
        state = session_state(self.show(name))
        if state is not SessionState.CREATED:
            raise ValidationError(
                f"cannot freeze a session in state {state.value}", operation="freeze_bulk_import_session", resource=name
            )
        self._freeze(name)

    def freeze_if_not_frozen(self, name: str) -> bool:
        """Freeze unless already frozen. Returns True if this call froze it."""
        if session_state(self.show(name)) is not SessionState.CREATED:
            return False
        try:
            self._freeze(name)
        except AlreadyExistsError:
            return False
        return True

    def _freeze(self, name: str) -> None:
        spec = RequestSpec(
            "POST", api_path("v3", "bulk_import", "freeze", name), operation="freeze_bulk_import_session", resource=name
        )
        self.executor.execute(spec)
        log.info("[bulk_import] froze session %s", name)

    def unfreeze(self, name: str) -> None:
        spec = RequestSpec(
            "POST",
            api_path("v3", "bulk_import", "unfreeze", name),
            operation="unfreeze_bulk_import_session",
            resource=name,
        )
        self.executor.execute(spec)
        log.info("[bulk_import] unfroze session %s", name)

    # ------------ perform / commit ------------
    def perform(self, name: str, priority: Priority | None = None) -> str:
        """
        Start server-side processing of the frozen parts and return its job id.
        Does not wait; follow the job with JobController.status/wait.
        """
        state = session_state(self.show(name))
        if state not in (SessionState.FROZEN, SessionState.READY):
            raise ValidationError(
                f"cannot perform a session in state {state.value}", operation="perform_bulk_import_session", resource=name
            )
        spec = RequestSpec(
            "POST",
            api_path("v3", "bulk_import", "perform", name),
            operation="perform_bulk_import_session",
            resource=name,
            params={"priority": int(priority)} if priority is not None else None,
            idempotent=False,
        )
        data = self._json(spec)
        job_id = data.get("job_id") if isinstance(data, dict) else None
        if job_id is None:
            raise MalformedResponseError("perform response has no job_id", operation=spec.operation, resource=name)
        log.info("[bulk_import] performing session %s as job %s", name, job_id)
        return str(job_id)

    def commit(self, name: str) -> None:
        """Commit a performed session. Committing twice is a no-op."""
        state = session_state(self.show(name))
        if state in (SessionState.COMMITTING, SessionState.COMMITTED):
            log.debug("[bulk_import] session %s already %s", name, state.value)
            return
        if state is not SessionState.READY:
            raise ValidationError(
                f"cannot commit a session in state {state.value}; perform must finish first",
                operation="commit_bulk_import_session",
                resource=name,
            )
        spec = RequestSpec(
            "POST", api_path("v3", "bulk_import", "commit", name), operation="commit_bulk_import_session", resource=name
        )
        self.executor.execute(spec)
        log.info("[bulk_import] committed session %s", name)

    # ------------ delete ------------
    def delete(self, name: str) -> None:
        spec = RequestSpec(
            "POST", api_path("v3", "bulk_import", "delete", name), operation="delete_bulk_import_session", resource=name
        )
        self.executor.execute(spec)
        log.info("[bulk_import] deleted session %s", name)

    def delete_if_exists(self, name: str) -> bool:
        try:
            self.delete(name)
        except NotFoundError:
            return False
        return True

    # ------------ error records ------------
    def error_records(self, name: str, handler: Callable[[ResultStream], R]) -> R:
        spec = RequestSpec(
            "GET",
            api_path("v3", "bulk_import", "error_records", name),
            operation="get_bulk_import_error_records",
            resource=name,
        )
        with ResultStream(name, self.executor.stream(spec), operation=spec.operation) as stream:
            return handler(stream)
