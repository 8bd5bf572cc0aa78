# tdcloud_client/jobs.py
from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Iterator, TypeVar

import httpx

from .classify import parse_model
from .exceptions import (
    AlreadyExistsError,
    AmbiguousOutcomeError,
    MalformedResponseError,
    NotFoundError,
    OperationCancelledError,
    StreamConsumedError,
    TransportError,
)
from .executor import RequestExecutor, RequestSpec, api_path, interruptible_sleep
from .models import Job, JobList, JobRequest, JobStatus, JobSummary, ResultFormat

log = logging.getLogger("tdcloud")

R = TypeVar("R")

DEFAULT_POLL_INTERVAL_S = 2.0


class ResultStream:
    """
    A streamed payload (job results, bulk import error records).

    The underlying connection is released exactly once: when the payload is
    fully consumed, when iteration raises, or on close() / context exit,
    whichever comes first. A stream for an unfinished job is empty and holds
    no connection at all.
    """

    def __init__(self, resource: str, response: httpx.Response | None = None, *, operation: str = "job_result"):
        self.resource = resource
        self.operation = operation
        self._response = response
        self._lock = threading.Lock()
        self._released = response is None
        self._started = False

    @classmethod
    def empty(cls, resource: str) -> "ResultStream":
        return cls(resource, None)

    @property
    def closed(self) -> bool:
        return self._released

    def iter_bytes(self, chunk_size: int | None = None) -> Iterator[bytes]:
        """Yield the payload once. A second pass raises StreamConsumedError."""
        with self._lock:
            started, self._started = self._started, True
        if started:
            raise StreamConsumedError(
                "result stream can only be read once", operation=self.operation, resource=self.resource
            )
        if self._released:
            return
        try:
            for chunk in self._response.iter_bytes(chunk_size):
                yield chunk
        except httpx.TransportError as e:
            raise TransportError(
                f"result stream interrupted: {e}", operation=self.operation, resource=self.resource
            ) from e
        except httpx.DecodingError as e:
            raise MalformedResponseError(
                f"result stream could not be decoded: {e}", operation=self.operation, resource=self.resource
            ) from e
        finally:
            self.close()

    def __iter__(self) -> Iterator[bytes]:
        return self.iter_bytes()

    def read(self) -> bytes:
        return b"".join(self.iter_bytes())

    def close(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._response.close()
        log.debug("[job] released %s stream for %s", self.operation, self.resource)

    def __enter__(self) -> "ResultStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class JobController:
    """
    Submit / poll / kill / fetch results of asynchronous query jobs.
    Job state is only ever what the server last reported.
    """

    def __init__(self, executor: RequestExecutor):
        self.executor = executor

    # ------------ submit ------------
    def submit(self, request: JobRequest, *, at_least_once: bool = False) -> str:
        spec = RequestSpec(
            "POST",
            api_path("v3", "job", "issue", request.type.value, request.database),
            operation="submit_job",
            resource=request.database,
            json=request.to_body(),
            idempotent=False,
            at_least_once=at_least_once,
            domain_key=request.domain_key,
        )
        try:
            data = self.executor.execute_json(spec)
        except (AmbiguousOutcomeError, AlreadyExistsError) as e:
            # only a correlation token can tell whether the first send landed
            if not request.domain_key:
                raise
            log.warning("[job] submit outcome unknown (%s); looking up domain_key=%s", e.kind, request.domain_key)
            job = self.find_by_domain_key(request.domain_key)
            if job is None:
                raise
            log.info("[job] recovered job %s for domain_key=%s", job.job_id, request.domain_key)
            return job.job_id

        job_id = data.get("job_id") if isinstance(data, dict) else None
        if job_id is None:
            raise MalformedResponseError("submit response has no job_id", operation="submit_job", resource=request.database)
        log.info("[job] submitted %s job %s on %s", request.type.value, job_id, request.database)
        return str(job_id)

    def find_by_domain_key(self, domain_key: str) -> Job | None:
        spec = RequestSpec(
            "GET", api_path("v3", "job", "show_by_domain_key", domain_key),
            operation="find_job_by_domain_key", resource=domain_key,
        )
        try:
            data = self.executor.execute_json(spec)
        except NotFoundError:
            return None
        return parse_model(Job, data, operation=spec.operation, resource=domain_key)

    # ------------ reads ------------
    def status(self, job_id: str) -> JobSummary:
        spec = RequestSpec("GET", api_path("v3", "job", "status", job_id), operation="job_status", resource=job_id)
        return parse_model(JobSummary, self.executor.execute_json(spec), operation=spec.operation, resource=job_id)

    def info(self, job_id: str) -> Job:
        spec = RequestSpec("GET", api_path("v3", "job", "show", job_id), operation="job_info", resource=job_id)
        return parse_model(Job, self.executor.execute_json(spec), operation=spec.operation, resource=job_id)

    def list(self, from_id: int | None = None, to_id: int | None = None) -> JobList:
        params = {}
        if from_id is not None:
            params["from_id"] = from_id
        if to_id is not None:
            params["to_id"] = to_id
        spec = RequestSpec("GET", api_path("v3", "job", "list"), operation="list_jobs", params=params or None)
        return parse_model(JobList, self.executor.execute_json(spec), operation=spec.operation)

    # ------------ kill ------------
    def kill(self, job_id: str) -> JobStatus | None:
        """Kill a job; returns the status it had before. Finished jobs are left as they are."""
        spec = RequestSpec("POST", api_path("v3", "job", "kill", job_id), operation="kill_job", resource=job_id)
        try:
            data = self.executor.execute_json(spec)
        except AlreadyExistsError:
            # conflict: the job already reached a terminal state
            former = self.status(job_id).status
            log.info("[job] %s already finished (%s); nothing to kill", job_id, former.value)
            return former
        former = data.get("former_status") if isinstance(data, dict) else None
        log.info("[job] kill requested for %s (former status %s)", job_id, former)
        return JobStatus(former) if former else None

    # ------------ results ------------
    def result(self, job_id: str, fmt: ResultFormat | str = ResultFormat.TSV) -> ResultStream:
        """
        Open the job's result. Returns an empty stream when the job has not
        (successfully) finished yet; poll status() until terminal first.
        """
        summary = self.status(job_id)
        if summary.status is not JobStatus.SUCCESS:
            log.debug("[job] %s is %s; returning empty result", job_id, summary.status.value)
            return ResultStream.empty(job_id)
        spec = RequestSpec(
            "GET",
            api_path("v3", "job", "result", job_id),
            operation="job_result",
            resource=job_id,
            params={"format": ResultFormat(fmt).value},
        )
        return ResultStream(job_id, self.executor.stream(spec))

    def result_with(
        self,
        job_id: str,
        fmt: ResultFormat | str,
        handler: Callable[[ResultStream], R],
    ) -> R:
        with self.result(job_id, fmt) as stream:
            return handler(stream)

    def wait(
        self,
        job_id: str,
        *,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        timeout_s: float | None = None,
        cancel: threading.Event | None = None,
    ) -> JobSummary:
        """Poll until the job reaches a terminal state. Never kills or resubmits."""
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        while True:
            summary = self.status(job_id)
            if summary.is_finished:
                log.info("[job] %s finished with status %s", job_id, summary.status.value)
                return summary
            pause = poll_interval_s
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise OperationCancelledError(
                        f"job still {summary.status.value} after {timeout_s}s", operation="wait_job", resource=job_id
                    )
                pause = min(pause, remaining)
            interruptible_sleep(pause, self.executor.pool.closed_event, cancel, operation="wait_job")
