# tdcloud_client/executor.py
from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import quote

import httpx

from .backoff import BackoffPolicy
from .classify import classify_response, classify_transport, decode_json
from .exceptions import (
    AmbiguousOutcomeError,
    ClientClosedError,
    MalformedResponseError,
    OperationCancelledError,
    RateLimitedError,
    RetriesExhaustedError,
    TDClientError,
)
from .pool import SharedHttpPool

log = logging.getLogger("tdcloud")

# Upper bound on how long a backoff sleep goes without re-checking cancellation
WAKEUP_SLICE_S = 0.1


def api_path(*segments: Any) -> str:
    """Join path segments, escaping each one (names may contain "/" or spaces)."""
    return "/" + "/".join(quote(str(s), safe="") for s in segments)


@dataclass(frozen=True)
class RequestSpec:
    """Everything needed to (re)send one logical request."""

    method: str
    path: str
    operation: str
    resource: str | None = None
    params: Mapping[str, Any] | None = None
    headers: Mapping[str, str] | None = None
    json: Any = None
    content: bytes | None = None
    # re-opened for every attempt so retries never resume a half-read source
    content_factory: Callable[[], Iterable[bytes]] | None = None
    idempotent: bool = True
    at_least_once: bool = False
    # False when the body comes from a one-shot stream that cannot be re-sent
    replayable: bool = True
    domain_key: str | None = None


@dataclass
class Attempt:
    index: int = 0
    elapsed_wait_ms: float = 0.0
    last_error: TDClientError | None = None


def interruptible_sleep(
    seconds: float,
    pool_closed: threading.Event,
    cancel: threading.Event | None = None,
    *,
    operation: str | None = None,
) -> None:
    """Sleep, waking early with an error when the pool closes or `cancel` is set."""
    waiter = cancel if cancel is not None else pool_closed
    deadline = time.monotonic() + max(0.0, seconds)
    while True:
        if pool_closed.is_set():
            raise ClientClosedError("client closed while waiting to retry", operation=operation)
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError("cancelled by caller", operation=operation)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        waiter.wait(min(remaining, WAKEUP_SLICE_S))


class RequestExecutor:
    """
    Sends a RequestSpec, classifying failures and retrying the retryable ones
    with exponential backoff. Safe to share between threads; all mutable state
    lives in the per-call Attempt record.
    """

    def __init__(
        self,
        pool: SharedHttpPool,
        backoff: BackoffPolicy,
        *,
        headers: Mapping[str, str] | None = None,
    ):
        self.pool = pool
        self.backoff = backoff
        self.headers = dict(headers or {})

    # ------------ public ------------
    def execute(self, spec: RequestSpec, *, cancel: threading.Event | None = None) -> httpx.Response:
        """Return a fully read response; its connection is already released."""
        return self._run(spec, stream=False, cancel=cancel)

    def execute_json(self, spec: RequestSpec, *, cancel: threading.Event | None = None) -> Any:
        r = self.execute(spec, cancel=cancel)
        return decode_json(r, operation=spec.operation, resource=spec.resource)

    def stream(self, spec: RequestSpec, *, cancel: threading.Event | None = None) -> httpx.Response:
        """Return an open streaming response. The caller must close it."""
        return self._run(spec, stream=True, cancel=cancel)

    # ------------ retry loop ------------
    def _run(self, spec: RequestSpec, *, stream: bool, cancel: threading.Event | None) -> httpx.Response:
        attempt = Attempt()
        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelledError("cancelled by caller", operation=spec.operation, resource=spec.resource)
            client = self.pool.client

            response: httpx.Response | None = None
            handed_off = False
            cause: BaseException | None = None
            try:
                response = client.send(self._build_request(client, spec), stream=True)
                if response.is_success:
                    if not stream:
                        self._read_success(response, spec)
                    handed_off = stream
                    if attempt.index:
                        log.info("[retry] %s succeeded on attempt %d", spec.operation, attempt.index + 1)
                    return response
                try:
                    response.read()
                    detail = None
                except httpx.DecodingError:
                    # undecodable error body; the status alone decides
                    detail = response.reason_phrase or "undecodable response body"
                error = classify_response(response, operation=spec.operation, resource=spec.resource, detail=detail)
            except httpx.TransportError as e:
                cause = e
                error = classify_transport(e, operation=spec.operation, resource=spec.resource)
                if error.request_sent and not spec.idempotent and not spec.at_least_once:
                    log.error("[retry] %s interrupted after sending: %s", spec.operation, error.detail)
                    raise AmbiguousOutcomeError(
                        f"request may have been applied before the failure ({error.detail}); not resubmitting",
                        domain_key=spec.domain_key,
                        operation=spec.operation,
                        resource=spec.resource,
                    ) from e
            except httpx.DecodingError as e:
                # body pre-read by the transport and not decodable; status is unknown here
                raise MalformedResponseError(
                    f"response body could not be decoded: {e}", operation=spec.operation, resource=spec.resource
                ) from e
            except RuntimeError as e:
                # httpx refuses to send on a client closed by another thread
                if self.pool.closed:
                    raise ClientClosedError(
                        "connection pool has been closed", operation=spec.operation, resource=spec.resource
                    ) from e
                raise
            finally:
                if response is not None and not handed_off:
                    response.close()

            attempt.last_error = error
            if not error.retryable or not spec.replayable:
                if cause is not None:
                    raise error from cause
                raise error
            if not self.backoff.can_retry(attempt.index):
                log.error(
                    "[retry] %s gave up after %d attempts (waited %.0f ms): %s",
                    spec.operation, attempt.index + 1, attempt.elapsed_wait_ms, error,
                )
                raise RetriesExhaustedError(error, attempts=attempt.index + 1) from error

            wait_ms = self._wait_ms(attempt.index, error)
            log.warning(
                "[retry] %s attempt %d failed (%s); retrying in %.0f ms",
                spec.operation, attempt.index + 1, error.kind, wait_ms,
            )
            interruptible_sleep(wait_ms / 1000.0, self.pool.closed_event, cancel, operation=spec.operation)
            attempt.elapsed_wait_ms += wait_ms
            attempt.index += 1

    @staticmethod
    def _read_success(response: httpx.Response, spec: RequestSpec) -> None:
        try:
            response.read()
        except httpx.DecodingError as e:
            raise MalformedResponseError(
                f"response body could not be decoded: {e}",
                operation=spec.operation,
                resource=spec.resource,
                status_code=response.status_code,
            ) from e

    def _wait_ms(self, attempt: int, error: TDClientError) -> float:
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return error.retry_after * 1000.0
        return self.backoff.wait_ms(attempt)

    def _build_request(self, client: httpx.Client, spec: RequestSpec) -> httpx.Request:
        content: Any = spec.content
        if spec.content_factory is not None:
            content = spec.content_factory()
        headers = {**self.headers, **(spec.headers or {})}
        return client.build_request(
            spec.method,
            spec.path,
            params=spec.params,
            headers=headers,
            json=spec.json,
            content=content,
        )
