from __future__ import annotations

import threading
import time

import httpx
import pytest

from tdcloud_client.backoff import BackoffPolicy
from tdcloud_client.config import ClientConfig
from tdcloud_client.exceptions import (
    AmbiguousOutcomeError,
    AuthError,
    ClientClosedError,
    MalformedResponseError,
    OperationCancelledError,
    RetriesExhaustedError,
    ServerError,
    TransportError,
)
from tdcloud_client.executor import RequestExecutor, RequestSpec, api_path
from tdcloud_client.pool import SharedHttpPool

from fake_service import TrackingStream


class _Script:
    """Replays outcomes in order; the last one repeats forever."""

    def __init__(self, *outcomes, headers=None):
        self.outcomes = list(outcomes)
        self.headers = headers or {}
        self.calls = 0
        self.bodies: list[bytes] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        self.bodies.append(request.content)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("boom", request=request)
        if outcome == 200:
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(outcome, json={"message": "failed"}, headers=self.headers)


def _setup(script, **cfg):
    settings = {"endpoint": "api.test", "retry_limit": 3, "retry_initial_interval_ms": 1, "retry_max_interval_ms": 2}
    settings.update(cfg)
    config = ClientConfig(**settings)
    pool = SharedHttpPool(config, transport=httpx.MockTransport(script))
    return RequestExecutor(pool, BackoffPolicy.from_config(config)), pool


def _get(**kw):
    return RequestSpec("GET", api_path("v3", "database", "list"), operation="list_databases", **kw)


def _post(**kw):
    return RequestSpec("POST", api_path("v3", "job", "issue", "presto", "db"), operation="submit_job", **kw)


def test_api_path_escapes_each_segment():
    assert api_path("v3", "table", "list", "my db/x") == "/v3/table/list/my%20db%2Fx"


def test_persistent_server_error_exhausts_retries():
    script = _Script(503)
    executor, _ = _setup(script, retry_limit=3)

    with pytest.raises(RetriesExhaustedError) as ei:
        executor.execute(_get())

    assert script.calls == 4
    assert ei.value.attempts == 4
    assert isinstance(ei.value.last_error, ServerError)
    assert ei.value.operation == "list_databases"


def test_zero_retry_limit_sends_once():
    script = _Script(503)
    executor, _ = _setup(script, retry_limit=0)
    with pytest.raises(RetriesExhaustedError):
        executor.execute(_get())
    assert script.calls == 1


def test_transient_failures_then_success():
    script = _Script(503, httpx.ReadTimeout, 200)
    executor, _ = _setup(script)
    assert executor.execute_json(_get()) == {"ok": True}
    assert script.calls == 3


def test_auth_failure_is_not_retried():
    script = _Script(403)
    executor, _ = _setup(script)
    with pytest.raises(AuthError):
        executor.execute(_get())
    assert script.calls == 1


def test_lost_response_on_non_idempotent_request_is_ambiguous():
    script = _Script(httpx.ReadTimeout, 200)
    executor, _ = _setup(script)

    with pytest.raises(AmbiguousOutcomeError) as ei:
        executor.execute(_post(idempotent=False, domain_key="k-1"))

    assert script.calls == 1
    assert ei.value.domain_key == "k-1"


def test_at_least_once_opt_in_resends_after_lost_response():
    script = _Script(httpx.ReadTimeout, 200)
    executor, _ = _setup(script)
    executor.execute(_post(idempotent=False, at_least_once=True))
    assert script.calls == 2


def test_connect_failure_is_retried_even_when_not_idempotent():
    script = _Script(httpx.ConnectError, 200)
    executor, _ = _setup(script)
    executor.execute(_post(idempotent=False))
    assert script.calls == 2


def test_server_error_on_non_idempotent_request_is_retried():
    script = _Script(503, 200)
    executor, _ = _setup(script)
    executor.execute(_post(idempotent=False))
    assert script.calls == 2


def test_retry_after_overrides_backoff():
    script = _Script(429, 200, headers={"Retry-After": "0"})
    executor, _ = _setup(script, retry_initial_interval_ms=60_000, retry_max_interval_ms=60_000)

    started = time.monotonic()
    executor.execute(_get())

    assert script.calls == 2
    assert time.monotonic() - started < 5


def test_each_attempt_rebuilds_streamed_body():
    script = _Script(503, 200)
    executor, _ = _setup(script)
    spec = RequestSpec(
        "PUT", "/v3/bulk_import/upload_part/s/p1", operation="upload_part",
        content_factory=lambda: iter([b"abc", b"def"]),
    )
    executor.execute(spec)
    assert script.bodies == [b"abcdef", b"abcdef"]


def test_one_shot_body_is_not_resent():
    script = _Script(503, 200)
    executor, _ = _setup(script)
    spec = RequestSpec(
        "PUT", "/v3/bulk_import/upload_part/s/p1", operation="upload_part",
        content_factory=lambda: iter([b"abc"]), replayable=False,
    )
    with pytest.raises(ServerError):
        executor.execute(spec)
    assert script.calls == 1


def test_cancel_interrupts_backoff_sleep():
    script = _Script(503)
    executor, _ = _setup(script, retry_initial_interval_ms=30_000, retry_max_interval_ms=30_000)
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()

    started = time.monotonic()
    with pytest.raises(OperationCancelledError):
        executor.execute(_get(), cancel=cancel)
    assert time.monotonic() - started < 5


def test_pool_close_interrupts_backoff_sleep():
    script = _Script(503)
    executor, pool = _setup(script, retry_initial_interval_ms=30_000, retry_max_interval_ms=30_000)
    threading.Timer(0.05, pool.close).start()

    with pytest.raises(ClientClosedError):
        executor.execute(_get())


def test_closed_pool_rejects_new_requests():
    script = _Script(200)
    executor, pool = _setup(script)
    pool.close()
    pool.close()
    with pytest.raises(ClientClosedError):
        executor.execute(_get())
    assert script.calls == 0


def test_stream_returns_open_response():
    body = TrackingStream(b"a\t1\nb\t2\n")
    executor, _ = _setup(lambda request: httpx.Response(200, stream=body))

    response = executor.stream(_get())
    assert not response.is_closed
    assert body.close_count == 0

    response.close()
    assert response.is_closed
    assert body.close_count == 1


class _CorruptGzip:
    """Answers with a gzip-labelled body that is not gzip; "ok" answers cleanly."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.bodies: list[TrackingStream] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        status = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if status == "ok":
            return httpx.Response(200, json={"ok": True})
        body = TrackingStream(b"not-gzip")
        self.bodies.append(body)
        return httpx.Response(status, headers={"Content-Encoding": "gzip"}, stream=body)


def test_undecodable_success_body_is_malformed():
    script = _CorruptGzip(200)
    executor, _ = _setup(script)

    with pytest.raises(MalformedResponseError) as ei:
        executor.execute(_get())

    assert script.calls == 1
    assert ei.value.status_code == 200
    assert isinstance(ei.value.__cause__, httpx.DecodingError)
    assert [b.close_count for b in script.bodies] == [1]


def test_undecodable_server_error_is_still_retried():
    script = _CorruptGzip(503)
    executor, _ = _setup(script, retry_limit=2)

    with pytest.raises(RetriesExhaustedError) as ei:
        executor.execute(_get())

    assert script.calls == 3
    assert isinstance(ei.value.last_error, ServerError)
    assert ei.value.last_error.status_code == 503
    assert all(b.close_count == 1 for b in script.bodies)


def test_undecodable_server_error_then_success():
    script = _CorruptGzip(503, "ok")
    executor, _ = _setup(script)
    assert executor.execute_json(_get()) == {"ok": True}
    assert script.calls == 2


def test_infinite_retry_after_falls_back_to_backoff():
    script = _Script(429, 200, headers={"Retry-After": "inf"})
    executor, _ = _setup(script)

    started = time.monotonic()
    executor.execute(_get())

    assert script.calls == 2
    assert time.monotonic() - started < 5


def test_transport_error_subclass_keeps_cause():
    script = _Script(httpx.ReadTimeout)
    executor, _ = _setup(script, retry_limit=0)
    with pytest.raises(RetriesExhaustedError) as ei:
        executor.execute(_get())
    assert isinstance(ei.value.last_error, TransportError)
    assert isinstance(ei.value.__cause__, TransportError)
