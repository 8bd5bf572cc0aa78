from __future__ import annotations

import threading

import httpx
import pytest

from fake_service import TrackingStream
from tdcloud_client.exceptions import (
    AmbiguousOutcomeError,
    MalformedResponseError,
    NotFoundError,
    OperationCancelledError,
    StreamConsumedError,
)
from tdcloud_client.jobs import ResultStream
from tdcloud_client.models import JobRequest, JobStatus, ResultFormat


def _setup(client, service):
    client.create_database("sample")
    return JobRequest.new_presto_query("sample", "select 1")


def test_submit_and_inspect(client, service):
    request = _setup(client, service)
    job_id = client.submit(request)

    assert client.job_status(job_id).status is JobStatus.QUEUED
    info = client.job_info(job_id)
    assert info.database == "sample"
    assert info.query == "select 1"
    assert [j.job_id for j in client.list_jobs().jobs] == [job_id]


def test_result_before_completion_is_empty_and_holds_no_connection(client, service):
    job_id = service.add_job(status="running", result=b"a\t1\n")

    with client.job_result(job_id) as stream:
        assert stream.read() == b""
        assert stream.closed
    assert service.count("GET", "/v3/job/result") == 0


def test_result_released_exactly_once(client, service):
    job_id = service.add_job(status="success", result=b"a\t1\nb\t2\n")

    stream = client.job_result(job_id, ResultFormat.CSV)
    assert b"".join(stream) == b"a\t1\nb\t2\n"
    stream.close()
    stream.close()

    [tracked] = service.result_streams
    assert tracked.close_count == 1


def test_result_released_when_abandoned_midway(client, service):
    job_id = service.add_job(status="success", result=b"0123456789" * 10)

    with client.job_result(job_id) as stream:
        first = next(iter(stream))
        assert first == b"0123"

    [tracked] = service.result_streams
    assert tracked.close_count == 1


def test_result_cannot_be_read_twice(client, service):
    job_id = service.add_job(status="success", result=b"0123456789")

    with client.job_result(job_id) as stream:
        chunks = iter(stream)
        assert next(chunks) == b"0123"
        with pytest.raises(StreamConsumedError):
            stream.read()
        assert b"".join(chunks) == b"456789"
        with pytest.raises(StreamConsumedError):
            list(stream)

    [tracked] = service.result_streams
    assert tracked.close_count == 1


def test_undecodable_result_is_malformed_and_released():
    body = TrackingStream(b"not-gzip")
    response = httpx.Response(
        200,
        headers={"Content-Encoding": "gzip"},
        stream=body,
        request=httpx.Request("GET", "https://api.test/v3/job/result/7"),
    )
    stream = ResultStream("7", response)

    with pytest.raises(MalformedResponseError) as e:
        stream.read()
    assert isinstance(e.value.__cause__, httpx.DecodingError)
    assert stream.closed
    assert body.close_count == 1


def test_result_handler_receives_stream(client, service):
    job_id = service.add_job(status="success", result=b"x,y\n")
    rows = client.job_result(job_id, "csv", handler=lambda s: s.read().splitlines())
    assert rows == [b"x,y"]
    assert service.result_streams[0].close_count == 1


def test_ambiguous_submit_without_domain_key_is_surfaced(client, service):
    request = _setup(client, service)
    service.fail("POST", "/v3/job/issue", exc=httpx.ReadTimeout, after=True)

    with pytest.raises(AmbiguousOutcomeError):
        client.submit(request)
    assert service.count("POST", "/v3/job/issue") == 1
    assert len(service.jobs) == 1


def test_ambiguous_submit_recovered_through_domain_key(client, service):
    request = _setup(client, service).model_copy(update={"domain_key": "nightly-2024-01-01"})
    service.fail("POST", "/v3/job/issue", exc=httpx.ReadTimeout, after=True)

    job_id = client.submit(request)

    assert service.count("POST", "/v3/job/issue") == 1
    assert list(service.jobs) == [job_id]


def test_duplicate_domain_key_returns_existing_job(client, service):
    request = _setup(client, service).model_copy(update={"domain_key": "k"})
    first = client.submit(request)
    assert client.submit(request) == first
    assert len(service.jobs) == 1


def test_lost_submit_that_never_landed_is_still_ambiguous(client, service):
    request = _setup(client, service).model_copy(update={"domain_key": "k"})
    service.fail("POST", "/v3/job/issue", exc=httpx.ReadTimeout)

    with pytest.raises(AmbiguousOutcomeError) as ei:
        client.submit(request)
    assert ei.value.domain_key == "k"
    assert not service.jobs


def test_kill_running_and_finished_jobs(client, service):
    running = service.add_job(status="running")
    done = service.add_job(status="success")

    assert client.kill_job(running) is JobStatus.RUNNING
    assert client.job_status(running).status is JobStatus.KILLED
    assert client.kill_job(done) is JobStatus.SUCCESS
    assert client.job_status(done).status is JobStatus.SUCCESS


def test_unknown_job_is_not_found(client, service):
    with pytest.raises(NotFoundError):
        client.job_status("999999")


def test_wait_returns_terminal_summary(client, service):
    job_id = service.add_job(status="running")
    threading.Timer(0.05, service.set_job_status, args=(job_id, "error")).start()

    summary = client.wait_for_job(job_id, poll_interval_s=0.01, timeout_s=10)
    assert summary.status is JobStatus.ERROR


def test_wait_times_out(client, service):
    job_id = service.add_job(status="running")
    with pytest.raises(OperationCancelledError):
        client.wait_for_job(job_id, poll_interval_s=0.01, timeout_s=0.05)


def test_unrecognised_status_is_not_terminal(client, service):
    job_id = service.add_job(status="resuming")
    summary = client.job_status(job_id)
    assert summary.status is JobStatus.UNKNOWN
    assert not summary.is_finished
