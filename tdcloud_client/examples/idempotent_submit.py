# tdcloud_client/examples/idempotent_submit.py
import threading

from tdcloud_client import ClientConfigBuilder, TDClient, models as M
from tdcloud_client.exceptions import AmbiguousOutcomeError

builder = ClientConfigBuilder().set_retry_limit(3)

with TDClient.new_client(builder) as cli:
    # a stable domain_key lets a lost submit response be resolved to the job it created
    req = M.JobRequest.new_hive_query(
        "sdk_demo", "insert into daily select * from events", domain_key="daily-rollup-2024-01-01"
    )
    try:
        job_id = cli.submit(req)
    except AmbiguousOutcomeError as exc:
        raise SystemExit(f"Could not tell whether the job was created: {exc}")

    cancel = threading.Event()
    summary = cli.wait_for_job(job_id, poll_interval_s=5.0, timeout_s=3600, cancel=cancel)
    print(job_id, summary.status.value)
