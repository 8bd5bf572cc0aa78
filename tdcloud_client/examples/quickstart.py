# tdcloud_client/examples/quickstart.py
from tdcloud_client import ClientConfigBuilder, TDClient, models as M

# api key from TD_API_KEY or ~/.td/td.conf
with TDClient.new_client(ClientConfigBuilder()) as cli:
    print("Server:", cli.server_status())

    # 1) database + table
    cli.create_database_if_not_exists("sdk_demo")
    cli.create_table_if_not_exists("sdk_demo", "events")
    cli.update_table_schema("sdk_demo", "events", ["user:string", "score:double", "tags:array<string>"])

    # 2) query
    job_id = cli.submit(M.JobRequest.new_presto_query("sdk_demo", "select count(1) from events"))
    print("Job:", job_id)

    # 3) wait + fetch
    summary = cli.wait_for_job(job_id, poll_interval_s=2.0)
    print("Status:", summary.status.value)
    rows = cli.job_result(job_id, M.ResultFormat.CSV, handler=lambda s: s.read().decode())
    print(rows)
