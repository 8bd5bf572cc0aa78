#!/usr/bin/env python
"""Upload local part files into a bulk import session and commit them.

Usage:
    python scripts/bulk_import_files.py \
        --database sample_db \
        --table events \
        --session events-2024-01-01 \
        data/part-*.msgpack.gz
"""
from __future__ import annotations

import argparse
import logging
from concurrent.futures import ThreadPoolExecutor
from logging.handlers import RotatingFileHandler
from pathlib import Path

from tdcloud_client import ClientConfigBuilder, TDClient
from tdcloud_client.exceptions import TDClientError
from tdcloud_client.models import JobStatus

log = logging.getLogger("tdcloud")


def _configure_logging(log_file: str | None, verbose: bool) -> None:
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not log.handlers:
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(fmt)
        log.addHandler(stream_handler)

        if log_file:
            try:
                Path(log_file).parent.mkdir(parents=True, exist_ok=True)
                file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
                file_handler.setFormatter(fmt)
                log.addHandler(file_handler)
            except OSError as exc:
                log.warning("Failed to initialize file logging at %s: %s", log_file, exc)

    log.propagate = False


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upload part files into a bulk import session, perform and commit it."
    )
    parser.add_argument("files", nargs="+", help="Part files (msgpack.gz) to upload")
    parser.add_argument("--database", required=True, help="Target database")
    parser.add_argument("--table", required=True, help="Target table")
    parser.add_argument("--session", required=True, help="Bulk import session name")
    parser.add_argument(
        "--endpoint",
        default=None,
        help="API endpoint (default: environment / td.conf / api.treasuredata.com)",
    )
    parser.add_argument(
        "--parallel",
        type=int,
        default=4,
        help="Concurrent part uploads (default: %(default)s)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=5.0,
        help="Seconds between perform job status checks (default: %(default)s)",
    )
    parser.add_argument(
        "--no-commit",
        action="store_true",
        help="Stop after perform; leave the session ready for inspection",
    )
    parser.add_argument("--log-file", default=None, help="Also write logs to this (rotated) file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args()


def upload_parts(cli: TDClient, session: str, files: list[Path], parallel: int) -> None:
    def _one(path: Path) -> str:
        part_name = path.name.split(".", 1)[0]
        cli.upload_bulk_import_part(session, part_name, path)
        return part_name

    with ThreadPoolExecutor(max_workers=max(1, parallel)) as pool:
        for part_name in pool.map(_one, files):
            log.info("[upload] %s done", part_name)


def main() -> None:
    args = parse_args()
    _configure_logging(args.log_file, args.verbose)

    files = [Path(f) for f in args.files]
    missing = [str(f) for f in files if not f.is_file()]
    if missing:
        raise SystemExit(f"Part files not found: {', '.join(missing)}")

    builder = ClientConfigBuilder()
    if args.endpoint:
        builder.set_endpoint(args.endpoint)

    try:
        with TDClient.new_client(builder) as cli:
            cli.create_bulk_import_session_if_not_exists(args.session, args.database, args.table)
            upload_parts(cli, args.session, files, args.parallel)
            cli.bulk_imports.freeze_if_not_frozen(args.session)

            job_id = cli.perform_bulk_import_session(args.session)
            summary = cli.wait_for_job(job_id, poll_interval_s=args.poll_interval)
            if summary.status is not JobStatus.SUCCESS:
                raise SystemExit(f"Perform job {job_id} ended with status {summary.status.value}")

            session = cli.get_bulk_import_session(args.session)
            log.info(
                "[perform] %s: %s valid / %s error records",
                args.session, session.valid_records, session.error_records,
            )
            if args.no_commit:
                return
            cli.commit_bulk_import_session(args.session)
            log.info("[commit] %s committed into %s.%s", args.session, args.database, args.table)
    except TDClientError as exc:
        raise SystemExit(f"Bulk import failed: {exc}") from exc


if __name__ == "__main__":
    main()
