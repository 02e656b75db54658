"""
Command-line interface: direct browser runs and job-server submissions.

Usage:
    lpg-batch run --input niks.txt [--limit N] [--output DIR]
    lpg-batch submit --input niks.txt --server http://host:3000 [--limit N]
    python -m lpg_batch.server            # HTTP job server

`run` drives the browser directly with the credentials from config.yaml;
`submit` hands the batch to a running job server and downloads the report.
"""

import argparse
import os
import signal
import sys

from lpg_batch.auth import Credentials
from lpg_batch.client import JobClient, JobClientError
from lpg_batch.identifiers import parse_identifiers
from lpg_batch.pipeline import LoginFailed, run_verification_job
from lpg_batch.report import build_workbook, report_filename, save_report
from lpg_batch.utils import load_config, setup_logging


def _read_identifiers(path: str) -> list[str]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_identifiers(f.read())


def cmd_run(args, logger) -> int:
    config = load_config(args.config)
    credentials = Credentials(
        username=args.username or config["username"] or "",
        password=args.password or config["password"] or "",
    )
    if not credentials:
        logger.error("Missing credentials: set username/password in config.yaml or pass --username/--password")
        return 2

    identifiers = _read_identifiers(args.input)
    if not identifiers:
        logger.error(f"No valid 16-digit NIK numbers found in {args.input}")
        return 2

    logger.info("Configuration loaded:")
    logger.info(f"  Login URL:      {config['login_url']}")
    logger.info(f"  Verify URL:     {config['verify_url']}")
    logger.info(f"  NIK count:      {len(identifiers)}")
    logger.info(f"  Success limit:  {args.limit or 'all'}")
    logger.info(f"  Headless:       {config['headless']}")

    try:
        result = run_verification_job(config, identifiers, args.limit, credentials)
    except LoginFailed as e:
        logger.error(f"❌ {e}")
        return 1

    if result.error and not result.records:
        logger.error(f"❌ Batch produced no records: {result.error}")
        return 1

    output_dir = args.output or config["reports_dir"]
    path = save_report(build_workbook(result.rows()), report_filename(), output_dir)
    logger.info(f"\n✅ Done — {result.success_count} success(es), report: {path}")
    return 0 if result.error is None else 1


def cmd_submit(args, logger) -> int:
    if not args.password:
        logger.error("Missing password: pass --password or set LPG_PASSWORD")
        return 2

    identifiers = _read_identifiers(args.input)
    if not identifiers:
        logger.error(f"No valid 16-digit NIK numbers found in {args.input}")
        return 2

    client = JobClient(args.server)
    try:
        resp = client.submit(identifiers, args.username, args.password, args.limit)
        job_id = resp["jobId"]
        logger.info(f"Job {job_id} started — estimated {resp['estimatedMinutes']} minute(s)")

        def _log_status(s):
            if s.get("status") in ("starting", "processing"):
                logger.info(
                    f"📊 {s['processed']}/{s['total']} processed, "
                    f"{s['successCount']}/{s['successLimit']} success — "
                    f"elapsed {s['elapsed']}, remaining ~{s['remaining']}"
                )

        final = client.wait_for_completion(job_id, poll_interval=args.poll, on_status=_log_status)
        if final.get("status") != "completed" or not final.get("hasReport"):
            logger.error(f"❌ Job ended with status '{final.get('status')}'")
            return 1

        path = client.download_report(job_id, args.output or ".")
        client.reset(job_id)
        logger.info(f"\n✅ Done — {final['successCount']} success(es), report: {path}")
        return 0
    except JobClientError as e:
        logger.error(f"❌ {e}")
        return 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Automate LPG subsidy NIK verification batches")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Process a batch directly in a local browser")
    run_p.add_argument("--config", "-c", default=None, help="Path to config.yaml (default: ./config.yaml)")
    run_p.add_argument("--input", "-i", required=True, help="Text file with NIK numbers")
    run_p.add_argument("--limit", "-l", type=int, default=None, help="Stop after N successes")
    run_p.add_argument("--output", "-o", default=None, help="Directory for the report (default: reports_dir)")
    run_p.add_argument("--username", default=None, help="Override username from config")
    run_p.add_argument("--password", default=None, help="Override password from config")

    sub_p = sub.add_parser("submit", help="Submit a batch to a running job server")
    sub_p.add_argument("--server", "-s", default="http://localhost:3000", help="Job server URL")
    sub_p.add_argument("--input", "-i", required=True, help="Text file with NIK numbers")
    sub_p.add_argument("--limit", "-l", type=int, default=None, help="Stop after N successes")
    sub_p.add_argument("--output", "-o", default=None, help="Directory for the report (default: .)")
    sub_p.add_argument("--username", required=True)
    sub_p.add_argument("--password", default=os.environ.get("LPG_PASSWORD"),
                       help="Portal password (default: $LPG_PASSWORD)")
    sub_p.add_argument("--poll", type=float, default=5, help="Seconds between status polls")

    args = parser.parse_args(argv)
    logger = setup_logging(args.command)

    # Ctrl+C exits cleanly; an open browser is closed by the session context
    signal.signal(signal.SIGINT, _on_interrupt)

    if args.command == "run":
        return cmd_run(args, logger)
    return cmd_submit(args, logger)


def _on_interrupt(signum, frame):
    print("\n⚠ Ctrl+C pressed. Exiting...")
    sys.exit(1)
