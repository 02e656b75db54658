"""
HTTP job server — submit a NIK batch, poll its progress, download the report.

Usage:
    python -m lpg_batch.server [OPTIONS]

Options:
    --config TEXT   Path to config.yaml (default: ./config.yaml)
    --host TEXT     Bind address (default: from config, 0.0.0.0)
    --port INT      Bind port (default: from config, 3000)
"""

import argparse
import io
import logging
import time

from flask import Flask, jsonify, render_template, request as flask_request, send_file

from lpg_batch.auth import Credentials
from lpg_batch.identifiers import parse_identifiers
from lpg_batch.jobs import PREVIEW_SIZE, JobCoordinator, JobNotFound, ReportNotReady, estimated_minutes
from lpg_batch.models import normalize_success_limit
from lpg_batch.pipeline import build_runner
from lpg_batch.report import XLSX_MIMETYPE
from lpg_batch.utils import load_config, setup_logging

logger = logging.getLogger("lpg_batch")

# ── In-memory state (set at startup via configure()) ──────────────────────
_coordinator: JobCoordinator | None = None
_start_time = time.time()

# ── Flask app ─────────────────────────────────────────────────────────────
app = Flask(__name__)


def configure(coordinator: JobCoordinator) -> Flask:
    """Attach the job coordinator the routes operate on."""
    global _coordinator, _start_time
    _coordinator = coordinator
    _start_time = time.time()
    return app


def _error(message: str, status: int):
    return jsonify({"error": message}), status


# ═══════════════════════════════════════════════════════════════════════════
#  Endpoints
# ═══════════════════════════════════════════════════════════════════════════

@app.route("/", methods=["GET"])
def index():
    """Serve the batch input form."""
    return render_template("index.html")


@app.route("/health", methods=["GET"])
def health():
    """Health check — verifies the server is running."""
    uptime = int(time.time() - _start_time)
    return jsonify({"status": "ok", "uptime": uptime, "jobs": _coordinator.job_count()})


@app.route("/jobs", methods=["POST"])
def submit_job():
    """
    Start processing a batch.

    Body: {"identifiers": "<free text>", "successLimit": N?, "username": "...", "password": "..."}
    Returns: {"jobId", "count", "preview", "successLimit", "estimatedMinutes"}
    """
    body = flask_request.get_json(silent=True) or {}
    raw = body.get("identifiers", "")
    if not isinstance(raw, str):
        return _error("identifiers must be a string", 400)

    credentials = Credentials(
        username=str(body.get("username") or "").strip(),
        password=str(body.get("password") or ""),
    )
    if not credentials:
        return _error("Username and password are required", 400)

    identifiers = parse_identifiers(raw)
    if not identifiers:
        return _error("No valid NIK numbers found", 400)

    limit = normalize_success_limit(body.get("successLimit"), len(identifiers))
    job_id = _coordinator.submit(identifiers, limit, credentials)

    return jsonify({
        "jobId": job_id,
        "count": len(identifiers),
        "preview": identifiers[:PREVIEW_SIZE],
        "successLimit": limit,
        "estimatedMinutes": estimated_minutes(_coordinator.estimate_seconds(len(identifiers), limit)),
    })


@app.route("/jobs/<job_id>", methods=["GET"])
def job_status(job_id):
    """Progress snapshot for one job.  404 with status 'not_found' once expired."""
    try:
        return jsonify(_coordinator.get_status(job_id))
    except JobNotFound:
        return jsonify({"status": "not_found"}), 404


@app.route("/jobs/<job_id>/report", methods=["GET"])
def job_report(job_id):
    """Download the finished report.  The stored artifact is deleted once sent."""
    try:
        data, filename = _coordinator.get_report(job_id)
    except JobNotFound:
        return _error("Job not found", 404)
    except ReportNotReady:
        return _error("No report available", 404)

    return send_file(
        io.BytesIO(data),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=filename,
    )


@app.route("/jobs/<job_id>/reset", methods=["POST"])
def job_reset(job_id):
    """Discard a job's state and report.  Safe to call repeatedly."""
    _coordinator.reset(job_id)
    return jsonify({"success": True})


@app.errorhandler(Exception)
def _unhandled(e):
    # Raw exceptions never reach the client — only a status string
    code = getattr(e, "code", None)
    if isinstance(code, int) and 400 <= code < 600:
        return _error(getattr(e, "name", "error"), code)
    logger.exception(f"Unhandled error on {flask_request.path}: {e}")
    return _error("Internal server error", 500)


# ═══════════════════════════════════════════════════════════════════════════
#  CLI entry point
# ═══════════════════════════════════════════════════════════════════════════

def build_coordinator(config: dict) -> JobCoordinator:
    return JobCoordinator(
        build_runner(config),
        per_item_seconds=config["per_item_seconds"],
        retention_seconds=config["job_retention_seconds"],
        reports_dir=config["reports_dir"],
        report_max_age=config["report_max_age"],
    )


def main():
    parser = argparse.ArgumentParser(description="HTTP job server for LPG subsidy NIK verification")
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml (default: ./config.yaml)")
    parser.add_argument("--host", default=None, help="Bind address (default: from config)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: from config)")
    args = parser.parse_args()

    setup_logging("server")
    # No per-request access lines
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    config = load_config(args.config)
    host = args.host or config["host"]
    port = args.port or config["port"]

    coordinator = build_coordinator(config)
    coordinator.start_janitor(config["janitor_interval"])
    configure(coordinator)

    logger.info("=" * 60)
    logger.info(f"  🌐 Job server running on http://{host}:{port}")
    logger.info(f"  Portal:         {config['verify_url']}")
    logger.info(f"  Headless:       {config['headless']}")
    logger.info(f"  Reports dir:    {config['reports_dir']}")
    logger.info(f"  Job retention:  {config['job_retention_seconds']}s")
    logger.info("=" * 60)

    # Status polls are served while jobs run
    app.run(host=host, port=port, threaded=True, use_reloader=False)


if __name__ == "__main__":
    main()
