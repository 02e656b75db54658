"""
Job client — talks to the HTTP job server from another machine or the CLI.

Retry policy: 1 automatic retry on ConnectionError/Timeout with 2s backoff.
Any other transport error, or a non-2xx response, raises JobClientError
carrying the server's error string.
"""

import logging
import os
import time

import requests as _requests

logger = logging.getLogger("lpg_batch")

TERMINAL_STATUSES = ("completed", "failed", "not_found")


class JobClientError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class JobClient:
    """Thin wrapper over the /jobs endpoints."""

    _TIMEOUT = 30       # seconds per HTTP request
    _RETRY_BACKOFF = 2  # seconds to wait before retry

    def __init__(self, server_url: str, session: _requests.Session = None):
        self._base = server_url.rstrip("/")
        self._http = session or _requests.Session()

    # ── Internal helpers ──────────────────────────────────────────────────

    def _request(self, method: str, path: str, *, ok_statuses=(200,), **kwargs) -> _requests.Response:
        url = f"{self._base}{path}"
        for attempt in range(2):
            try:
                r = self._http.request(method, url, timeout=self._TIMEOUT, **kwargs)
                break
            except (_requests.ConnectionError, _requests.Timeout) as exc:
                if attempt == 0:
                    logger.warning(f"  [job-http] {method} {path} failed ({exc}), retrying in {self._RETRY_BACKOFF}s…")
                    time.sleep(self._RETRY_BACKOFF)
                else:
                    raise JobClientError(f"{method} {path} failed after retry: {exc}") from exc
            except _requests.RequestException as exc:
                raise JobClientError(f"{method} {path} error: {exc}") from exc

        if r.status_code not in ok_statuses:
            try:
                message = r.json().get("error") or r.json().get("status") or r.text
            except ValueError:
                message = r.text
            raise JobClientError(f"{method} {path} → HTTP {r.status_code}: {message}", r.status_code)
        return r

    # ── Public API ────────────────────────────────────────────────────────

    def submit(self, identifiers: str | list[str], username: str, password: str, success_limit: int = None) -> dict:
        """Start a job.  Returns the server's {jobId, count, preview, ...} payload."""
        if isinstance(identifiers, (list, tuple)):
            identifiers = "\n".join(identifiers)
        body = {"identifiers": identifiers, "username": username, "password": password}
        if success_limit:
            body["successLimit"] = success_limit
        resp = self._request("POST", "/jobs", json=body).json()
        logger.info(f"  [job-http] Submitted job {resp['jobId']} — {resp['count']} NIK(s)")
        return resp

    def status(self, job_id: str) -> dict:
        """Status snapshot.  An expired job comes back as {'status': 'not_found'}."""
        return self._request("GET", f"/jobs/{job_id}", ok_statuses=(200, 404)).json()

    def download_report(self, job_id: str, dest_dir: str = ".") -> str:
        """Save the report under dest_dir and return its path."""
        r = self._request("GET", f"/jobs/{job_id}/report")
        filename = _filename_from_disposition(r.headers.get("Content-Disposition", "")) or f"{job_id}.xlsx"
        os.makedirs(dest_dir, exist_ok=True)
        path = os.path.join(dest_dir, filename)
        with open(path, "wb") as f:
            f.write(r.content)
        logger.info(f"  [job-http] Report saved: {path}")
        return path

    def reset(self, job_id: str) -> bool:
        return bool(self._request("POST", f"/jobs/{job_id}/reset").json().get("success"))

    def wait_for_completion(self, job_id: str, poll_interval: float = 5, on_status=None) -> dict:
        """Poll until the job completes, fails or expires.  Returns the final snapshot."""
        while True:
            snapshot = self.status(job_id)
            if on_status is not None:
                on_status(snapshot)
            if snapshot.get("status") in TERMINAL_STATUSES:
                return snapshot
            time.sleep(poll_interval)


def _filename_from_disposition(header: str) -> str | None:
    """Pull filename out of 'attachment; filename=report.xlsx' (quoted or not)."""
    for part in header.split(";"):
        key, _, value = part.strip().partition("=")
        if key.lower() == "filename" and value:
            return os.path.basename(value.strip().strip('"'))
    return None
