"""
Job Coordinator — owns every BatchJob and is the only writer of job state.

Each submitted batch runs on its own daemon thread with its own browser.
The engine reports back through ProgressEvents; the coordinator applies
them under the table lock, so HTTP handlers only ever read consistent
snapshots.

Lifecycle:
  starting → processing → completed | failed
  completed/failed jobs are purged `retention_seconds` after they finish,
  or immediately on reset().
"""

import logging
import math
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from lpg_batch.auth import Credentials
from lpg_batch.models import EventKind, ProgressEvent, normalize_success_limit
from lpg_batch.pipeline import LoginFailed
from lpg_batch.report import build_workbook, cleanup_old_reports, report_filename, save_report
from lpg_batch.utils import format_duration

logger = logging.getLogger("lpg_batch")

PREVIEW_SIZE = 5


class JobStatus(Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobNotFound(KeyError):
    """Unknown job id, or the job expired and was purged."""


class ReportNotReady(RuntimeError):
    """The job has not completed, produced no report, or the report was already downloaded."""


@dataclass
class BatchJob:
    id: str
    identifiers: list[str]
    success_limit: int
    status: JobStatus = JobStatus.STARTING
    processed: int = 0
    success_count: int = 0
    current: str = ""
    started_at: float = field(default_factory=time.time)
    estimated_completion_at: float = 0.0
    finished_at: float | None = None
    report_bytes: bytes | None = None
    report_filename: str | None = None
    report_path: str | None = None
    error: str | None = None

    @property
    def total(self) -> int:
        return len(self.identifiers)

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobCoordinator:
    """
    In-memory job table plus the background threads that fill it.

    Args:
        runner: callable(identifiers, success_limit, credentials, on_progress)
                returning a BatchResult; raises LoginFailed on bad credentials.
        per_item_seconds: fixed per-identifier estimate used for ETAs.
        retention_seconds: how long a finished job survives before purge.
        reports_dir: where report artifacts are persisted until downloaded.
        report_max_age: age after which stray report files are deleted.
    """

    def __init__(
        self,
        runner: Callable,
        *,
        per_item_seconds: float = 5,
        retention_seconds: int = 3600,
        reports_dir: str = "reports",
        report_max_age: int = 86_400,
        clock: Callable[[], float] = time.time,
    ):
        self._runner = runner
        self.per_item_seconds = per_item_seconds
        self.retention_seconds = retention_seconds
        self.reports_dir = reports_dir
        self.report_max_age = report_max_age
        self._clock = clock

        self._jobs: dict[str, BatchJob] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._janitor: threading.Thread | None = None

    # ── Public API ────────────────────────────────────────────────────────

    def submit(self, identifiers: list[str], success_limit, credentials: Credentials) -> str:
        """Create a job in STARTING and launch it in the background.  Returns the job id."""
        if not identifiers:
            raise ValueError("No identifiers to process")
        if not credentials:
            raise ValueError("Username and password are required")

        limit = normalize_success_limit(success_limit, len(identifiers))
        now = self._clock()
        job = BatchJob(
            id=uuid.uuid4().hex,
            identifiers=list(identifiers),
            success_limit=limit,
            started_at=now,
            estimated_completion_at=now + self.estimate_seconds(len(identifiers), limit),
        )

        thread = threading.Thread(
            target=self._run_job,
            args=(job.id, credentials),
            daemon=True,
            name=f"job-{job.id[:8]}",
        )
        with self._lock:
            self._jobs[job.id] = job
            self._threads[job.id] = thread
        thread.start()

        logger.info(f"JOB SUBMITTED  {job.id}  ({job.total} NIK(s), limit {limit})")
        return job.id

    def estimate_seconds(self, count: int, success_limit: int) -> float:
        return min(success_limit, count) * self.per_item_seconds

    def get_status(self, job_id: str) -> dict:
        """Snapshot of one job's counters and time estimates."""
        with self._lock:
            job = self._get(job_id)
            now = self._clock()
            end = job.finished_at if job.finished_at is not None else now
            elapsed = end - job.started_at
            if job.is_finished:
                remaining = 0
            else:
                remaining = max(0, job.success_limit - job.success_count) * self.per_item_seconds

            return {
                "jobId": job.id,
                "status": job.status.value,
                "processed": job.processed,
                "total": job.total,
                "current": job.current,
                "successCount": job.success_count,
                "successLimit": job.success_limit,
                "elapsed": format_duration(elapsed),
                "remaining": format_duration(remaining),
                "progress": round(job.processed / job.total * 100) if job.total else 100,
                "hasReport": job.report_bytes is not None,
            }

    def get_report(self, job_id: str) -> tuple[bytes, str]:
        """
        Hand over the report once.  The persisted file and the in-memory
        copy are both discarded after this call succeeds.
        """
        with self._lock:
            job = self._get(job_id)
            if job.status is not JobStatus.COMPLETED or job.report_bytes is None:
                raise ReportNotReady(f"No report available for job {job_id} (status={job.status.value})")

            data, filename, path = job.report_bytes, job.report_filename, job.report_path
            job.report_bytes = None
            job.report_path = None

        self._delete_artifact(path)
        logger.info(f"📥 Report downloaded: {filename} ({len(data)} bytes)")
        return data, filename

    def reset(self, job_id: str) -> bool:
        """Forget a job and its artifact.  Returns False if it was already gone."""
        with self._lock:
            job = self._jobs.pop(job_id, None)
            self._threads.pop(job_id, None)
        if job is None:
            return False
        self._delete_artifact(job.report_path)
        logger.info(f"JOB RESET      {job_id}")
        return True

    def purge_expired(self) -> int:
        """Drop finished jobs older than the retention window.  Returns how many were purged."""
        now = self._clock()
        with self._lock:
            expired = [
                job for job in self._jobs.values()
                if job.finished_at is not None and now - job.finished_at >= self.retention_seconds
            ]
            for job in expired:
                del self._jobs[job.id]
                self._threads.pop(job.id, None)

        for job in expired:
            self._delete_artifact(job.report_path)
            logger.info(f"JOB EXPIRED    {job.id}")
        return len(expired)

    def job_count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def wait(self, job_id: str, timeout: float = None) -> None:
        """Block until the job's worker thread exits (tests and the CLI use this)."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)

    def start_janitor(self, interval: int = 300) -> None:
        """Background thread: purge expired jobs and stale report files every interval seconds."""
        if self._janitor is not None:
            return

        def _loop():
            while True:
                time.sleep(interval)
                try:
                    self.purge_expired()
                    cleanup_old_reports(self.reports_dir, self.report_max_age)
                except Exception as e:
                    logger.warning(f"Janitor pass failed: {e}")

        self._janitor = threading.Thread(target=_loop, daemon=True, name="job-janitor")
        self._janitor.start()
        logger.info(f"Job janitor started (every {interval}s, retention {self.retention_seconds}s)")

    # ── Worker side ──────────────────────────────────────────────────────

    def _run_job(self, job_id: str, credentials: Credentials) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.status = JobStatus.PROCESSING
            identifiers, limit = list(job.identifiers), job.success_limit

        try:
            result = self._runner(
                identifiers, limit, credentials,
                lambda event: self._apply_progress(job_id, event),
            )
        except LoginFailed as e:
            logger.error(f"❌ Job {job_id} failed: {e}")
            self._finish(job_id, JobStatus.FAILED, error="login failed")
            return
        except Exception as e:
            logger.exception(f"❌ Job {job_id} crashed: {e}")
            self._finish(job_id, JobStatus.FAILED, error="automation error")
            return

        if result.error and not result.records:
            logger.error(f"❌ Job {job_id} produced no records: {result.error}")
            self._finish(job_id, JobStatus.FAILED, error="automation error")
            return

        try:
            data = build_workbook(result.rows())
            filename = report_filename()
            path = save_report(data, f"{job_id}-{filename}", self.reports_dir)
        except Exception as e:
            logger.exception(f"❌ Report generation failed for job {job_id}: {e}")
            self._finish(job_id, JobStatus.FAILED, error="report generation failed")
            return

        orphaned = self._finish(
            job_id, JobStatus.COMPLETED,
            report=(data, filename, path),
            success_count=result.success_count,
        )
        if orphaned:
            # Job was reset while running — nobody will download this report
            self._delete_artifact(path)
            return
        logger.info(f"🎉 Job {job_id} completed — {len(result.records)} row(s), {result.success_count} success(es)")

    def _apply_progress(self, job_id: str, event: ProgressEvent) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.processed = event.processed
            job.current = event.current
            if event.kind is EventKind.OUTCOME and event.record is not None and event.record.is_success:
                job.success_count += 1
        logger.debug(f"📊 Progress {job_id[:8]}: {event.processed} processed — {event.kind.value} {event.current}")

    def _finish(self, job_id: str, status: JobStatus, *, error=None, report=None, success_count=None) -> bool:
        """Record the terminal state.  Returns True if the job no longer exists."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return True
            job.status = status
            job.finished_at = self._clock()
            job.error = error
            job.current = ""
            if success_count is not None:
                job.success_count = success_count
            if report is not None:
                job.report_bytes, job.report_filename, job.report_path = report
            return False

    # ── Internal helpers ──────────────────────────────────────────────────

    def _get(self, job_id: str) -> BatchJob:
        """Caller must hold self._lock."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.finished_at is not None and self._clock() - job.finished_at >= self.retention_seconds:
            raise JobNotFound(job_id)
        return job

    @staticmethod
    def _delete_artifact(path: str | None) -> None:
        if not path:
            return
        try:
            os.unlink(path)
            logger.info(f"🗑️  Deleted report file: {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not delete report file {path}: {e}")


def estimated_minutes(seconds: float) -> int:
    return math.ceil(seconds / 60)
