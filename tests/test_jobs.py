"""Tests for the job coordinator: lifecycle, progress, report hand-off, expiry."""

import os
import threading

import pytest

from lpg_batch.auth import Credentials
from lpg_batch.jobs import JobCoordinator, JobNotFound, JobStatus, ReportNotReady, estimated_minutes
from lpg_batch.models import REASON_NOT_FOUND, EventKind, OutcomeRecord, ProgressEvent, StopReason
from lpg_batch.pipeline import LoginFailed
from lpg_batch.verifier import BatchResult
from tests.conftest import NIK_A, NIK_B, NIK_C

CREDS = Credentials("merchant", "pw")


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def scripted_runner(records, error=None):
    """Runner that reports each record through on_progress, then returns them."""

    def _runner(identifiers, success_limit, credentials, on_progress):
        successes = 0
        for i, record in enumerate(records):
            on_progress(ProgressEvent(EventKind.DISPATCH, i, record.identifier))
            successes += record.is_success
            on_progress(ProgressEvent(EventKind.OUTCOME, i + 1, record.identifier, record))
        return BatchResult(
            records=list(records),
            success_count=successes,
            stop_reason=StopReason.ERROR if error else StopReason.EXHAUSTED,
            error=error,
        )

    return _runner


def raising_runner(exc):
    def _runner(identifiers, success_limit, credentials, on_progress):
        raise exc

    return _runner


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_coordinator(tmp_path, clock):
    def _make(runner, **kwargs):
        kwargs.setdefault("reports_dir", str(tmp_path))
        return JobCoordinator(runner, per_item_seconds=5, clock=clock, **kwargs)

    return _make


def run_to_end(coordinator, identifiers, limit=None) -> str:
    job_id = coordinator.submit(identifiers, limit, CREDS)
    coordinator.wait(job_id, timeout=5)
    return job_id


class TestSubmit:
    def test_rejects_empty_batch(self, make_coordinator) -> None:
        coordinator = make_coordinator(scripted_runner([]))
        with pytest.raises(ValueError):
            coordinator.submit([], None, CREDS)
        assert coordinator.job_count() == 0

    def test_rejects_missing_credentials(self, make_coordinator) -> None:
        coordinator = make_coordinator(scripted_runner([]))
        with pytest.raises(ValueError):
            coordinator.submit([NIK_A], None, Credentials("merchant", ""))

    def test_ids_are_unique(self, make_coordinator) -> None:
        coordinator = make_coordinator(scripted_runner([OutcomeRecord.success(NIK_A)]))
        first = run_to_end(coordinator, [NIK_A])
        second = run_to_end(coordinator, [NIK_A])
        assert first != second
        assert coordinator.job_count() == 2

    def test_limit_normalized(self, make_coordinator) -> None:
        seen = []

        def runner(identifiers, success_limit, credentials, on_progress):
            seen.append(success_limit)
            return BatchResult()

        coordinator = make_coordinator(runner)
        run_to_end(coordinator, [NIK_A, NIK_B], limit=0)
        run_to_end(coordinator, [NIK_A, NIK_B], limit="abc")
        run_to_end(coordinator, [NIK_A, NIK_B], limit=1)
        assert seen == [2, 2, 1]


class TestLifecycle:
    def test_completed_with_report(self, make_coordinator) -> None:
        records = [OutcomeRecord.success(NIK_A, "BUDI", "Rumah Tangga"), OutcomeRecord.failure(NIK_B, REASON_NOT_FOUND)]
        coordinator = make_coordinator(scripted_runner(records))
        job_id = run_to_end(coordinator, [NIK_A, NIK_B])

        status = coordinator.get_status(job_id)
        assert status["status"] == "completed"
        assert status["processed"] == 2
        assert status["total"] == 2
        assert status["successCount"] == 1
        assert status["progress"] == 100
        assert status["remaining"] == "0:00"
        assert status["hasReport"] is True
        assert status["current"] == ""

    def test_login_failure_marks_failed(self, make_coordinator) -> None:
        coordinator = make_coordinator(raising_runner(LoginFailed("bad password")))
        job_id = run_to_end(coordinator, [NIK_A])

        status = coordinator.get_status(job_id)
        assert status["status"] == "failed"
        assert status["hasReport"] is False
        assert coordinator._jobs[job_id].error == "login failed"

    def test_unexpected_exception_marks_failed(self, make_coordinator) -> None:
        coordinator = make_coordinator(raising_runner(RuntimeError("browser crashed")))
        job_id = run_to_end(coordinator, [NIK_A])
        assert coordinator.get_status(job_id)["status"] == "failed"
        assert coordinator._jobs[job_id].error == "automation error"

    def test_error_without_records_marks_failed(self, make_coordinator) -> None:
        coordinator = make_coordinator(scripted_runner([], error="portal unavailable"))
        job_id = run_to_end(coordinator, [NIK_A])
        assert coordinator.get_status(job_id)["status"] == "failed"

    def test_partial_result_still_completes(self, make_coordinator) -> None:
        coordinator = make_coordinator(scripted_runner([OutcomeRecord.success(NIK_A)], error="page crashed"))
        job_id = run_to_end(coordinator, [NIK_A, NIK_B, NIK_C])

        status = coordinator.get_status(job_id)
        assert status["status"] == "completed"
        assert status["processed"] == 1
        assert status["hasReport"] is True

    def test_progress_visible_while_running(self, make_coordinator) -> None:
        dispatched = threading.Event()
        release = threading.Event()

        def runner(identifiers, success_limit, credentials, on_progress):
            on_progress(ProgressEvent(EventKind.DISPATCH, 0, identifiers[0]))
            on_progress(ProgressEvent(EventKind.OUTCOME, 1, identifiers[0], OutcomeRecord.success(identifiers[0])))
            on_progress(ProgressEvent(EventKind.DISPATCH, 1, identifiers[1]))
            dispatched.set()
            release.wait(5)
            return BatchResult(records=[OutcomeRecord.success(identifiers[0])], success_count=1)

        coordinator = make_coordinator(runner)
        job_id = coordinator.submit([NIK_A, NIK_B, NIK_C], None, CREDS)
        assert dispatched.wait(5)

        status = coordinator.get_status(job_id)
        assert status["status"] == "processing"
        assert status["processed"] == 1
        assert status["current"] == NIK_B
        assert status["successCount"] == 1
        assert status["progress"] == 33
        # (limit 3 - 1 success) * 5s
        assert status["remaining"] == "0:10"
        assert status["hasReport"] is False

        release.set()
        coordinator.wait(job_id, timeout=5)
        assert coordinator.get_status(job_id)["status"] == "completed"


class TestReport:
    def test_downloaded_once(self, make_coordinator, tmp_path) -> None:
        coordinator = make_coordinator(scripted_runner([OutcomeRecord.success(NIK_A)]))
        job_id = run_to_end(coordinator, [NIK_A])
        assert len(os.listdir(tmp_path)) == 1

        data, filename = coordinator.get_report(job_id)
        assert data[:2] == b"PK"
        assert filename.startswith("subsidi-tepat-lpg-report-")
        assert filename.endswith(".xlsx")
        assert os.listdir(tmp_path) == []

        with pytest.raises(ReportNotReady):
            coordinator.get_report(job_id)
        assert coordinator.get_status(job_id)["hasReport"] is False

    def test_not_ready_for_failed_job(self, make_coordinator) -> None:
        coordinator = make_coordinator(raising_runner(LoginFailed("nope")))
        job_id = run_to_end(coordinator, [NIK_A])
        with pytest.raises(ReportNotReady):
            coordinator.get_report(job_id)

    def test_unknown_job(self, make_coordinator) -> None:
        coordinator = make_coordinator(scripted_runner([]))
        with pytest.raises(JobNotFound):
            coordinator.get_report("missing")
        with pytest.raises(JobNotFound):
            coordinator.get_status("missing")


class TestConcurrentJobs:
    def test_jobs_finishing_together_keep_separate_reports(self, make_coordinator, tmp_path) -> None:
        barrier = threading.Barrier(2, timeout=5)

        def runner(identifiers, success_limit, credentials, on_progress):
            barrier.wait()
            return BatchResult(records=[OutcomeRecord.success(identifiers[0])], success_count=1)

        coordinator = make_coordinator(runner)
        job_a = coordinator.submit([NIK_A], None, CREDS)
        job_b = coordinator.submit([NIK_B], None, CREDS)
        coordinator.wait(job_a, timeout=5)
        coordinator.wait(job_b, timeout=5)

        assert coordinator.get_status(job_a)["status"] == "completed"
        assert coordinator.get_status(job_b)["status"] == "completed"
        path_a = coordinator._jobs[job_a].report_path
        path_b = coordinator._jobs[job_b].report_path
        assert path_a != path_b
        assert sorted(os.listdir(tmp_path)) == sorted([os.path.basename(path_a), os.path.basename(path_b)])

        coordinator.reset(job_a)
        assert not os.path.exists(path_a)
        assert os.path.exists(path_b)

        data, filename = coordinator.get_report(job_b)
        assert data[:2] == b"PK"
        assert filename.startswith("subsidi-tepat-lpg-report-")
        assert job_b not in filename


class TestResetAndExpiry:
    def test_reset_is_idempotent(self, make_coordinator, tmp_path) -> None:
        coordinator = make_coordinator(scripted_runner([OutcomeRecord.success(NIK_A)]))
        job_id = run_to_end(coordinator, [NIK_A])

        assert coordinator.reset(job_id) is True
        assert coordinator.reset(job_id) is False
        assert os.listdir(tmp_path) == []
        with pytest.raises(JobNotFound):
            coordinator.get_status(job_id)

    def test_reset_while_running_discards_report(self, make_coordinator, tmp_path) -> None:
        started = threading.Event()
        release = threading.Event()

        def runner(identifiers, success_limit, credentials, on_progress):
            started.set()
            release.wait(5)
            return BatchResult(records=[OutcomeRecord.success(identifiers[0])], success_count=1)

        coordinator = make_coordinator(runner)
        job_id = coordinator.submit([NIK_A], None, CREDS)
        thread = coordinator._threads[job_id]
        assert started.wait(5)

        coordinator.reset(job_id)
        release.set()
        thread.join(5)

        assert coordinator.job_count() == 0
        assert os.listdir(tmp_path) == []

    def test_finished_jobs_expire(self, make_coordinator, clock, tmp_path) -> None:
        coordinator = make_coordinator(scripted_runner([OutcomeRecord.success(NIK_A)]), retention_seconds=3600)
        job_id = run_to_end(coordinator, [NIK_A])

        clock.now += 3599
        assert coordinator.purge_expired() == 0
        assert coordinator.get_status(job_id)["status"] == "completed"

        clock.now += 1
        with pytest.raises(JobNotFound):
            coordinator.get_status(job_id)
        assert coordinator.purge_expired() == 1
        assert coordinator.job_count() == 0
        assert os.listdir(tmp_path) == []

    def test_elapsed_frozen_after_finish(self, make_coordinator, clock) -> None:
        coordinator = make_coordinator(scripted_runner([OutcomeRecord.success(NIK_A)]))
        job_id = run_to_end(coordinator, [NIK_A])
        clock.now += 90
        assert coordinator.get_status(job_id)["elapsed"] == "0:00"


class TestEstimates:
    def test_estimate_uses_smaller_of_limit_and_count(self, make_coordinator) -> None:
        coordinator = make_coordinator(scripted_runner([]))
        assert coordinator.estimate_seconds(10, 3) == 15
        assert coordinator.estimate_seconds(2, 5) == 10

    def test_estimated_minutes_rounds_up(self) -> None:
        assert estimated_minutes(0) == 0
        assert estimated_minutes(15) == 1
        assert estimated_minutes(60) == 1
        assert estimated_minutes(61) == 2

    def test_job_status_values(self) -> None:
        assert [s.value for s in JobStatus] == ["starting", "processing", "completed", "failed"]
