"""
Tests for the job state machine, job model and registry.

Terminal states (done, error, partial_success) are immutable.
"""

import re
from datetime import datetime, timedelta, timezone

import pytest

from render_gateway.jobs.errors import InvalidStateTransitionError, JobNotFoundError
from render_gateway.jobs.models import (
    LOGS_TAIL_CHARS,
    MAX_LOG_LINES,
    ApiError,
    Job,
    JobKind,
    JobStatus,
    new_job_id,
)
from render_gateway.jobs.registry import JobRegistry
from render_gateway.jobs.state import can_transition_job, is_job_terminal, validate_job_transition

TERMINAL = [JobStatus.DONE, JobStatus.ERROR, JobStatus.PARTIAL_SUCCESS]


def make_job(**kwargs) -> Job:
    fields = {"kind": JobKind.EXECUTE, "source_path": "/data/uploads/a.mp4"}
    fields.update(kwargs)
    return Job(**fields)


# =============================================================================
# State machine
# =============================================================================

class TestTransitions:

    @pytest.mark.parametrize(
        "src,dst",
        [
            (JobStatus.QUEUED, JobStatus.RUNNING),
            (JobStatus.RUNNING, JobStatus.DONE),
            (JobStatus.RUNNING, JobStatus.ERROR),
            (JobStatus.RUNNING, JobStatus.PARTIAL_SUCCESS),
            (JobStatus.QUEUED, JobStatus.ERROR),
            (JobStatus.RUNNING, JobStatus.RUNNING),
        ],
    )
    def test_allowed(self, src, dst):
        assert can_transition_job(src, dst)

    @pytest.mark.parametrize(
        "src,dst",
        [
            (JobStatus.QUEUED, JobStatus.DONE),
            (JobStatus.QUEUED, JobStatus.PARTIAL_SUCCESS),
            (JobStatus.RUNNING, JobStatus.QUEUED),
        ],
    )
    def test_forbidden(self, src, dst):
        assert not can_transition_job(src, dst)

    @pytest.mark.parametrize("terminal", TERMINAL)
    @pytest.mark.parametrize("target", list(JobStatus))
    def test_terminal_states_never_change(self, terminal, target):
        assert is_job_terminal(terminal)
        assert not can_transition_job(terminal, target)

    def test_validate_raises_with_states(self):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_job_transition(JobStatus.DONE, JobStatus.ERROR)

        assert exc_info.value.current_state == "done"
        assert exc_info.value.target_state == "error"


# =============================================================================
# Job model
# =============================================================================

class TestJobModel:

    def test_job_id_format(self):
        assert re.fullmatch(r"job_\d{13}_[0-9a-f]{8}", new_job_id())

    def test_job_ids_are_unique(self):
        assert len({new_job_id() for _ in range(200)}) == 200

    def test_log_buffer_is_capped(self):
        job = make_job()
        for i in range(MAX_LOG_LINES + 25):
            job.append_log(f"line {i}")

        assert len(job.logs) == MAX_LOG_LINES
        assert job.logs[0] == "line 25"

    def test_logs_tail_is_bounded(self):
        job = make_job()
        for i in range(200):
            job.append_log(f"{i:04d} " + "x" * 40)

        assert len(job.logs_tail) == LOGS_TAIL_CHARS
        assert job.logs_tail.endswith("x" * 40)

    def test_status_response_omits_unset_fields(self):
        body = make_job().to_status_response()

        assert body["status"] == "queued"
        assert body["ok"] is True
        for key in ("error", "outputUrl", "artifacts", "engine", "etaSec", "fallbackChain", "projectId"):
            assert key not in body

    def test_status_response_carries_error(self):
        job = make_job(
            status=JobStatus.ERROR,
            error=ApiError(code="FFMPEG_ERROR", message="Video encoding failed", details={"errorCode": "X"}),
        )
        body = job.to_status_response()

        assert body["error"] == {
            "code": "FFMPEG_ERROR",
            "message": "Video encoding failed",
            "details": {"errorCode": "X"},
        }

    def test_api_error_without_details(self):
        assert ApiError(code="INPUT_ERROR", message="m").to_dict() == {"code": "INPUT_ERROR", "message": "m"}

    def test_logs_response_exposes_command_and_attempts(self):
        job = make_job(command="ffmpeg -i a b", attempts=2)
        body = job.to_logs_response()

        assert body["command"] == "ffmpeg -i a b"
        assert body["attempts"] == 2
        assert body["error"] is None


# =============================================================================
# Registry
# =============================================================================

class TestRegistry:

    def test_snapshots_are_copies(self):
        registry = JobRegistry()
        job = make_job()
        registry.add_job(job)

        snapshot = registry.get_job(job.id)
        snapshot.logs.append("tampered")

        assert registry.get_job(job.id).logs == []

    def test_duplicate_id(self):
        registry = JobRegistry()
        job = make_job()
        registry.add_job(job)

        with pytest.raises(ValueError):
            registry.add_job(job)

    def test_unknown_job(self):
        registry = JobRegistry()

        assert registry.get_job("missing") is None
        with pytest.raises(JobNotFoundError):
            registry.get_job_or_raise("missing")
        with pytest.raises(JobNotFoundError):
            registry.update("missing", progress_pct=5)

    def test_update_applies_fields_and_status_together(self):
        registry = JobRegistry()
        job = registry.add_job(make_job())

        updated = registry.update(job.id, status=JobStatus.RUNNING, progress_pct=10, engine="server_ffmpeg")

        assert updated.status == JobStatus.RUNNING
        assert (updated.progress_pct, updated.engine) == (10, "server_ffmpeg")

    def test_illegal_transition_leaves_job_untouched(self):
        registry = JobRegistry()
        job = registry.add_job(make_job())

        with pytest.raises(InvalidStateTransitionError):
            registry.update(job.id, status=JobStatus.DONE, progress_pct=100)
        assert registry.get_job(job.id).progress_pct == 0

    def test_terminal_job_rejects_field_changes_and_logs(self):
        registry = JobRegistry()
        job = registry.add_job(make_job())
        registry.update(job.id, status=JobStatus.RUNNING)
        registry.update(job.id, status=JobStatus.DONE, progress_pct=100)

        with pytest.raises(InvalidStateTransitionError):
            registry.update(job.id, progress_pct=50)
        with pytest.raises(InvalidStateTransitionError):
            registry.update(job.id, status=JobStatus.ERROR)
        with pytest.raises(InvalidStateTransitionError):
            registry.append_log(job.id, "late line")
        assert registry.get_job(job.id).status == JobStatus.DONE

    def test_list_newest_first(self):
        registry = JobRegistry()
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        jobs = [registry.add_job(make_job(created_at=base + timedelta(seconds=i))) for i in range(3)]

        listed = registry.list_jobs()
        assert [j.id for j in listed] == [j.id for j in reversed(jobs)]
        assert len(registry.list_jobs(limit=2)) == 2

    def test_eviction_only_removes_terminal_jobs(self):
        registry = JobRegistry(max_jobs=2)
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        old_done = registry.add_job(make_job(created_at=base, status=JobStatus.DONE))
        queued = registry.add_job(make_job(created_at=base + timedelta(seconds=1)))
        newest = registry.add_job(make_job(created_at=base + timedelta(seconds=2)))

        assert registry.get_job(old_done.id) is None
        assert registry.get_job(queued.id) is not None
        assert registry.get_job(newest.id) is not None

    def test_eviction_never_drops_live_jobs(self):
        registry = JobRegistry(max_jobs=1)
        a = registry.add_job(make_job())
        b = registry.add_job(make_job())

        assert len(registry.list_jobs()) == 2
        assert registry.get_job(a.id) and registry.get_job(b.id)
