"""
Tests for the append-only error record store.
"""

import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from render_gateway.failures.catalog import ErrorCategory, RecoveryAction, Stage
from render_gateway.failures.store import ErrorRecord, ErrorStore, ErrorStoreError


@pytest.fixture
def store(tmp_path):
    s = ErrorStore(tmp_path / "nested" / "errors.db")
    yield s
    s.close()


def record(job_id="job_1", project_id="proj", code="NETWORK_DOWNLOAD_FAILED", **kwargs) -> ErrorRecord:
    fields = dict(
        job_id=job_id,
        project_id=project_id,
        stage=Stage.DOWNLOAD,
        category=ErrorCategory.NETWORK_ERROR,
        error_code=code,
        message="Failed to download source media",
        technical_message="Download failed: HTTP 503",
        action=RecoveryAction.RETRY,
    )
    fields.update(kwargs)
    return ErrorRecord(**fields)


class TestAppend:

    def test_round_trip_keeps_every_field(self, store):
        original = record(stderr_tail="tail", retry_delay_ms=2000, user_action="u", admin_action="a")
        store.append(original)

        assert [r.model_dump() for r in store.for_job("job_1")] == [original.model_dump()]

    def test_duplicate_id_is_rejected(self, store):
        r = record()
        store.append(r)

        with pytest.raises(ErrorStoreError):
            store.append(r)
        assert len(store.for_job("job_1")) == 1

    def test_records_are_immutable(self):
        r = record()
        with pytest.raises(ValidationError):
            r.error_code = "OTHER"

    def test_creates_parent_directory(self, tmp_path):
        ErrorStore(tmp_path / "a" / "b" / "errors.db").close()
        assert (tmp_path / "a" / "b" / "errors.db").exists()


class TestQueries:

    def test_for_job_oldest_first(self, store):
        first = record(attempt=0)
        second = record(attempt=1)
        store.append(first)
        store.append(second)
        store.append(record(job_id="job_2"))

        assert [r.id for r in store.for_job("job_1")] == [first.id, second.id]

    def test_for_project_newest_first_with_limit(self, store):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        ids = []
        for i in range(5):
            r = record(job_id=f"job_{i}", created_at=base + timedelta(seconds=i))
            store.append(r)
            ids.append(r.id)
        store.append(record(project_id="other"))

        found = store.for_project("proj", limit=3)
        assert [r.id for r in found] == list(reversed(ids))[:3]

    def test_unknown_job(self, store):
        assert store.for_job("missing") == []

    def test_stats(self, store):
        store.append(record())
        store.append(record())
        store.append(record(
            stage=Stage.ENCODE, category=ErrorCategory.FFMPEG_ERROR,
            code="FFMPEG_CODEC_ERROR", action=RecoveryAction.ABORT,
        ))
        store.append(record(project_id=None))

        stats = store.stats("proj")
        assert stats["total"] == 3
        assert stats["byCategory"] == {"NETWORK_ERROR": 2, "FFMPEG_ERROR": 1}
        assert stats["byCode"] == {"NETWORK_DOWNLOAD_FAILED": 2, "FFMPEG_CODEC_ERROR": 1}
        assert stats["byStage"] == {"download": 2, "encode": 1}

    def test_stats_for_empty_project(self, store):
        assert store.stats("nobody") == {"total": 0, "byCategory": {}, "byCode": {}, "byStage": {}}

    def test_export_json(self, store):
        r = record()
        store.append(r)
        exported = json.loads(store.export_json("job_1"))

        assert exported[0]["id"] == r.id
        assert exported[0]["errorCode"] == "NETWORK_DOWNLOAD_FAILED"
        assert exported[0]["action"] == "RETRY"


def test_writes_from_another_thread_are_visible(store):
    r = record()
    thread = threading.Thread(target=store.append, args=(r,))
    thread.start()
    thread.join()

    assert [x.id for x in store.for_job("job_1")] == [r.id]


def test_close_reaches_every_thread_connection(store):
    opened = []

    def write():
        store.append(record())
        opened.append(store._get_connection())

    thread = threading.Thread(target=write)
    thread.start()
    thread.join()
    store.close()

    with pytest.raises(sqlite3.ProgrammingError):
        opened[0].execute("SELECT 1")
    # The calling thread reconnects on next use
    assert len(store.for_job("job_1")) == 1
