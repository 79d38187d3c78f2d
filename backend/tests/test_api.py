"""
HTTP contract tests.

The `client` fixture does not run the app lifespan, so no worker thread
is started: jobs stay queued until the test calls run_jobs().
"""

import dataclasses

import pytest
from fastapi.testclient import TestClient

from conftest import NO_FFMPEG, build_gateway, job_status
from render_gateway.main import create_app

MP4_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 2048


def submit_plan(client, plan_dict, source, **extra):
    body = {"plan": plan_dict, "sourcePath": source}
    body.update(extra)
    return client.post("/api/execute-plan", json=body)


# =============================================================================
# Health
# =============================================================================

class TestHealth:

    def test_healthy_while_worker_runs(self, gateway):
        with TestClient(create_app(gateway=gateway)) as client:
            response = client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["ffmpeg"]["available"] is True
        assert body["workerAlive"] is True
        assert body["queueLength"] == 0
        assert [e["id"] for e in body["engines"]] == ["server_ffmpeg", "plan_export"]

    def test_without_worker_is_unhealthy(self, client):
        response = client.get("/api/health")

        assert response.status_code == 503
        assert response.json()["workerAlive"] is False

    def test_without_ffmpeg_is_unhealthy(self, settings, runner):
        gateway = build_gateway(settings, runner, ffmpeg=NO_FFMPEG)
        with TestClient(create_app(gateway=gateway)) as client:
            response = client.get("/api/health")

        assert response.status_code == 503
        body = response.json()
        assert body["ok"] is False
        assert body["ffmpeg"]["available"] is False

    def test_root(self, client):
        assert client.get("/").json()["health"] == "/api/health"


# =============================================================================
# Upload
# =============================================================================

class TestUpload:

    def test_upload_stores_file(self, client, gateway):
        response = client.post("/api/upload", files={"file": ("My Clip.mp4", MP4_BYTES, "video/mp4")})

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["filename"] == "My_Clip.mp4"
        assert body["size"] == len(MP4_BYTES)
        assert body["mimetype"] == "video/mp4"
        assert body["publicUrl"].startswith("/uploads/")
        assert body["publicUrl"].endswith(".mp4")
        assert gateway.list_jobs() == []

    def test_uploaded_file_is_served(self, client):
        body = client.post("/api/upload", files={"file": ("a.mp4", MP4_BYTES, "video/mp4")}).json()

        assert client.get(body["publicUrl"]).content == MP4_BYTES

    def test_upload_with_project(self, client):
        response = client.post(
            "/api/upload",
            files={"file": ("a.mp4", MP4_BYTES, "video/mp4")},
            data={"projectId": "proj_1"},
        )
        body = response.json()

        assert body["projectId"] == "proj_1"
        assert body["publicUrl"].startswith("/uploads/proj_1/")

    def test_unsupported_type(self, client):
        response = client.post("/api/upload", files={"file": ("notes.txt", b"hello", "text/plain")})

        assert response.status_code == 415
        assert response.json()["error"]["code"] == "UNSUPPORTED_MEDIA_TYPE"

    def test_missing_file(self, client):
        response = client.post("/api/upload", data={"projectId": "proj_1"})

        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": {"code": "NO_FILE", "message": "No file uploaded"}}

    def test_bad_project_id(self, client):
        response = client.post(
            "/api/upload",
            files={"file": ("a.mp4", MP4_BYTES, "video/mp4")},
            data={"projectId": "../escape"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INPUT_ERROR"

    def test_too_large(self, settings, runner):
        small = dataclasses.replace(settings, max_file_size=100)
        gateway = build_gateway(small, runner)
        client = TestClient(create_app(gateway=gateway))
        try:
            response = client.post("/api/upload", files={"file": ("a.mp4", MP4_BYTES, "video/mp4")})
        finally:
            gateway.stop(timeout=5)

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "FILE_TOO_LARGE"
        assert list(small.uploads_dir.iterdir()) == []


# =============================================================================
# Admission
# =============================================================================

class TestExecute:

    def test_accepted(self, client, source_file):
        response = client.post(
            "/api/execute",
            json={"sourcePath": source_file, "trim": {"start": 0, "end": 2}, "format": "webm"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["ok"] is True
        assert body["status"] == "queued"
        assert body["queuePosition"] == 1
        assert body["statusUrl"] == f"/api/jobs/{body['jobId']}"

    def test_runs_to_done(self, client, run_jobs, source_file):
        job_id = client.post(
            "/api/execute", json={"sourcePath": source_file, "trim": {"start": 0, "end": 2}}
        ).json()["jobId"]
        run_jobs()
        body = job_status(client, job_id)

        assert body["status"] == "done"
        assert body["progressPct"] == 100
        assert client.get(body["outputUrl"]).status_code == 200

    def test_public_upload_path_is_accepted(self, client):
        uploaded = client.post("/api/upload", files={"file": ("a.mp4", MP4_BYTES, "video/mp4")}).json()
        response = client.post(
            "/api/execute", json={"sourcePath": uploaded["publicUrl"], "trim": {"end": 1}}
        )

        assert response.status_code == 202

    def test_missing_source_path(self, client):
        response = client.post("/api/execute", json={"trim": {"end": 1}})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INPUT_ERROR"
        assert error["details"]["field"] == "sourcePath"

    def test_source_not_found(self, client, gateway):
        response = client.post("/api/execute", json={"sourcePath": "nope.mp4"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INPUT_ERROR"
        assert gateway.list_jobs() == []

    def test_source_outside_data_dir(self, client):
        response = client.post("/api/execute", json={"sourcePath": "/etc/passwd"})

        assert response.status_code == 400
        assert "outside the allowed directories" in response.json()["error"]["message"]

    def test_unknown_option_rejected(self, client, source_file):
        response = client.post("/api/execute", json={"sourcePath": source_file, "codec": "prores"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INPUT_ERROR"

    def test_unknown_filter_rejected(self, client, source_file):
        response = client.post("/api/execute", json={"sourcePath": source_file, "filters": ["vhs"]})

        assert response.status_code == 400
        assert response.json()["error"]["details"]["errorCode"] == "INPUT_INVALID_FORMAT"

    def test_malformed_json(self, client):
        response = client.post(
            "/api/execute", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INPUT_ERROR"


class TestExecutePlan:

    def test_plan_runs_to_done(self, client, run_jobs, source_file, plan_dict):
        response = submit_plan(client, plan_dict, source_file, outputName="final cut.mp4")
        assert response.status_code == 202
        job_id = response.json()["jobId"]

        assert job_status(client, job_id)["status"] == "queued"
        run_jobs()
        body = job_status(client, job_id)

        assert body["status"] == "done"
        assert body["engine"] == "server_ffmpeg"
        assert body["outputUrl"] == f"/outputs/final_cut_{job_id}.mp4"
        assert body["outputSize"] > 0
        assert "error" not in body

        output = client.get(body["outputUrl"])
        assert output.status_code == 200
        assert output.content.startswith(b"\x00\x00\x00\x18ftyp")

    def test_source_video_url(self, client, source_file, plan_dict):
        response = client.post(
            "/api/execute-plan", json={"plan": plan_dict, "sourceVideoUrl": source_file}
        )
        assert response.status_code == 202

    def test_missing_source(self, client, plan_dict):
        response = client.post("/api/execute-plan", json={"plan": plan_dict})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INPUT_ERROR"
        assert error["details"]["errorCode"] == "INPUT_MISSING_FIELD"

    def test_inconsistent_plan_is_rejected_before_queueing(self, client, gateway, source_file, plan_dict):
        plan_dict["timeline"][0]["output_duration_ms"] = 4000
        response = submit_plan(client, plan_dict, source_file)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "PLAN_ERROR"
        assert error["details"] == {
            "errorCode": "PLAN_INVALID_TIMING",
            "stage": "plan_validation",
            "field": "timeline[0].output_duration_ms",
        }
        assert gateway.list_jobs() == []

    def test_malformed_plan(self, client, source_file, plan_dict):
        plan_dict["timeline"][0]["trim_end_ms"] = "soon"
        response = submit_plan(client, plan_dict, source_file)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "PLAN_ERROR"
        assert error["message"].startswith("Malformed plan:")

    def test_missing_plan_id_is_input_error(self, client, source_file, plan_dict):
        plan_dict["plan_id"] = ""
        response = submit_plan(client, plan_dict, source_file)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INPUT_ERROR"

    def test_partial_success_without_ffmpeg(self, settings, runner, plan_dict):
        gateway = build_gateway(settings, runner, ffmpeg=NO_FFMPEG)
        source = settings.uploads_dir / "clip.mp4"
        source.write_bytes(MP4_BYTES)
        client = TestClient(create_app(gateway=gateway))
        try:
            job_id = submit_plan(client, plan_dict, str(source)).json()["jobId"]
            gateway.worker.process(gateway.queue.take(timeout=0))
            body = job_status(client, job_id)
        finally:
            gateway.stop(timeout=5)

        assert body["status"] == "partial_success"
        assert body["engine"] == "plan_export"
        assert body["artifacts"]["command"]["command"] == "ffmpeg"
        assert body["fallbackChain"][0]["reason"] == "unavailable"

    def test_queue_position_moves_forward(self, client, gateway, source_file, plan_dict):
        first = submit_plan(client, plan_dict, source_file).json()
        second = submit_plan(client, plan_dict, source_file).json()
        assert (first["queuePosition"], second["queuePosition"]) == (1, 2)

        job_id = gateway.queue.take(timeout=0)
        assert job_id == first["jobId"]
        assert job_status(client, second["jobId"])["queuePosition"] == 1

        gateway.worker.process(job_id)
        gateway.queue.release(job_id)
        assert job_status(client, first["jobId"])["queuePosition"] == 0
        assert job_status(client, second["jobId"])["queuePosition"] == 1


# =============================================================================
# Status, logs and error records
# =============================================================================

class TestJobs:

    def test_unknown_job(self, client):
        response = client.get("/api/jobs/job_0000000000000_deadbeef")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "JOB_NOT_FOUND"

    def test_unknown_route(self, client):
        response = client.get("/api/nothing-here")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_failed_job_status(self, client, runner, run_jobs, source_file, plan_dict):
        runner.outcomes = [("fail", "Error initializing complex filters.\nInvalid argument")]
        job_id = submit_plan(client, plan_dict, source_file).json()["jobId"]
        run_jobs()
        body = job_status(client, job_id)

        assert body["status"] == "error"
        assert body["error"]["code"] == "FFMPEG_ERROR"
        assert body["error"]["details"]["errorCode"] == "FFMPEG_FILTER_ERROR"
        assert body["error"]["details"]["stage"] == "encode"
        assert "outputUrl" not in body

    def test_logs(self, client, run_jobs, source_file, plan_dict):
        job_id = submit_plan(client, plan_dict, source_file).json()["jobId"]
        run_jobs()
        body = client.get(f"/api/jobs/{job_id}/logs").json()

        assert body["status"] == "done"
        assert body["command"].startswith("/usr/bin/ffmpeg ")
        assert body["encoderUsed"] == "libx264"
        assert body["exitCode"] == 0
        assert any("Render complete" in line for line in body["logs"])

    def test_list_jobs_newest_first(self, client, source_file, plan_dict):
        ids = [submit_plan(client, plan_dict, source_file).json()["jobId"] for _ in range(3)]
        body = client.get("/api/jobs", params={"limit": 2}).json()

        assert body["count"] == 2
        assert {j["jobId"] for j in body["jobs"]} <= set(ids)
        assert all(j["status"] == "queued" for j in body["jobs"])

    def test_job_errors(self, client, runner, run_jobs, source_file, plan_dict):
        runner.outcomes = [("fail", "Conversion failed!")]
        job_id = submit_plan(client, plan_dict, source_file, projectId="proj_1").json()["jobId"]
        run_jobs()
        body = client.get(f"/api/jobs/{job_id}/errors").json()

        assert body["count"] == 1
        record = body["errors"][0]
        assert record["jobId"] == job_id
        assert record["projectId"] == "proj_1"
        assert record["errorCode"] == "FFMPEG_ENCODING_FAILED"
        assert record["action"] == "ABORT"

    def test_job_without_errors(self, client, source_file, plan_dict):
        job_id = submit_plan(client, plan_dict, source_file).json()["jobId"]
        body = client.get(f"/api/jobs/{job_id}/errors").json()

        assert body == {"ok": True, "jobId": job_id, "count": 0, "errors": []}

    def test_errors_for_unknown_job(self, client):
        assert client.get("/api/jobs/job_missing/errors").status_code == 404

    def test_project_errors_and_stats(self, client, runner, run_jobs, source_file, plan_dict):
        runner.outcomes = [("fail", "Conversion failed!"), "missing"]
        for _ in range(2):
            submit_plan(client, plan_dict, source_file, projectId="proj_1")
        submit_plan(client, plan_dict, source_file, projectId="proj_2")
        run_jobs()

        errors = client.get("/api/projects/proj_1/errors").json()
        assert errors["count"] == 2
        assert {e["category"] for e in errors["errors"]} == {"FFMPEG_ERROR", "STORAGE_ERROR"}

        stats = client.get("/api/projects/proj_1/error-stats").json()
        assert stats["total"] == 2
        assert stats["byCategory"] == {"FFMPEG_ERROR": 1, "STORAGE_ERROR": 1}
        assert stats["byStage"] == {"encode": 1, "storage": 1}

        assert client.get("/api/projects/proj_2/errors").json()["count"] == 0


@pytest.mark.parametrize("path", ["/api/health", "/api/jobs"])
def test_cors_headers(client, path):
    response = client.get(path, headers={"Origin": "http://localhost:5173"})
    assert response.headers["access-control-allow-origin"] == "*"
