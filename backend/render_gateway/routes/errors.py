"""
Error record endpoints.

Error records are append-only and outlive the jobs they describe.

GET /api/jobs/{id}/errors
GET /api/projects/{id}/errors
GET /api/projects/{id}/error-stats
"""

from fastapi import APIRouter, Query, Request

router = APIRouter(prefix="/api", tags=["errors"])


@router.get("/jobs/{job_id}/errors")
def job_errors(job_id: str, request: Request):
    records = request.app.state.gateway.job_errors(job_id)
    return {"ok": True, "jobId": job_id, "count": len(records), "errors": records}


@router.get("/projects/{project_id}/errors")
def project_errors(project_id: str, request: Request, limit: int = Query(100, ge=1, le=1000)):
    records = request.app.state.gateway.project_errors(project_id, limit)
    return {"ok": True, "projectId": project_id, "count": len(records), "errors": records}


@router.get("/projects/{project_id}/error-stats")
def project_error_stats(project_id: str, request: Request):
    stats = request.app.state.gateway.project_error_stats(project_id)
    return {"ok": True, "projectId": project_id, **stats}
