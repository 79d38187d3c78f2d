"""
Job status endpoints. Read-only; polling never blocks the worker.

GET /api/jobs             recent jobs, newest first
GET /api/jobs/{id}        status snapshot
GET /api/jobs/{id}/logs   full log buffer, command, engine and fallback chain
"""

from fastapi import APIRouter, Query, Request

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("")
def list_jobs(request: Request, limit: int = Query(50, ge=1, le=500)):
    jobs = request.app.state.gateway.list_jobs(limit)
    return {"ok": True, "count": len(jobs), "jobs": [j.to_summary() for j in jobs]}


@router.get("/{job_id}")
def job_status(job_id: str, request: Request):
    return request.app.state.gateway.get_job(job_id).to_status_response()


@router.get("/{job_id}/logs")
def job_logs(job_id: str, request: Request):
    return request.app.state.gateway.get_job(job_id).to_logs_response()
