"""
Health endpoint.

GET /api/health reports FFmpeg availability, directories, queue length and
the active job. It answers 503 (still JSON, same body) when FFmpeg is
missing or the worker is not running.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health(request: Request):
    body = request.app.state.gateway.health()
    return JSONResponse(status_code=200 if body["ok"] else 503, content=body)
