"""
JSON envelope and exception handlers.

Every response is JSON. Failures always look like:
    {"ok": false, "error": {"code": ..., "message": ..., "details": ...}}
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .execution.errors import ExecutionError
from .failures.catalog import STAGE_CATEGORIES
from .failures.store import ErrorStoreError
from .jobs.errors import JobNotFoundError, QueueClosedError
from .plans.validation import PlanValidationError
from .storage.uploads import UploadError

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "AUTH_ERROR",
    403: "AUTH_ERROR",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "FILE_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    503: "SERVICE_UNAVAILABLE",
}


def error_body(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"ok": False, "error": error}


def json_error(
    status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(code, message, details))


# =============================================================================
# Handlers
# =============================================================================

async def _http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return json_error(
            exc.status_code,
            exc.detail["code"],
            exc.detail.get("message", ""),
            exc.detail.get("details"),
        )
    code = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = f"No route for {request.method} {request.url.path}"
    return json_error(exc.status_code, code, message)


async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    if first.get("type") == "json_invalid":
        message = "Request body is not valid JSON"
    return json_error(
        400,
        "INPUT_ERROR",
        f"{field}: {message}" if field else message,
        {"errorCode": "INPUT_MISSING_FIELD", "stage": "validation", "field": field or None},
    )


async def _plan_validation(request: Request, exc: PlanValidationError) -> JSONResponse:
    return json_error(400, exc.category.value, exc.message, exc.to_details())


async def _execution_error(request: Request, exc: ExecutionError) -> JSONResponse:
    category = STAGE_CATEGORIES[exc.stage]
    return json_error(400, category.value, str(exc), {"stage": exc.stage.value})


async def _upload_error(request: Request, exc: UploadError) -> JSONResponse:
    return json_error(exc.status_code, exc.code, exc.message)


async def _job_not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
    return json_error(404, "JOB_NOT_FOUND", f"Job {exc.job_id} not found")


async def _queue_closed(request: Request, exc: QueueClosedError) -> JSONResponse:
    return json_error(503, "QUEUE_CLOSED", str(exc))


async def _error_store(request: Request, exc: ErrorStoreError) -> JSONResponse:
    logger.error(f"[API] Error store failure on {request.url.path}: {exc}")
    return json_error(500, "STORAGE_ERROR", "Error records are unavailable")


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"[API] Unhandled error on {request.method} {request.url.path}: {exc}")
    return json_error(500, "INTERNAL_ERROR", "Internal server error")


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception)
    app.add_exception_handler(RequestValidationError, _request_validation)
    app.add_exception_handler(PlanValidationError, _plan_validation)
    app.add_exception_handler(ExecutionError, _execution_error)
    app.add_exception_handler(UploadError, _upload_error)
    app.add_exception_handler(JobNotFoundError, _job_not_found)
    app.add_exception_handler(QueueClosedError, _queue_closed)
    app.add_exception_handler(ErrorStoreError, _error_store)
    app.add_exception_handler(Exception, _unhandled)
