"""
Job admission endpoints.

POST /api/execute       simple transform of one source (implicit plan)
POST /api/execute-plan  caller-supplied Execution Plan

Both validate synchronously, enqueue, and answer 202 with the job id and
its queue position. Rendering happens on the worker.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..failures.catalog import Stage
from ..jobs.models import Job
from ..plans.transforms import TransformOptions
from ..plans.validation import PlanValidationError

router = APIRouter(prefix="/api", tags=["execute"])


# =============================================================================
# Request Models
# =============================================================================


class ExecuteRequest(TransformOptions):
    """Body of /api/execute: a source plus whitelisted transform options."""

    source_path: str = Field(..., alias="sourcePath", min_length=1)
    project_id: Optional[str] = Field(None, alias="projectId")

    def options(self) -> TransformOptions:
        return TransformOptions.model_validate(
            self.model_dump(exclude={"source_path", "project_id"})
        )


class ExecutePlanRequest(BaseModel):
    """Body of /api/execute-plan. The plan is parsed by the gateway so shape errors are PLAN_ERROR."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    plan: Dict[str, Any]
    source_video_url: Optional[str] = Field(None, alias="sourceVideoUrl")
    source_path: Optional[str] = Field(None, alias="sourcePath")
    output_name: Optional[str] = Field(None, alias="outputName")
    project_id: Optional[str] = Field(None, alias="projectId")


def _accepted(job: Job) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "ok": True,
            "jobId": job.id,
            "status": job.status.value,
            "queuePosition": job.queue_position,
            "statusUrl": f"/api/jobs/{job.id}",
        },
    )


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/execute")
def execute(body: ExecuteRequest, request: Request):
    job = request.app.state.gateway.submit_execute(
        body.source_path, body.options(), project_id=body.project_id
    )
    return _accepted(job)


@router.post("/execute-plan")
def execute_plan(body: ExecutePlanRequest, request: Request):
    source = body.source_video_url or body.source_path
    if not source:
        raise PlanValidationError(
            "Either sourceVideoUrl or sourcePath is required",
            code="INPUT_MISSING_FIELD",
            stage=Stage.VALIDATION,
            field="sourceVideoUrl",
        )
    job = request.app.state.gateway.submit_plan(
        source, body.plan, output_name=body.output_name, project_id=body.project_id
    )
    return _accepted(job)
