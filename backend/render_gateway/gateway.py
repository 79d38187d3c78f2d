"""
RenderGateway: the explicit handle behind the HTTP layer.

Owns the job table, the FIFO queue, the render worker, the error handler
and the upload store. Routes receive it through app.state and never touch
module-level state. The HTTP side only admits jobs and reads snapshots;
the worker is the only writer after admission.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from .config import GatewaySettings
from .execution.assets import AssetResolver
from .execution.ffmpeg import (
    FFmpegInfo,
    FFmpegRunner,
    detect_ffmpeg,
    find_ffprobe,
    select_video_encoder,
)
from .failures.handler import ErrorHandler
from .failures.store import ErrorStore
from .jobs.errors import QueueClosedError
from .jobs.models import ApiError, Job, JobKind, JobStatus
from .jobs.queue import JobQueue
from .jobs.registry import JobRegistry
from .jobs.worker import RenderWorker, TimeoutPolicy
from .plans.models import ExecutionPlan
from .plans.transforms import TransformOptions
from .plans.validation import PlanValidationError, validate_plan
from .routing.engines import build_engine_list
from .storage.uploads import StoredUpload, UploadStore, safe_filename

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "Gateway shut down before the job started"


def _pydantic_message(error: ValidationError) -> Tuple[str, Optional[str]]:
    """First pydantic error as (message, dotted field path)."""
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    message = first.get("msg", "invalid value")
    return (f"{field}: {message}" if field else message), field


class RenderGateway:
    """
    Args:
        settings: Gateway settings
        runner: Process runner (defaults to FFmpegRunner); tests pass a fake
        ffmpeg: Pre-detected FFmpeg info; detected from settings when omitted
        http_client: httpx client for downloads
    """

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        runner: Any = None,
        ffmpeg: Optional[FFmpegInfo] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.settings = settings
        settings.ensure_dirs()
        self.started_monotonic = time.monotonic()

        self.ffmpeg = ffmpeg if ffmpeg is not None else detect_ffmpeg(settings.ffmpeg_path)
        self.hw_encoder = select_video_encoder(self.ffmpeg, settings.hw_accel)
        self.ffprobe_path = find_ffprobe(self.ffmpeg.path) if self.ffmpeg.available else None
        self.engines = build_engine_list(settings.engines)

        self.registry = JobRegistry()
        self.queue = JobQueue()
        self.error_store = ErrorStore(settings.errors_db)
        self.error_handler = ErrorHandler(self.error_store, backoff_scale=settings.backoff_scale)
        self.uploads = UploadStore(
            settings.uploads_dir, settings.max_file_size, settings.allowed_mime_types
        )
        self.resolver = AssetResolver(
            settings.uploads_dir,
            settings.outputs_dir,
            settings.temp_dir,
            max_download_bytes=settings.max_file_size,
            client=http_client,
        )
        self.worker = RenderWorker(
            self.queue,
            self.registry,
            self.error_handler,
            self.resolver,
            runner if runner is not None else FFmpegRunner(),
            engines=self.engines,
            ffmpeg=self.ffmpeg,
            outputs_dir=settings.outputs_dir,
            hw_encoder=self.hw_encoder,
            ffprobe_path=self.ffprobe_path,
            timeouts=TimeoutPolicy(
                max_seconds=settings.max_render_time,
                factor=settings.timeout_factor,
                min_seconds=settings.min_timeout,
            ),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        self.worker.start()
        logger.info(
            f"[Gateway] Ready: engines={[e.id.value for e in self.engines]} "
            f"ffmpeg={self.ffmpeg.path or 'missing'} hw_encoder={self.hw_encoder or 'none'}"
        )

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop admitting jobs, resolve never-started jobs, wait for the active render."""
        for job_id in self.queue.close():
            self._abandon(job_id)
        self.worker.stop(timeout)
        self.resolver.close()
        self.error_store.close()

    def _abandon(self, job_id: str) -> None:
        self.registry.update(
            job_id,
            status=JobStatus.ERROR,
            completed_at=datetime.now(timezone.utc),
            error=ApiError(code="INTERNAL_ERROR", message=SHUTDOWN_REASON),
        )

    # =========================================================================
    # Health
    # =========================================================================

    def health(self) -> Dict[str, Any]:
        ok = self.ffmpeg.available and self.worker.is_alive
        return {
            "ok": ok,
            "ffmpeg": self.ffmpeg.to_dict(),
            "hwEncoder": self.hw_encoder,
            "engines": [e.to_dict() for e in self.engines],
            "outputsDir": str(self.settings.outputs_dir),
            "uploadsDir": str(self.settings.uploads_dir),
            "queueLength": len(self.queue),
            "currentJob": self.queue.current_job_id,
            "workerAlive": self.worker.is_alive,
            "uptime": round(time.monotonic() - self.started_monotonic, 1),
            "time": datetime.now(timezone.utc).isoformat(),
        }

    # =========================================================================
    # Admission
    # =========================================================================

    def upload(
        self,
        stream: Optional[BinaryIO],
        filename: Optional[str],
        mimetype: Optional[str],
        project_id: Optional[str] = None,
    ) -> StoredUpload:
        return self.uploads.save(stream, filename, mimetype, project_id)

    def submit_execute(
        self,
        source_path: str,
        options: TransformOptions,
        project_id: Optional[str] = None,
    ) -> Job:
        """
        Admit an /api/execute request.

        Raises:
            ExecutionError: INPUT_ERROR for a missing or disallowed source
            PlanValidationError: INPUT_ERROR for unusable options
        """
        self.resolver.check_reference(source_path)
        options.check()
        job = Job(
            kind=JobKind.EXECUTE,
            project_id=project_id,
            source_path=source_path,
            transform=options,
        )
        return self._admit(job)

    def submit_plan(
        self,
        source: str,
        raw_plan: Dict[str, Any],
        output_name: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Job:
        """
        Admit an /api/execute-plan request.

        The plan is parsed and structurally validated here so a bad plan is
        rejected with PLAN_ERROR before it ever reaches the queue.

        Raises:
            ExecutionError: INPUT_ERROR for a missing or disallowed source/asset
            PlanValidationError: PLAN_ERROR for a malformed or inconsistent plan
        """
        self.resolver.check_reference(source)
        try:
            plan = ExecutionPlan.model_validate(raw_plan)
        except ValidationError as e:
            message, field = _pydantic_message(e)
            raise PlanValidationError(f"Malformed plan: {message}", field=field) from e

        plan = plan.bind_source(source)
        validate_plan(plan)
        for ref in plan.asset_urls():
            if ref != source:
                self.resolver.check_reference(ref)

        job = Job(
            kind=JobKind.EXECUTE_PLAN,
            project_id=project_id,
            source_path=source,
            plan=plan,
            output_name=safe_filename(output_name).rsplit(".", 1)[0] if output_name else None,
        )
        return self._admit(job)

    def _admit(self, job: Job) -> Job:
        """
        Raises:
            QueueClosedError: If the gateway is shutting down (the job is recorded as error)
        """
        self.registry.add_job(job)
        try:
            position = self.queue.enqueue(job.id)
        except QueueClosedError:
            self._abandon(job.id)
            raise
        logger.info(f"[Gateway] Admitted {job.kind.value} job {job.id} at position {position}")
        return job.model_copy(update={"queue_position": position})

    # =========================================================================
    # Reads
    # =========================================================================

    def _with_position(self, job: Job) -> Job:
        if job.status == JobStatus.QUEUED:
            position = self.queue.get_queue_position(job.id)
            return job.model_copy(update={"queue_position": max(position, 0)})
        return job.model_copy(update={"queue_position": 0})

    def get_job(self, job_id: str) -> Job:
        """
        Raises:
            JobNotFoundError: Unknown job id
        """
        return self._with_position(self.registry.get_job_or_raise(job_id))

    def list_jobs(self, limit: int = 50) -> List[Job]:
        return [self._with_position(j) for j in self.registry.list_jobs(limit)]

    def job_errors(self, job_id: str) -> List[Dict[str, Any]]:
        records = self.error_store.for_job(job_id)
        if not records:
            # Records outlive evicted jobs; only an unknown id with no records is a 404
            self.registry.get_job_or_raise(job_id)
        return [r.to_api() for r in records]

    def project_errors(self, project_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        return [r.to_api() for r in self.error_store.for_project(project_id, limit)]

    def project_error_stats(self, project_id: str) -> Dict[str, Any]:
        return self.error_store.stats(project_id)
