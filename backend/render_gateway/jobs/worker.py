"""
Render worker.

One background thread drains the JobQueue. At most one render runs at a
time per gateway instance. The worker is the only writer of job state
after admission.

Pipeline for one job:
    plan (build / validate) -> route -> [plan_export => partial_success]
    -> download (NETWORK retries in place) -> encode (with timeout)
    -> storage check -> done

Any stage failure goes through the ErrorHandler exactly once and ends the
job in error, except NETWORK failures the handler decides to retry.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from ..execution.assets import AssetResolver
from ..execution.compiler import CompiledCommand, compile_plan
from ..execution.errors import (
    EncodeError,
    EncodeTimeoutError,
    ExecutionError,
    FFmpegNotFoundError,
    OutputMissingError,
)
from ..execution.ffmpeg import SOFTWARE_H264, FFmpegInfo, probe_media
from ..execution.progress import ProgressInfo, ProgressParser
from ..failures.catalog import Stage
from ..failures.handler import ErrorContext, ErrorHandler, HandledError
from ..plans.models import ExecutionPlan
from ..plans.transforms import build_transform_plan
from ..plans.validation import PlanValidationError, validated
from ..routing.engines import EngineId, EngineProfile
from ..routing.router import RouteDecision, route
from .models import ApiError, Job, JobKind, JobStatus
from .queue import JobQueue
from .registry import JobRegistry
from .state import is_job_terminal

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TimeoutPolicy:
    """
    Wall-clock ceiling for one render.

    timeout = max(min_seconds, output_seconds * factor), capped at max_seconds
    """

    max_seconds: float = 600.0
    factor: float = 10.0
    min_seconds: float = 60.0

    def for_duration(self, output_ms: int) -> float:
        return min(self.max_seconds, max(self.min_seconds, output_ms / 1000.0 * self.factor))


class _JobFailed(Exception):
    """A stage failure that the ErrorHandler has already recorded."""

    def __init__(self, handled: HandledError):
        super().__init__(handled.record.technical_message)
        self.handled = handled


class RenderWorker:
    """
    Single-thread render worker.

    Args:
        queue: FIFO queue to drain
        registry: Job table (the worker is its only mutator after admission)
        handler: Error classification and persistence
        resolver: Asset download and local path resolution
        runner: Object with run(argv, *, timeout_seconds, on_line) -> ProcessResult
        engines: Priority-ordered engine profiles
        ffmpeg: Detected FFmpeg installation
        outputs_dir: Directory rendered files are written to
        hw_encoder: Hardware H.264 encoder to try first, or None
        ffprobe_path: ffprobe binary for execute jobs, or None
        timeouts: Render timeout policy
        output_url_prefix: Public prefix for output URLs
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: JobRegistry,
        handler: ErrorHandler,
        resolver: AssetResolver,
        runner: Any,
        *,
        engines: Sequence[EngineProfile],
        ffmpeg: FFmpegInfo,
        outputs_dir: Path,
        hw_encoder: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        timeouts: TimeoutPolicy = TimeoutPolicy(),
        output_url_prefix: str = "/outputs",
    ):
        self.queue = queue
        self.registry = registry
        self.handler = handler
        self.resolver = resolver
        self.runner = runner
        self.engines = list(engines)
        self.ffmpeg = ffmpeg
        self.outputs_dir = Path(outputs_dir)
        self.hw_encoder = hw_encoder
        self.ffprobe_path = ffprobe_path
        self.timeouts = timeouts
        self.output_url_prefix = output_url_prefix.rstrip("/")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # Thread lifecycle
    # =========================================================================

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="render-worker", daemon=True)
        self._thread.start()
        logger.info("[Worker] Started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop after the active job (if any) finishes."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("[Worker] Stopped")

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            job_id = self.queue.take(timeout=POLL_INTERVAL_SECONDS)
            if job_id is None:
                if self.queue.closed:
                    break
                continue
            try:
                self.process(job_id)
            except Exception as e:
                # Failure while recording a failure (e.g. the error store is unavailable)
                logger.exception(f"[Worker] Job {job_id} could not be finalized: {e}")
                job = self.registry.get_job(job_id)
                if job is not None and not is_job_terminal(job.status):
                    self._internal_error(job_id, e)
            finally:
                self.queue.release(job_id)

    # =========================================================================
    # One job
    # =========================================================================

    def process(self, job_id: str) -> Job:
        """
        Run one job to a terminal state.

        Returns:
            Final job snapshot
        """
        job = self.registry.update(
            job_id, status=JobStatus.RUNNING, started_at=_utcnow(), queue_position=0
        )
        self._log(job_id, f"Job started ({job.kind.value})")
        try:
            return self._run(job)
        except _JobFailed as e:
            return self._fail(job, e.handled)
        except (ExecutionError, PlanValidationError, OSError) as e:
            handled = self.handler.handle(
                e, ErrorContext(job.id, Stage.STORAGE, job.project_id, job.attempts)
            )
            return self._fail(job, handled)
        except Exception as e:
            logger.exception(f"[Worker] Unexpected failure in job {job_id}: {e}")
            return self._internal_error(job_id, e)
        finally:
            self.resolver.cleanup(job_id)

    def _run(self, job: Job) -> Job:
        plan = self._prepare_plan(job)
        decision = route(plan, self.engines, self._is_available)
        self.registry.update(
            job.id,
            engine=decision.selected.value,
            fallback_chain=[r.to_dict() for r in decision.fallback_chain],
        )
        self._log(job.id, f"Routed to {decision.selected.value}")

        if decision.is_export_only:
            return self._export(job, plan, decision)

        local_assets = self._with_retries(
            job, Stage.DOWNLOAD, lambda: self.resolver.resolve_all(plan.asset_urls(), job.id)
        )
        local_plan = plan.with_assets(local_assets)
        output_path = self.outputs_dir / f"{self._output_stem(job)}.{plan.output_format.container}"
        self._encode(job, local_plan, output_path)
        return self._complete(job, output_path)

    def _is_available(self, engine_id: EngineId) -> bool:
        # Only the FFmpeg engine has an executor in this process
        return engine_id == EngineId.SERVER_FFMPEG and self.ffmpeg.available

    @staticmethod
    def _output_stem(job: Job) -> str:
        # Job id keeps two jobs with the same outputName apart
        return f"{job.output_name}_{job.id}" if job.output_name else job.id

    # -------------------------------------------------------------------------
    # Plan
    # -------------------------------------------------------------------------

    def _prepare_plan(self, job: Job) -> ExecutionPlan:
        if job.kind == JobKind.EXECUTE_PLAN:
            if job.plan is None:
                raise PlanValidationError("Job has no execution plan", field="plan")
            plan = job.plan.bind_source(job.source_path)
        else:
            if job.transform is None:
                raise PlanValidationError(
                    "Job has no transform options", code="INPUT_MISSING_FIELD",
                    stage=Stage.VALIDATION,
                )
            media = None
            if self.ffprobe_path and self.ffmpeg.available:
                local = self._with_retries(
                    job, Stage.DOWNLOAD, lambda: self.resolver.resolve(job.source_path, job.id)
                )
                media = probe_media(str(local), self.ffprobe_path)
                if media is not None:
                    self._log(
                        job.id,
                        f"Probed source: duration={media.duration_ms}ms "
                        f"size={media.width}x{media.height} audio={media.has_audio}",
                    )
            plan = build_transform_plan(job.id, job.source_path, job.transform, media)

        plan = validated(plan)
        for warning in plan.validation.warnings:
            self._log(job.id, f"Plan warning: {warning}")
        self._log(
            job.id,
            f"Plan {plan.plan_id} valid: {plan.validation.segment_count} segment(s), "
            f"{plan.validation.audio_track_count} audio track(s), "
            f"{plan.validation.text_overlay_count} overlay(s), {plan.total_duration_ms}ms",
        )
        return plan

    # -------------------------------------------------------------------------
    # plan_export
    # -------------------------------------------------------------------------

    def _export(self, job: Job, plan: ExecutionPlan, decision: RouteDecision) -> Job:
        compiled = compile_plan(
            plan, EngineId.PLAN_EXPORT, f"{self._output_stem(job)}.{plan.output_format.container}"
        )
        reasons = ", ".join(f"{r.engine.value}: {r.reason}" for r in decision.fallback_chain)
        reason = "No rendering engine can execute this plan" + (f" ({reasons})" if reasons else "")
        self._log(job.id, f"{reason}; returning plan and command")
        return self._finish(
            job.id,
            JobStatus.PARTIAL_SUCCESS,
            command=compiled.to_shell(),
            artifacts={
                "plan": plan.model_dump(mode="json"),
                "command": compiled.to_dict(),
                "route": decision.to_dict(),
                "reason": reason,
            },
        )

    # -------------------------------------------------------------------------
    # Retries
    # -------------------------------------------------------------------------

    def _with_retries(self, job: Job, stage: Stage, fn: Callable[[], Any]) -> Any:
        """
        Run fn, retrying in place while the ErrorHandler decides RETRY.

        Raises:
            _JobFailed: Once the handler decides to abort
        """
        attempt = 0
        while True:
            try:
                return fn()
            except ExecutionError as e:
                handled = self.handler.handle(e, ErrorContext(job.id, stage, job.project_id, attempt))
                if not handled.decision.should_retry:
                    raise _JobFailed(handled) from e
                attempt += 1
                self.registry.update(job.id, attempts=attempt)
                delay_s = (handled.decision.delay_ms or 0) / 1000.0
                self._log(job.id, f"{handled.record.error_code}: retry {attempt} in {delay_s:.1f}s")
                if self._stop.wait(delay_s):
                    raise _JobFailed(handled) from e

    # -------------------------------------------------------------------------
    # Encode
    # -------------------------------------------------------------------------

    def _compile(self, plan: ExecutionPlan, output_path: Path, encoder: Optional[str]) -> CompiledCommand:
        return compile_plan(
            plan,
            EngineId.SERVER_FFMPEG,
            str(output_path),
            ffmpeg_path=self.ffmpeg.path or "ffmpeg",
            video_encoder=encoder,
        )

    def _encode(self, job: Job, plan: ExecutionPlan, output_path: Path) -> None:
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        encoder = self.hw_encoder if plan.output_format.container != "webm" else None
        try:
            self._run_ffmpeg(job, plan, output_path, encoder)
        except EncodeError as e:
            if encoder is None or isinstance(e, EncodeTimeoutError):
                raise
            self._log(job.id, f"Hardware encoder {encoder} failed, retrying with {SOFTWARE_H264}")
            self._run_ffmpeg(job, plan, output_path, None)

    def _run_ffmpeg(self, job: Job, plan: ExecutionPlan, output_path: Path, encoder: Optional[str]) -> None:
        compiled = self._compile(plan, output_path, encoder)
        # A leftover file must never pass the completion check
        output_path.unlink(missing_ok=True)
        timeout = self.timeouts.for_duration(plan.total_duration_ms)
        self.registry.update(
            job.id,
            command=compiled.to_shell(),
            encoder_used=encoder or ("libvpx-vp9" if plan.output_format.container == "webm" else SOFTWARE_H264),
        )
        self._log(job.id, f"Encoding (timeout {timeout:.0f}s): {compiled.to_shell()}")

        parser = ProgressParser(
            job.id,
            plan.total_duration_ms / 1000.0,
            on_progress=lambda info: self._on_progress(job.id, info),
        )

        def on_line(line: str) -> None:
            if parser.parse_line(line) is None:
                self.registry.append_log(job.id, line)

        try:
            result = self.runner.run(compiled.argv, timeout_seconds=timeout, on_line=on_line)
        except FileNotFoundError as e:
            raise FFmpegNotFoundError() from e
        except OSError as e:
            raise EncodeError(f"Could not start FFmpeg: {e}") from e

        self.registry.update(job.id, exit_code=result.exit_code)
        if result.timed_out:
            raise EncodeTimeoutError(timeout, stderr=result.stderr_tail)
        if result.exit_code != 0:
            raise EncodeError(
                f"FFmpeg exited with code {result.exit_code}",
                stderr=result.stderr_tail,
                exit_code=result.exit_code,
            )

    def _on_progress(self, job_id: str, info: ProgressInfo) -> None:
        eta = round(info.eta_seconds, 1) if info.eta_seconds is not None else None
        self.registry.update(job_id, progress_pct=info.progress_pct, eta_sec=eta)

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------

    def _complete(self, job: Job, output_path: Path) -> Job:
        if not output_path.is_file():
            raise OutputMissingError(f"Output file missing after render: {output_path.name}")
        size = output_path.stat().st_size
        if size == 0:
            raise OutputMissingError(f"Output file is empty (0 bytes): {output_path.name}")
        self._log(job.id, f"Render complete: {output_path.name} ({size} bytes)")
        return self._finish(
            job.id,
            JobStatus.DONE,
            progress_pct=100,
            eta_sec=0.0,
            output_path=str(output_path),
            output_url=f"{self.output_url_prefix}/{output_path.name}",
            output_size=size,
        )

    def _internal_error(self, job_id: str, error: BaseException) -> Job:
        return self._finish(
            job_id,
            JobStatus.ERROR,
            error=ApiError(
                code="INTERNAL_ERROR",
                message="Render failed due to an internal error",
                details={"technicalMessage": str(error)},
            ),
        )

    def _fail(self, job: Job, handled: HandledError) -> Job:
        api_error = ApiError(**handled.to_api_error())
        self._log(job.id, f"Failed: {api_error.code}/{handled.record.error_code}: {api_error.message}")
        return self._finish(job.id, JobStatus.ERROR, error=api_error)

    def _finish(self, job_id: str, status: JobStatus, **changes: Any) -> Job:
        current = self.registry.get_job_or_raise(job_id)
        completed = _utcnow()
        duration_ms = None
        if current.started_at is not None:
            duration_ms = int((completed - current.started_at).total_seconds() * 1000)
        final = self.registry.update(
            job_id, status=status, completed_at=completed, duration_ms=duration_ms, **changes
        )
        logger.info(f"[Worker] Job {job_id} -> {status.value} in {duration_ms}ms")
        return final

    def _log(self, job_id: str, message: str) -> None:
        stamp = time.strftime("%H:%M:%S")
        self.registry.append_log(job_id, f"[{stamp}] {message}")
        logger.info(f"[Worker] {job_id}: {message}")

