"""
VideoGenerationService — product video pipeline orchestrator.

Chains the stages with a persisted status after each one:
  Step 1: Subject detection (Gemini Flash vision)
  Step 2: Image edit or optimize, then publish
  Step 3: Script writing (Gemini Flash text)
  Step 4: Video synthesis (Sora 2 via Kie.ai) with the poll / remediate loop

Status sequence:
  pending → analyzing_subject → editing_image | optimizing_image
          → writing_script → synthesizing_video → completed
  failed is reachable from every non-terminal state.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

import httpx

from .. import metrics
from .errors import (
    ContentPolicyViolation,
    JobConflictError,
    JobNotFoundError,
    PipelineError,
    SynthesisTimeoutError,
    UnrecoverableServiceError,
    ValidationError,
)
from .image_edit import ImageTransformer
from .job_store import JobStore
from .models import (
    ImageMode,
    JobStatus,
    RunResult,
    TaskFailed,
    TaskSucceeded,
    VideoJob,
    VideoJobInputs,
    utc_now,
)
from .script_writer import ScriptWriter
from .storage import AssetPublisher, artifact_key, download_image_bytes
from .synthesizer import VideoSynthesizer, is_policy_violation, thumbnail_for
from .vision import SubjectDetector

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]
Clock = Callable[[], float]
T = TypeVar("T")

# Seconds an in-flight video service call may still get once the deadline is reached
DEADLINE_GRACE = 5.0


class _RunState:
    """What one run knows about its own record: the last status it wrote."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.status = JobStatus.PENDING
        self.started = time.monotonic()

    def elapsed_seconds(self) -> int:
        return int(time.monotonic() - self.started)


def classify_failure(reason: str) -> PipelineError:
    if is_policy_violation(reason):
        return ContentPolicyViolation(reason)
    return UnrecoverableServiceError(f"Video generation failed: {reason}")


class VideoGenerationService:
    """
    Pipeline orchestrator. One `run` drives one job; distinct jobs may run
    concurrently, each being the single writer of its own record.

    Usage:
        service = build_service(settings, http)
        job = await service.create_job(owner, inputs)
        result = await service.run(job.id, inputs)
    """

    def __init__(
        self,
        store: JobStore,
        detector: SubjectDetector,
        transformer: ImageTransformer,
        publisher: AssetPublisher,
        writer: ScriptWriter,
        synthesizer: VideoSynthesizer,
        http: httpx.AsyncClient,
        poll_interval: float = 10.0,
        max_poll_attempts: int = 30,
        max_remediation_rounds: int = 2,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ):
        self.store = store
        self.detector = detector
        self.transformer = transformer
        self.publisher = publisher
        self.writer = writer
        self.synthesizer = synthesizer
        self._http = http
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.max_remediation_rounds = max_remediation_rounds
        self._sleep = sleep
        self._clock = clock
        self._background: set[asyncio.Task] = set()

    # ── Job records ──────────────────────────────────────────────────────

    async def create_job(self, owner: str, inputs: VideoJobInputs, job_id: Optional[str] = None) -> VideoJob:
        """Create the pending record a run will later claim."""
        job = VideoJob.new(job_id or str(uuid4()), owner, inputs)
        return await self.store.create(job)

    async def get_job(self, job_id: str) -> VideoJob:
        return await self.store.get(job_id)

    # ── Persistence helpers ──────────────────────────────────────────────

    async def _advance(self, run: _RunState, fields: dict[str, Any]) -> VideoJob:
        job = await self.store.update(run.job_id, fields, expected_status=run.status)
        previous, run.status = run.status, job.status
        if previous != run.status:
            logger.info(f"[{run.job_id}] {previous.value} → {run.status.value}")
        return job

    async def _fail(self, run: _RunState, error: PipelineError) -> RunResult:
        message = str(error) or error.__class__.__name__
        logger.error(f"[{run.job_id}] failed in {run.status.value}: {message}")
        metrics.inc_counter(f"pipeline.failed.{error.kind}")
        metrics.record_error(run.status.value, error.kind, message, run.job_id)
        await self._advance(run, {
            "status": JobStatus.FAILED,
            "error_message": message,
            "completed_at": utc_now(),
            "generation_time_seconds": run.elapsed_seconds(),
        })
        return RunResult(job_id=run.job_id, success=False, error=message)

    @contextmanager
    def _timed(self, stage: str):
        started = time.monotonic()
        try:
            yield
        finally:
            metrics.record_latency(stage, (time.monotonic() - started) * 1000)

    # ── Entry point ──────────────────────────────────────────────────────

    @staticmethod
    def validate_inputs(inputs: VideoJobInputs):
        missing = [
            name for name in ("listing_id", "product_title", "source_image_url")
            if not (getattr(inputs, name) or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required input(s): {', '.join(missing)}")

    async def run(self, job_id: str, inputs: VideoJobInputs) -> RunResult:
        """
        Run the full pipeline for a pending job.

        Every stage failure ends as a failed record and an unsuccessful
        RunResult. JobNotFoundError / JobConflictError are raised instead,
        since the record is then not this run's to write.
        """
        run = _RunState(job_id)
        metrics.inc_counter("pipeline.started")
        metrics.add_gauge("active_jobs", 1)
        try:
            try:
                self.validate_inputs(inputs)
            except ValidationError as e:
                return await self._fail(run, e)

            # Single-writer guard: atomic pending → analyzing_subject before any external call
            job = await self.store.claim(job_id)
            run.status = job.status
            logger.info(f"[{job_id}] claimed: listing={inputs.listing_id}, title={inputs.product_title!r}")

            try:
                video_url = await self._run_stages(run, inputs)
            except (JobConflictError, JobNotFoundError):
                raise
            except PipelineError as e:
                return await self._fail(run, e)
            except Exception as e:
                logger.error(f"[{job_id}] unexpected pipeline error: {e}", exc_info=True)
                return await self._fail(run, PipelineError(f"Unexpected error: {e}"))

            metrics.inc_counter("pipeline.completed")
            return RunResult(job_id=job_id, success=True, video_url=video_url)
        finally:
            metrics.add_gauge("active_jobs", -1)

    def run_background(self, job_id: str, inputs: VideoJobInputs) -> asyncio.Task:
        """Fire-and-forget wrapper for run."""
        task = asyncio.create_task(self.run(job_id, inputs))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background pipeline run failed: {task.exception()}")

    # ── Stages ───────────────────────────────────────────────────────────

    async def _run_stages(self, run: _RunState, inputs: VideoJobInputs) -> str:
        processed_image_url = await self._process_image(run, inputs)

        with self._timed("writing_script"):
            script = await self.writer.write_script(
                inputs.product_title,
                inputs.product_description,
                inputs.product_tags,
                processed_image_url,
            )
        await self._advance(run, {"video_script": script, "status": JobStatus.SYNTHESIZING_VIDEO})

        with self._timed("synthesizing_video"):
            video_url = await self._synthesize_video(run, script, processed_image_url)

        await self._advance(run, {
            "status": JobStatus.COMPLETED,
            "video_url": video_url,
            "thumbnail_url": thumbnail_for(video_url),
            "completed_at": utc_now(),
            "generation_time_seconds": run.elapsed_seconds(),
        })
        logger.info(f"[{run.job_id}] video generation completed: {video_url}")
        return video_url

    async def _process_image(self, run: _RunState, inputs: VideoJobInputs) -> str:
        with self._timed("analyzing_subject"):
            image_bytes = await download_image_bytes(self._http, inputs.source_image_url)
            subject = await self.detector.detect_subject(image_bytes)

        if subject:
            mode, status, name = ImageMode.EDIT, JobStatus.EDITING_IMAGE, "edited-product.png"
        else:
            mode, status, name = ImageMode.OPTIMIZE, JobStatus.OPTIMIZING_IMAGE, "product.jpg"
        await self._advance(run, {"subject_detected": subject, "status": status})

        with self._timed(status.value):
            transformed = await self.transformer.transform(image_bytes, mode)
            url = await self.publisher.publish(transformed, artifact_key(run.job_id, name))

        await self._advance(run, {
            "processed_image_url": url,
            "image_was_edited": mode == ImageMode.EDIT,
            "status": JobStatus.WRITING_SCRIPT,
        })
        return url

    async def _bounded(self, call: Awaitable[T], deadline: float) -> T:
        """Await an external call without letting it run past the stage deadline."""
        timeout = max(deadline - self._clock(), DEADLINE_GRACE)
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            raise SynthesisTimeoutError(
                f"Video generation timeout: {self._poll_budget():.0f}s budget exhausted "
                f"waiting on the video service"
            ) from e

    def _poll_budget(self) -> float:
        return self.max_poll_attempts * self.poll_interval

    async def _submit(self, run: _RunState, prompt: str, image_url: str, deadline: float) -> str:
        task_id = await self._bounded(self.synthesizer.create_task(prompt, image_url), deadline)
        await self._advance(run, {"external_task_id": task_id})
        return task_id

    async def _synthesize_video(self, run: _RunState, script: str, image_url: str) -> str:
        """
        Submit, then poll until success, failure or an exhausted budget.

        A policy-classified failure rewrites the prompt and resubmits, at most
        `max_remediation_rounds` times. The attempt budget and the wall-clock
        deadline (max_poll_attempts * poll_interval) span all rounds.
        """
        deadline = self._clock() + self._poll_budget()
        prompt = script
        retry_count = 0
        attempt = 0
        task_id = await self._submit(run, prompt, image_url, deadline)

        while attempt < self.max_poll_attempts:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            attempt += 1
            await self._sleep(min(self.poll_interval, remaining))

            status = await self._bounded(self.synthesizer.poll_task(task_id), deadline)
            metrics.inc_counter("video.polls")
            logger.info(f"[{run.job_id}] poll #{attempt} task={task_id}: {type(status).__name__}")

            if isinstance(status, TaskSucceeded):
                return status.result_url

            if not isinstance(status, TaskFailed):
                continue

            error = classify_failure(status.reason)
            if not isinstance(error, ContentPolicyViolation):
                raise error
            if retry_count >= self.max_remediation_rounds:
                raise UnrecoverableServiceError(
                    f"Video generation failed after {retry_count} remediation round(s): {status.reason}"
                ) from error

            logger.warning(f"[{run.job_id}] content policy violation, rewriting prompt: {status.reason}")
            prompt = await self._bounded(self.writer.sanitize(prompt, status.reason), deadline)
            retry_count += 1
            metrics.inc_counter("video.remediation_rounds")
            await self._advance(run, {"video_script": prompt, "retry_count": retry_count})
            task_id = await self._submit(run, prompt, image_url, deadline)

        raise SynthesisTimeoutError(
            f"Video generation timeout: no result after {attempt} poll attempts "
            f"({self._poll_budget():.0f}s budget)"
        )
