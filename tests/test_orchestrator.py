"""Pipeline orchestration: state sequence, image branch, poll / remediation loop."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from conftest import SOURCE_URL, FakeDetector, FakeSynthesizer, FakeWriter, Harness, make_inputs

from promo_video import metrics
from promo_video.config import Settings
from promo_video.kie import KieClient
from promo_video.pipeline import orchestrator as orchestrator_module
from promo_video.pipeline.errors import JobConflictError, JobNotFoundError, TransientExternalError
from promo_video.pipeline.models import ImageMode, JobStatus, TaskFailed, TaskPending, TaskSucceeded
from promo_video.pipeline.synthesizer import VideoSynthesizer

VIDEO_U = "https://tempfile.aiquickdraw.com/v/U.mp4"
VIDEO_V = "https://tempfile.aiquickdraw.com/v/V.mp4"

HAPPY_PATH_NO_SUBJECT = [
  JobStatus.ANALYZING_SUBJECT,
  JobStatus.OPTIMIZING_IMAGE,
  JobStatus.WRITING_SCRIPT,
  JobStatus.SYNTHESIZING_VIDEO,
  JobStatus.COMPLETED,
]


@pytest.mark.anyio
async def test_no_subject_clean_success():
  h = Harness(
    detector=FakeDetector(False),
    writer=FakeWriter(script="X"),
    synthesizer=FakeSynthesizer([TaskSucceeded(result_url=VIDEO_U)]),
  )
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is True
  assert result.video_url == VIDEO_U
  job = await h.store.get("job-1")
  assert job.status == JobStatus.COMPLETED
  assert job.video_url == VIDEO_U
  assert job.thumbnail_url == "https://tempfile.aiquickdraw.com/v/U_thumbnail.jpg"
  assert job.subject_detected is False
  assert job.image_was_edited is False
  assert job.retry_count == 0
  assert job.video_script == "X"
  assert job.external_task_id == "task-1"
  assert job.error_message is None
  assert job.completed_at is not None
  assert job.generation_time_seconds is not None
  assert job.processed_image_url == "https://cdn.test/pipeline/job-1/product.jpg"
  assert job.processed_image_url != SOURCE_URL
  assert h.transformer.modes == [ImageMode.OPTIMIZE]
  assert h.statuses == HAPPY_PATH_NO_SUBJECT


@pytest.mark.anyio
async def test_subject_edit_with_one_remediation_round():
  h = Harness(
    detector=FakeDetector(True),
    writer=FakeWriter(script="Y", sanitized=lambda prompt, reason: "Y-clean"),
    synthesizer=FakeSynthesizer([
      TaskFailed(reason="copyright violation"),
      TaskSucceeded(result_url=VIDEO_V),
    ]),
  )
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is True
  job = await h.store.get("job-1")
  assert job.status == JobStatus.COMPLETED
  assert job.video_script == "Y-clean"
  assert job.video_url == VIDEO_V
  assert job.retry_count == 1
  assert job.subject_detected is True
  assert job.image_was_edited is True
  assert job.processed_image_url == "https://cdn.test/pipeline/job-1/edited-product.png"
  assert job.external_task_id == "task-2"
  assert h.writer.sanitize_calls == [("Y", "copyright violation")]
  assert [prompt for prompt, _ in h.synthesizer.created] == ["Y", "Y-clean"]
  assert h.synthesizer.polled == ["task-1", "task-2"]
  # Remediation never regresses the status
  assert h.statuses == [
    JobStatus.ANALYZING_SUBJECT,
    JobStatus.EDITING_IMAGE,
    JobStatus.WRITING_SCRIPT,
    JobStatus.SYNTHESIZING_VIDEO,
    JobStatus.COMPLETED,
  ]
  assert metrics.get_snapshot()["counters"]["video.remediation_rounds"] == 1


@pytest.mark.anyio
async def test_poll_budget_exhausted_times_out():
  h = Harness(synthesizer=FakeSynthesizer([TaskPending()]), max_poll_attempts=5, poll_interval=10.0)
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  job = await h.store.get("job-1")
  assert job.status == JobStatus.FAILED
  assert "timeout" in job.error_message.lower()
  assert job.video_url is None
  assert len(h.synthesizer.polled) == 5
  # Bounded by max_poll_attempts * poll_interval
  assert sum(h.sleeps) == pytest.approx(50.0)


@pytest.mark.anyio
async def test_non_policy_failure_fails_without_sanitizing():
  h = Harness(synthesizer=FakeSynthesizer([TaskFailed(reason="internal error")]))
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  job = await h.store.get("job-1")
  assert job.status == JobStatus.FAILED
  assert "internal error" in job.error_message
  assert job.retry_count == 0
  assert h.writer.sanitize_calls == []
  assert len(h.synthesizer.created) == 1
  assert len(h.synthesizer.polled) == 1


@pytest.mark.anyio
async def test_remediation_bound_is_enforced():
  h = Harness(
    synthesizer=FakeSynthesizer([TaskFailed(reason="Blocked by guardrails: third-party content")]),
    max_remediation_rounds=2,
  )
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  job = await h.store.get("job-1")
  assert job.status == JobStatus.FAILED
  assert job.retry_count == 2
  assert len(h.writer.sanitize_calls) == 2
  assert len(h.synthesizer.created) == 3
  assert "remediation" in job.error_message
  # retry_count climbs by exactly one per round
  counts = [snap.retry_count for snap in h.snapshots]
  assert counts == sorted(counts)
  assert max(counts) == 2


@pytest.mark.anyio
async def test_remediation_disabled_fails_on_first_violation():
  h = Harness(
    synthesizer=FakeSynthesizer([TaskFailed(reason="content policy violation")]),
    max_remediation_rounds=0,
  )
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  assert h.writer.sanitize_calls == []
  assert (await h.store.get("job-1")).retry_count == 0


@pytest.mark.anyio
async def test_attempt_budget_spans_remediation_rounds():
  h = Harness(
    synthesizer=FakeSynthesizer([TaskFailed(reason="copyright"), TaskPending()]),
    max_poll_attempts=4,
  )
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  assert len(h.synthesizer.polled) == 4
  assert "timeout" in result.error.lower()


@pytest.mark.anyio
async def test_missing_input_fails_before_external_calls():
  h = Harness()
  await h.create(make_inputs(product_title="  "))

  result = await h.service.run("job-1", make_inputs(product_title="  "))

  assert result.success is False
  assert "product_title" in result.error
  job = await h.store.get("job-1")
  assert job.status == JobStatus.FAILED
  assert h.statuses == [JobStatus.FAILED]
  assert h.detector.calls == []
  assert h.synthesizer.created == []


@pytest.mark.anyio
async def test_script_failure_is_terminal():
  h = Harness(writer=FakeWriter(error=TransientExternalError("Gemini API error 500: boom")))
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  job = await h.store.get("job-1")
  assert job.status == JobStatus.FAILED
  assert job.error_message == "Gemini API error 500: boom"
  assert job.video_script is None
  assert h.synthesizer.created == []
  assert h.statuses == [
    JobStatus.ANALYZING_SUBJECT,
    JobStatus.OPTIMIZING_IMAGE,
    JobStatus.WRITING_SCRIPT,
    JobStatus.FAILED,
  ]
  assert metrics.get_snapshot()["counters"]["pipeline.failed.external"] == 1


@pytest.mark.anyio
async def test_unreachable_source_image_fails_in_analysis():
  h = Harness()
  await h.create(make_inputs(source_image_url="https://unreachable.test/x.jpg"))

  result = await h.service.run("job-1", make_inputs(source_image_url="https://unreachable.test/x.jpg"))

  assert result.success is False
  assert h.statuses == [JobStatus.ANALYZING_SUBJECT, JobStatus.FAILED]
  assert h.detector.calls == []


@pytest.mark.anyio
async def test_second_run_of_same_job_is_rejected():
  h = Harness(synthesizer=FakeSynthesizer([TaskSucceeded(result_url=VIDEO_U)]))
  await h.create()
  await h.service.run("job-1", make_inputs())

  with pytest.raises(JobConflictError):
    await h.service.run("job-1", make_inputs())

  assert len(h.detector.calls) == 1
  assert len(h.synthesizer.created) == 1


@pytest.mark.anyio
async def test_already_claimed_job_makes_no_external_call():
  h = Harness()
  await h.create()
  await h.store.claim("job-1")

  with pytest.raises(JobConflictError):
    await h.service.run("job-1", make_inputs())

  assert h.detector.calls == []


@pytest.mark.anyio
async def test_unknown_job_raises_not_found():
  h = Harness()

  with pytest.raises(JobNotFoundError):
    await h.service.run("missing", make_inputs())


@pytest.mark.anyio
async def test_observer_never_sees_status_without_its_data():
  h = Harness(
    detector=FakeDetector(True),
    synthesizer=FakeSynthesizer([TaskPending(), TaskSucceeded(result_url=VIDEO_U)]),
  )
  await h.create()

  await h.service.run("job-1", make_inputs())

  for snap in h.snapshots:
    if snap.status in (JobStatus.EDITING_IMAGE, JobStatus.OPTIMIZING_IMAGE):
      assert snap.subject_detected is (snap.status == JobStatus.EDITING_IMAGE)
    if snap.status in (JobStatus.WRITING_SCRIPT, JobStatus.SYNTHESIZING_VIDEO, JobStatus.COMPLETED):
      assert snap.processed_image_url is not None
    if snap.status in (JobStatus.SYNTHESIZING_VIDEO, JobStatus.COMPLETED):
      assert snap.video_script is not None
    assert (snap.video_url is not None) == (snap.status == JobStatus.COMPLETED)
    assert (snap.error_message is not None) == (snap.status == JobStatus.FAILED)


@pytest.mark.anyio
async def test_completed_record_is_immutable():
  h = Harness(synthesizer=FakeSynthesizer([TaskSucceeded(result_url=VIDEO_U)]))
  await h.create()
  await h.service.run("job-1", make_inputs())

  with pytest.raises(JobConflictError):
    await h.store.update("job-1", {"video_script": "late write"})


@pytest.mark.anyio
async def test_background_run_completes():
  h = Harness(synthesizer=FakeSynthesizer([TaskSucceeded(result_url=VIDEO_U)]))
  await h.create()

  task = h.service.run_background("job-1", make_inputs())
  result = await task

  assert result.success is True
  assert (await h.store.get("job-1")).status == JobStatus.COMPLETED


# ── Wall-clock bound on the video stage ──────────────────────────────────────


@pytest.mark.anyio
async def test_busy_video_service_stays_within_poll_budget():
  kie_calls: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    kie_calls.append(request.url.path)
    if request.url.path.endswith("/jobs/createTask"):
      return httpx.Response(200, json={"data": {"taskId": "sora-1"}})
    return httpx.Response(503, text="upstream overloaded")

  # A large base delay would show up as real waiting if a poll retried internally
  settings = Settings(kie_api_key="kie-test-key", kie_base_delay=30.0, kie_max_retries=5)
  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as kie_http:
    synthesizer = VideoSynthesizer(KieClient(settings, kie_http))
    h = Harness(synthesizer=synthesizer, max_poll_attempts=3, poll_interval=10.0)
    await h.create()

    result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  assert "3 poll attempts (30s budget)" in result.error
  assert kie_calls.count("/api/v1/jobs/recordInfo") == 3
  assert h.elapsed <= 3 * 10.0


@pytest.mark.anyio
async def test_slow_polls_eat_into_the_remaining_budget():
  h = Harness(max_poll_attempts=3, poll_interval=10.0)

  async def slow_poll(task_id: str) -> TaskPending:
    h.elapsed += 8.0
    return TaskPending()

  h.synthesizer.poll_task = slow_poll
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  assert "2 poll attempts" in result.error
  assert sum(h.sleeps) <= 30.0


@pytest.mark.anyio
async def test_hung_poll_is_cut_off_at_the_deadline(monkeypatch):
  monkeypatch.setattr(orchestrator_module, "DEADLINE_GRACE", 0.05)
  h = Harness(max_poll_attempts=1, poll_interval=0.01)

  async def hung_poll(task_id: str):
    await asyncio.Event().wait()

  h.synthesizer.poll_task = hung_poll
  await h.create()

  result = await h.service.run("job-1", make_inputs())

  assert result.success is False
  job = await h.store.get("job-1")
  assert job.status == JobStatus.FAILED
  assert "budget exhausted" in job.error_message
