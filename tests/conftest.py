"""Shared doubles and fixtures for the pipeline tests."""

from __future__ import annotations

from typing import Callable, Optional

import httpx
import pytest

from promo_video import metrics
from promo_video.pipeline.job_store import InMemoryJobStore
from promo_video.pipeline.models import (
  ImageMode,
  JobStatus,
  TaskPending,
  TaskStatus,
  VideoJob,
  VideoJobInputs,
)
from promo_video.pipeline.orchestrator import VideoGenerationService

SOURCE_URL = "https://i.etsystatic.com/listing/hero.jpg"


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics():
  metrics.reset()
  yield
  metrics.reset()


class FakeDetector:
  def __init__(self, result: bool = False):
    self.result = result
    self.calls: list[bytes] = []

  async def detect_subject(self, image_bytes: bytes) -> bool:
    self.calls.append(image_bytes)
    return self.result


class FakeTransformer:
  def __init__(self):
    self.modes: list[ImageMode] = []

  async def transform(self, image_bytes: bytes, mode: ImageMode) -> bytes:
    self.modes.append(mode)
    return mode.value.encode() + b":" + image_bytes


class FakePublisher:
  def __init__(self):
    self.published: dict[str, bytes] = {}

  async def publish(self, data: bytes, name: str) -> str:
    self.published[name] = data
    return f"https://cdn.test/{name}"


class FakeWriter:
  def __init__(self, script: str = "X", sanitized: Optional[Callable[[str, str], str]] = None, error: Exception | None = None):
    self.script = script
    self.sanitized = sanitized or (lambda prompt, reason: f"{prompt}-clean")
    self.error = error
    self.write_calls: list[tuple] = []
    self.sanitize_calls: list[tuple[str, str]] = []

  async def write_script(self, product_title, description, tags, image_url) -> str:
    self.write_calls.append((product_title, description, tags, image_url))
    if self.error is not None:
      raise self.error
    return self.script

  async def sanitize(self, original_prompt: str, violation_reason: str) -> str:
    self.sanitize_calls.append((original_prompt, violation_reason))
    return self.sanitized(original_prompt, violation_reason)


class FakeSynthesizer:
  """Returns scripted poll results in order; repeats the last one when exhausted."""

  def __init__(self, polls: list[TaskStatus] | None = None):
    self.polls = list(polls or [TaskPending()])
    self.created: list[tuple[str, str]] = []
    self.polled: list[str] = []

  async def create_task(self, prompt: str, image_url: str) -> str:
    self.created.append((prompt, image_url))
    return f"task-{len(self.created)}"

  async def poll_task(self, task_id: str) -> TaskStatus:
    self.polled.append(task_id)
    if len(self.polls) > 1:
      return self.polls.pop(0)
    return self.polls[0]


def image_transport(content: bytes = b"source-image-bytes") -> httpx.MockTransport:
  def handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "unreachable.test":
      raise httpx.ConnectError("unreachable", request=request)
    return httpx.Response(200, content=content, headers={"content-type": "image/jpeg"})

  return httpx.MockTransport(handler)


class Harness:
  def __init__(self, **overrides):
    self.store = overrides.pop("store", None) or InMemoryJobStore()
    self.detector = overrides.pop("detector", None) or FakeDetector()
    self.transformer = FakeTransformer()
    self.publisher = FakePublisher()
    self.writer = overrides.pop("writer", None) or FakeWriter()
    self.synthesizer = overrides.pop("synthesizer", None) or FakeSynthesizer()
    self.sleeps: list[float] = []
    self.elapsed = 0.0
    self.http = httpx.AsyncClient(transport=image_transport())

    async def fake_sleep(seconds: float):
      self.sleeps.append(seconds)
      self.elapsed += seconds

    self.service = VideoGenerationService(
      store=self.store,
      detector=self.detector,
      transformer=self.transformer,
      publisher=self.publisher,
      writer=self.writer,
      synthesizer=self.synthesizer,
      http=self.http,
      poll_interval=overrides.pop("poll_interval", 10.0),
      max_poll_attempts=overrides.pop("max_poll_attempts", 30),
      max_remediation_rounds=overrides.pop("max_remediation_rounds", 2),
      sleep=fake_sleep,
      clock=lambda: self.elapsed,
    )
    self.statuses: list[JobStatus] = []
    self.snapshots: list[VideoJob] = []

  def record(self, job_id: str):
    def _listener(job: VideoJob):
      self.snapshots.append(job)
      if not self.statuses or self.statuses[-1] != job.status:
        self.statuses.append(job.status)

    return self.store.subscribe(job_id, _listener)

  async def create(self, inputs: VideoJobInputs | None = None, job_id: str = "job-1") -> VideoJob:
    job = await self.service.create_job("user-1", inputs or make_inputs(), job_id=job_id)
    self.record(job.id)
    return job


def make_inputs(**overrides) -> VideoJobInputs:
  values = {
    "listing_id": "1234567",
    "product_title": "Handmade Ceramic Mug",
    "product_description": "Speckled stoneware mug, 12oz",
    "product_tags": ["mug", "ceramic", "gift"],
    "source_image_url": SOURCE_URL,
  }
  values.update(overrides)
  return VideoJobInputs(**values)


