"""
Pydantic models and enums for the product video pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Job Status ───────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    ANALYZING_SUBJECT = "analyzing_subject"
    EDITING_IMAGE = "editing_image"
    OPTIMIZING_IMAGE = "optimizing_image"
    WRITING_SCRIPT = "writing_script"
    SYNTHESIZING_VIDEO = "synthesizing_video"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# failed is reachable from every non-terminal state and is added below
_FORWARD_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.ANALYZING_SUBJECT},
    JobStatus.ANALYZING_SUBJECT: {JobStatus.EDITING_IMAGE, JobStatus.OPTIMIZING_IMAGE},
    JobStatus.EDITING_IMAGE: {JobStatus.WRITING_SCRIPT},
    JobStatus.OPTIMIZING_IMAGE: {JobStatus.WRITING_SCRIPT},
    JobStatus.WRITING_SCRIPT: {JobStatus.SYNTHESIZING_VIDEO},
    JobStatus.SYNTHESIZING_VIDEO: {JobStatus.COMPLETED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    """True if a record in `current` may be written with status `new`."""
    if current.is_terminal:
        return False
    if new == current:
        return True
    if new == JobStatus.FAILED:
        return True
    return new in _FORWARD_TRANSITIONS[current]


# ── Job Record ───────────────────────────────────────────────────────────────

class VideoJobInputs(BaseModel):
    """Immutable inputs of one pipeline run."""
    listing_id: str = ""
    product_title: str = ""
    product_description: Optional[str] = None
    product_tags: list[str] = Field(default_factory=list)
    source_image_url: str = ""


class VideoJob(BaseModel):
    id: str
    owner: str
    listing_id: str
    product_title: str
    product_description: Optional[str] = None
    product_tags: list[str] = Field(default_factory=list)
    source_image_url: str

    processed_image_url: Optional[str] = None
    subject_detected: bool = False
    image_was_edited: bool = False
    video_script: Optional[str] = None
    external_task_id: Optional[str] = None
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None

    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    generation_time_seconds: Optional[int] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def new(cls, job_id: str, owner: str, inputs: VideoJobInputs) -> "VideoJob":
        return cls(id=job_id, owner=owner, **inputs.model_dump())

    def inputs(self) -> VideoJobInputs:
        return VideoJobInputs(
            listing_id=self.listing_id,
            product_title=self.product_title,
            product_description=self.product_description,
            product_tags=list(self.product_tags),
            source_image_url=self.source_image_url,
        )


# Fields the pipeline is allowed to write after creation
MUTABLE_FIELDS = frozenset({
    "processed_image_url",
    "subject_detected",
    "image_was_edited",
    "video_script",
    "external_task_id",
    "video_url",
    "thumbnail_url",
    "status",
    "retry_count",
    "error_message",
    "generation_time_seconds",
    "completed_at",
})


# ── Image stage ──────────────────────────────────────────────────────────────

class ImageMode(str, Enum):
    EDIT = "edit"
    OPTIMIZE = "optimize"


# ── Video task status (decoded from the provider's JSON) ─────────────────────

class TaskSucceeded(BaseModel):
    result_url: str


class TaskPending(BaseModel):
    state: str = "pending"


class TaskFailed(BaseModel):
    reason: str = ""


TaskStatus = Union[TaskSucceeded, TaskPending, TaskFailed]


# ── Orchestrator result ──────────────────────────────────────────────────────

class RunResult(BaseModel):
    job_id: str
    success: bool
    video_url: Optional[str] = None
    error: Optional[str] = None


# ── API Request / Response Models ────────────────────────────────────────────

class CreateJobRequest(VideoJobInputs):
    """Create a pending job record on behalf of the surrounding app."""
    owner: str
    job_id: Optional[str] = None


class GenerateVideoRequest(VideoJobInputs):
    """Trigger contract: run the pipeline for an existing pending job."""
    job_id: str


class GenerateVideoResponse(BaseModel):
    success: bool
    job_id: str
    video_url: Optional[str] = None
    status: Optional[JobStatus] = None
