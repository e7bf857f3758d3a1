"""
Product Video Pipeline

Turns a listing's hero image plus metadata into a short UGC-style video:
  Subject detection → Image edit / optimize → Script → Sora 2 video (poll + remediate)

Progress lives in one persisted job record per run (`video_generation_jobs`).
"""

from .errors import (
    ContentPolicyViolation,
    JobConflictError,
    JobNotFoundError,
    PipelineError,
    SynthesisTimeoutError,
    TransientExternalError,
    UnrecoverableServiceError,
    ValidationError,
)
from .models import JobStatus, RunResult, VideoJob, VideoJobInputs

__all__ = [
    "ContentPolicyViolation",
    "JobConflictError",
    "JobNotFoundError",
    "PipelineError",
    "SynthesisTimeoutError",
    "TransientExternalError",
    "UnrecoverableServiceError",
    "ValidationError",
    "JobStatus",
    "RunResult",
    "VideoJob",
    "VideoJobInputs",
]
