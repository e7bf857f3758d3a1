"""
Error taxonomy for the video generation pipeline.

Every stage raises one of these; the orchestrator is the only place that turns
them into a failed job record.
"""


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    kind = "pipeline_error"


class ValidationError(PipelineError):
    """A required input is missing. Raised before any external call."""

    kind = "validation"


class TransientExternalError(PipelineError):
    """A non-video external call failed or returned something unusable."""

    kind = "external"


class ContentPolicyViolation(PipelineError):
    """The video service rejected the prompt for policy reasons."""

    kind = "content_policy"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SynthesisTimeoutError(PipelineError, TimeoutError):
    """The poll budget ran out before the video task finished."""

    kind = "timeout"


class UnrecoverableServiceError(PipelineError):
    """The video service failed in a way remediation cannot fix."""

    kind = "video_failed"


class JobNotFoundError(PipelineError):
    kind = "not_found"


class JobConflictError(PipelineError):
    """The job is not in a state that allows this write (already claimed or terminal)."""

    kind = "conflict"
