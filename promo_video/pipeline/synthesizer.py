"""
Video synthesis — Sora 2 image-to-video via Kie.ai.

Submits a task and decodes the provider's recordInfo JSON into one of
TaskSucceeded / TaskPending / TaskFailed before anything branches on it.
"""

import logging

from ..kie import KieClient, KieUnavailableError, parse_result_url
from .models import TaskFailed, TaskPending, TaskStatus, TaskSucceeded

logger = logging.getLogger(__name__)

SUCCESS_STATES = {"success"}
FAILED_STATES = {"fail", "failed", "error"}

# Lower-case substrings that mark a failure as a content-policy rejection
POLICY_KEYWORDS = (
    "guardrail",
    "third-party content",
    "violat",
    "policy",
    "copyright",
)


def is_policy_violation(reason: str) -> bool:
    lowered = (reason or "").lower()
    return any(keyword in lowered for keyword in POLICY_KEYWORDS)


def thumbnail_for(video_url: str) -> str:
    return video_url.replace(".mp4", "_thumbnail.jpg")


def decode_task_record(record: dict) -> TaskStatus:
    """Map a recordInfo `data` object onto a TaskStatus variant."""
    state = str(record.get("state") or "").lower()

    if state in SUCCESS_STATES:
        url = parse_result_url(record.get("resultJson"))
        if not url:
            return TaskFailed(reason="Task reported success without a result URL")
        return TaskSucceeded(result_url=url)

    if state in FAILED_STATES:
        reason = record.get("failMsg") or record.get("failCode") or "Unknown video generation error"
        return TaskFailed(reason=str(reason))

    return TaskPending(state=state or "pending")


class VideoSynthesizer:

    def __init__(self, kie: KieClient):
        self._kie = kie

    async def create_task(self, prompt: str, image_url: str) -> str:
        task_id = await self._kie.create_task(prompt, image_url)
        logger.info(f"Sora video task created: {task_id}")
        return task_id

    async def poll_task(self, task_id: str) -> TaskStatus:
        """One status read. A busy or unreachable Kie.ai reads as still pending."""
        try:
            record = await self._kie.get_task(task_id)
        except KieUnavailableError as e:
            logger.warning(f"Sora task {task_id} status unavailable, counting as pending: {e}")
            return TaskPending(state="unavailable")
        return decode_task_record(record)
