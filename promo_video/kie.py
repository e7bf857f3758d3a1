import asyncio
import json
import random
import logging
from typing import Optional

import httpx

from .config import Settings
from .pipeline.errors import TransientExternalError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})
# createTask is not idempotent: a 502/504 may already have created a task
CREATE_RETRYABLE_STATUS_CODES = frozenset({429})
UNSENT_REQUEST_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)

# ── Fixed Sora 2 output configuration ────────────────────────────────────────
VIDEO_ASPECT_RATIO = "landscape"
VIDEO_N_FRAMES = "10"
VIDEO_REMOVE_WATERMARK = True


class KieUnavailableError(TransientExternalError):
    """Kie.ai was busy (429 / 5xx) or unreachable after the allowed attempts."""


class KieClient:
    """
    Kie.ai jobs API (createTask / recordInfo) and file-stream upload.

    createTask retries with exponential backoff (base_delay * 2^attempt +
    random jitter, honouring Retry-After). recordInfo is single-shot.
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self._api_key = settings.kie_api_key
        self._api_base = settings.kie_api_base.rstrip("/")
        self._upload_url = settings.kie_upload_url
        self._upload_path = settings.kie_upload_path
        self._model = settings.video_model
        self._timeout = settings.http_timeout
        self._max_retries = settings.kie_max_retries
        self._base_delay = settings.kie_base_delay
        self._http = http

    def _headers(self) -> dict:
        if not self._api_key:
            raise TransientExternalError("KIE_API_KEY not set")
        return {"Authorization": f"Bearer {self._api_key}"}

    async def _request_with_backoff(
        self,
        method: str,
        url: str,
        max_retries: Optional[int] = None,
        retry_statuses: frozenset = RETRYABLE_STATUS_CODES,
        retry_errors: tuple = (httpx.TransportError,),
        **kwargs,
    ) -> httpx.Response:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        max_retries = self._max_retries if max_retries is None else max_retries

        for attempt in range(max_retries + 1):
            last_attempt = attempt == max_retries
            try:
                response = await self._http.request(
                    method, url, headers=headers, timeout=self._timeout, **kwargs
                )
            except httpx.TransportError as e:
                if last_attempt or not isinstance(e, retry_errors):
                    raise KieUnavailableError(f"Kie.ai request error: {e}") from e
                delay = self._base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"Kie.ai request error on attempt {attempt + 1}/{max_retries + 1}: {e}, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code not in retry_statuses or last_attempt:
                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise KieUnavailableError(
                        f"Kie.ai error {response.status_code} for {url}: {response.text[:300]}"
                    )
                if response.is_error:
                    raise TransientExternalError(
                        f"Kie.ai error {response.status_code} for {url}: {response.text[:300]}"
                    )
                return response

            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                delay = int(retry_after)
            else:
                delay = self._base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)

            logger.warning(
                f"Kie.ai {response.status_code} on attempt {attempt + 1}/{max_retries + 1}, "
                f"retrying in {delay:.1f}s (url={url})"
            )
            await asyncio.sleep(delay)

        raise KieUnavailableError(f"Request to {url} failed after {max_retries + 1} attempts")

    # ── Video tasks ──────────────────────────────────────────────────────

    async def create_task(self, prompt: str, image_url: str) -> str:
        """
        Submit a Sora 2 image-to-video task. Returns the task id.

        Not idempotent: only retried when Kie.ai cannot have accepted the
        request (429, or the connection was never made).
        """
        payload = {
            "model": self._model,
            "input": {
                "prompt": prompt,
                "image_urls": [image_url],
                "aspect_ratio": VIDEO_ASPECT_RATIO,
                "n_frames": VIDEO_N_FRAMES,
                "remove_watermark": VIDEO_REMOVE_WATERMARK,
            },
        }
        logger.info(f"Kie.ai createTask: model={self._model}, prompt={prompt[:80]}...")

        response = await self._request_with_backoff(
            "POST",
            f"{self._api_base}/jobs/createTask",
            retry_statuses=CREATE_RETRYABLE_STATUS_CODES,
            retry_errors=UNSENT_REQUEST_ERRORS,
            json=payload,
        )
        body = response.json()
        data = body.get("data") or {}
        task_id = data.get("taskId") or data.get("task_id")
        if not task_id:
            raise TransientExternalError(f"Kie.ai createTask returned no taskId: {body}")
        return task_id

    async def get_task(self, task_id: str) -> dict:
        """
        Raw `data` object of jobs/recordInfo for a task.

        Single attempt; the caller's poll loop is the retry. A busy or
        unreachable API raises KieUnavailableError.
        """
        response = await self._request_with_backoff(
            "GET", f"{self._api_base}/jobs/recordInfo", max_retries=0, params={"taskId": task_id}
        )
        body = response.json()
        data = body.get("data")
        if not isinstance(data, dict):
            raise TransientExternalError(f"Kie.ai recordInfo returned no data for {task_id}: {body}")
        return data

    # ── File upload ──────────────────────────────────────────────────────

    async def upload_file(self, data: bytes, file_name: str, content_type: str = "image/jpeg") -> str:
        """Upload bytes through the file-stream endpoint and return the download URL."""
        try:
            response = await self._http.post(
                self._upload_url,
                headers=self._headers(),
                files={"file": (file_name, data, content_type)},
                data={"uploadPath": self._upload_path, "fileName": file_name},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise TransientExternalError(f"Kie.ai upload failed: {e}") from e

        if response.is_error:
            raise TransientExternalError(f"Kie.ai upload error {response.status_code}: {response.text[:300]}")

        url = (response.json().get("data") or {}).get("downloadUrl")
        if not url:
            raise TransientExternalError(f"Kie.ai upload returned no downloadUrl for {file_name}")
        return url


def parse_result_url(result_json: Optional[str]) -> Optional[str]:
    """First URL of a recordInfo `resultJson` string, or None."""
    if not result_json:
        return None
    try:
        parsed = json.loads(result_json) if isinstance(result_json, str) else result_json
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    urls = parsed.get("resultUrls") or []
    return urls[0] if urls else None
