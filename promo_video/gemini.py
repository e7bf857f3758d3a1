"""
Gemini REST client used by the vision, image-edit and script stages.

- Classification / text: generateContent with a text model
- Image editing: generateContent with an image model (responseModalities IMAGE)
"""

import base64
import logging
from typing import Optional

import httpx

from .config import Settings
from .pipeline.errors import TransientExternalError

logger = logging.getLogger(__name__)


def guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


def inline_image_part(image_bytes: bytes, mime_type: str = "image/jpeg") -> dict:
    return {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(image_bytes).decode("utf-8")}}


class GeminiClient:
    """Thin async wrapper around the generateContent endpoint."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self._api_key = settings.gemini_api_key
        self._api_base = settings.gemini_api_base.rstrip("/")
        self._timeout = settings.http_timeout
        self._http = http

    def _api_url(self, model: str) -> str:
        return f"{self._api_base}/models/{model}:generateContent"

    async def generate_content(self, model: str, parts: list, config: Optional[dict] = None) -> dict:
        """Call Gemini generateContent and return the decoded JSON body."""
        if not self._api_key:
            raise TransientExternalError("GEMINI_API_KEY not set")

        body: dict = {"contents": [{"parts": parts}]}
        if config:
            body["generationConfig"] = config

        try:
            resp = await self._http.post(
                self._api_url(model),
                params={"key": self._api_key},
                json=body,
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise TransientExternalError(f"Gemini request failed: {e}") from e

        if resp.status_code != 200:
            raise TransientExternalError(f"Gemini API error {resp.status_code}: {resp.text[:500]}")

        return resp.json()

    @staticmethod
    def _parts(result: dict) -> list:
        candidates = result.get("candidates") or []
        if not candidates:
            return []
        return (candidates[0].get("content") or {}).get("parts") or []

    @classmethod
    def first_text(cls, result: dict) -> str:
        """Text of the first text part, stripped. Empty string when there is none."""
        for part in cls._parts(result):
            if "text" in part:
                return (part.get("text") or "").strip()
        return ""

    @classmethod
    def first_image(cls, result: dict) -> Optional[bytes]:
        """Bytes of the first inline image part, if any."""
        for part in cls._parts(result):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return base64.b64decode(inline["data"])
        return None
