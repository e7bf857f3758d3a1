"""
Video script writing — Gemini Flash (text).

Two modes over the same `complete` call:
  write_script — UGC-style Sora prompt from the listing data + processed image
  sanitize     — rewrite a prompt rejected by the video service's content policy
"""

import logging
from typing import Optional

import httpx

from ..gemini import GeminiClient, guess_mime, inline_image_part
from .errors import TransientExternalError
from .storage import download_image_bytes

logger = logging.getLogger(__name__)

SCRIPT_PROMPT = """You are a viral UGC video creator expert. Create a Sora 2 video generation prompt for this Etsy product that MUST feature a realistic person showing the product.

PRODUCT DATA:
Title: {title}
Description: {description}
Tags: {tags}

YOUR TASK: Create a 10-15 second UGC video where a REAL PERSON authentically showcases this product. The video should feel like a friend showing you something cool.

RESPOND WITH ONLY THE SORA 2 PROMPT PARAGRAPH (include person description, camera angle, emotions, voiceover dialogue, and product showcase). Plain prose, no markdown, no headings, no lists."""

SANITIZE_PROMPT = """REJECTED PROMPT (Copyright violation):
{prompt}

REJECTION REASON: {reason}

REWRITE this UGC video prompt to REMOVE copyrighted content. Replace brand names, character names, and trademarked terms with generic alternatives. Keep the person description, camera angle, and technical specs unchanged.

RESPOND WITH ONLY THE REWRITTEN PROMPT (no explanation)."""


def _as_paragraph(text: str) -> str:
    """Collapse a model answer into one plain paragraph (strip fences, bullets, line breaks)."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
    if text.endswith("```"):
        text = text.rsplit("```", 1)[0]
    lines = [line.strip().lstrip("#*-> ").strip() for line in text.splitlines()]
    return " ".join(line for line in lines if line)


class ScriptWriter:

    def __init__(self, gemini: GeminiClient, model: str, http: httpx.AsyncClient):
        self._gemini = gemini
        self._model = model
        self._http = http

    async def complete(self, prompt: str, image: Optional[tuple[bytes, str]] = None) -> str:
        parts: list = [{"text": prompt}]
        if image is not None:
            parts.append(inline_image_part(*image))
        result = await self._gemini.generate_content(
            model=self._model,
            parts=parts,
            config={"temperature": 0.8},
        )
        return GeminiClient.first_text(result)

    async def write_script(
        self,
        product_title: str,
        description: Optional[str],
        tags: Optional[list[str]],
        image_url: str,
    ) -> str:
        prompt = SCRIPT_PROMPT.format(
            title=product_title,
            description=description or "",
            tags=", ".join(tags or []),
        )
        image_bytes = await download_image_bytes(self._http, image_url)
        script = _as_paragraph(await self.complete(prompt, (image_bytes, guess_mime(image_url))))
        if not script:
            raise TransientExternalError("Script writer returned an empty script")
        logger.info(f"Video script generated: {script[:100]}...")
        return script

    async def sanitize(self, original_prompt: str, violation_reason: str) -> str:
        prompt = SANITIZE_PROMPT.format(prompt=original_prompt, reason=violation_reason)
        rewritten = _as_paragraph(await self.complete(prompt))
        if not rewritten:
            raise TransientExternalError("Prompt sanitizer returned an empty prompt")
        logger.info(f"Sanitized prompt: {rewritten[:100]}...")
        return rewritten
