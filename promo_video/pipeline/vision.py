"""
Subject detection — Gemini Flash (vision).

Decides whether a real human (or any part of one) is visible in the product
image. The answer selects the image stage: EDIT when a subject is present,
OPTIMIZE otherwise.
"""

import logging

from ..gemini import GeminiClient, inline_image_part
from .errors import TransientExternalError

logger = logging.getLogger(__name__)

SUBJECT_PROMPT = """You are an image analyst. Your ONLY job is to detect if there is a REALISTIC HUMAN in this image.

HUMAN MEANS:
- Real person (not cartoon, not illustration)
- Face visible OR
- Hands visible OR
- Body visible OR
- Any part of a real human

RESPOND:
- If you see ANY part of a real human → "YES"
- If NO real human → "NO"

IMPORTANT:
- Hands holding objects = YES
- Face in background = YES
- Person wearing product = YES
- Empty product shot = NO
- Cartoon/drawing = NO

Look at the image now. Is there a REAL HUMAN?

Respond with ONLY ONE WORD: "YES" or "NO\""""


def token_to_subject(token: str) -> bool:
    """
    Map the classifier's single-token answer to a boolean.

    Only YES / NO are answers. Anything else, including the empty reply of a
    blocked or truncated response, raises TransientExternalError.
    """
    words = (token or "").strip().upper().split()
    answer = words[0].strip('".,!*') if words else ""
    if answer == "YES":
        return True
    if answer == "NO":
        return False
    raise TransientExternalError(f"Subject detection returned no usable YES/NO answer: {token!r}")


class SubjectDetector:

    def __init__(self, gemini: GeminiClient, model: str):
        self._gemini = gemini
        self._model = model

    async def classify(self, image_bytes: bytes, instruction: str) -> str:
        result = await self._gemini.generate_content(
            model=self._model,
            parts=[{"text": instruction}, inline_image_part(image_bytes)],
            config={"temperature": 0.0, "maxOutputTokens": 5},
        )
        return GeminiClient.first_text(result)

    async def detect_subject(self, image_bytes: bytes) -> bool:
        token = await self.classify(image_bytes, SUBJECT_PROMPT)
        detected = token_to_subject(token)
        logger.info(f"Subject detection: token={token!r} → {detected}")
        return detected
