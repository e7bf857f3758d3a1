"""
Image transformation for the product hero shot.

  EDIT     — Gemini image model removes every human element, keeps the product
  OPTIMIZE — local Pillow re-encode (resize cap + JPEG compression), no content change
"""

import logging
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from ..gemini import GeminiClient, inline_image_part
from .errors import TransientExternalError
from .models import ImageMode

logger = logging.getLogger(__name__)

MAX_EDGE = 2048
JPEG_QUALITY = 85

EDIT_PROMPT = """You are a professional product photographer and image editor. Your task is to transform this image into a CLEAN PRODUCT HERO SHOT.

CURRENT IMAGE ANALYSIS:
This image contains a realistic human figure (person, hands, face, or body) holding or displaying a product.

YOUR TASK:

1. IDENTIFY the main product being held or displayed
2. REMOVE all human elements completely:
   - Remove person's face
   - Remove hands
   - Remove arms, body, legs
   - Remove any human presence

3. CREATE a professional product hero shot:
   - Product should be CENTERED in the frame
   - Product should be the ONLY focus
   - Keep the product in perfect condition (no blur, no distortion)
   - Maintain product's original colors and details

4. CLEAN the background:
   - Keep the original background setting (kitchen, living room, etc.) BUT remove the person
   - OR replace with a clean, minimal background if removal is difficult
   - Ensure natural lighting remains consistent
   - Fill any gaps left by removed person seamlessly"""


def optimize_image(image_bytes: bytes) -> bytes:
    """Re-encode as progressive JPEG with the long edge capped at MAX_EDGE."""
    try:
        img = Image.open(BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise TransientExternalError(f"Source image could not be decoded: {e}") from e

    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    width, height = img.size
    longest = max(width, height)
    if longest > MAX_EDGE:
        scale = MAX_EDGE / longest
        img = img.resize((round(width * scale), round(height * scale)), Image.Resampling.LANCZOS)

    out = BytesIO()
    img.save(out, format="JPEG", quality=JPEG_QUALITY, optimize=True, progressive=True)
    logger.info(f"Optimized image {width}x{height} → {img.size[0]}x{img.size[1]}, {len(image_bytes)} → {out.tell()} bytes")
    return out.getvalue()


class ImageTransformer:

    def __init__(self, gemini: GeminiClient, model: str):
        self._gemini = gemini
        self._model = model

    async def edit(self, image_bytes: bytes, instruction: str = EDIT_PROMPT) -> bytes:
        result = await self._gemini.generate_content(
            model=self._model,
            parts=[{"text": instruction}, inline_image_part(image_bytes)],
            config={"responseModalities": ["TEXT", "IMAGE"], "temperature": 0.2},
        )
        edited = GeminiClient.first_image(result)
        if edited is None:
            raise TransientExternalError("Image edit returned no image data")
        return edited

    async def transform(self, image_bytes: bytes, mode: ImageMode) -> bytes:
        if mode == ImageMode.EDIT:
            return await self.edit(image_bytes)
        return optimize_image(image_bytes)
