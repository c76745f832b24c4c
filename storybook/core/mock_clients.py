import asyncio
import io
import logging
from typing import List, Optional

from PIL import Image

from storybook.core.ai_client import ImageSession
from storybook.core.models import GeneratedImage, ReferenceImage

logger = logging.getLogger(__name__)

_RATIO_SIZES = {
    "1:1": (64, 64),
    "3:4": (48, 64),
    "4:3": (64, 48),
    "2:3": (44, 66),
    "3:2": (66, 44),
}


def placeholder_png(aspect_ratio: str = "1:1", color=(240, 200, 120)) -> bytes:
    """Small solid-color PNG sized to the aspect ratio."""
    size = _RATIO_SIZES.get(aspect_ratio, (64, 64))
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class MockImageClient:
    """Offline stand-in for GenAIImageClient used for local runs without an API key."""

    model_id = "mock-image-model"

    def __init__(self, delay: float = 0.0, custom_image: Optional[bytes] = None):
        self.delay = delay
        self.custom_image = custom_image
        self.calls: List[dict] = []

    def create_session(self, project_id: str) -> ImageSession:
        return ImageSession(project_id=project_id)

    def close_session(self, session: ImageSession):
        session.closed = True

    def get_message_index(self, session: ImageSession) -> int:
        return session.message_index

    async def generate_with_references(
        self,
        session: ImageSession,
        prompt: str,
        references: Optional[List[ReferenceImage]] = None,
        aspect_ratio: str = "3:4",
    ) -> GeneratedImage:
        if session.closed:
            raise RuntimeError(f"Session {session.id} is closed")
        references = references or []
        self.calls.append({"session_id": session.id, "prompt": prompt, "references": references})
        if self.delay:
            await asyncio.sleep(self.delay)
        session.message_index += 1
        logger.info(f"Mock image generated (refs: {len(references)})")
        return GeneratedImage(
            data=self.custom_image or placeholder_png(aspect_ratio),
            model=self.model_id,
            aspect_ratio=aspect_ratio,
            generation_time_ms=int(self.delay * 1000),
        )

    async def generate_image(self, prompt: str, aspect_ratio: str = "3:4", skip_cache: bool = False) -> GeneratedImage:
        self.calls.append({"session_id": None, "prompt": prompt, "references": []})
        if self.delay:
            await asyncio.sleep(self.delay)
        return GeneratedImage(
            data=self.custom_image or placeholder_png(aspect_ratio),
            model=self.model_id,
            aspect_ratio=aspect_ratio,
            generation_time_ms=int(self.delay * 1000),
        )
