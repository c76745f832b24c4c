"""Progress streaming for long-running illustration runs.

The orchestrator reports through plain callbacks; ProgressStream turns those
calls into an ordered queue of events and renders them as Server-Sent Events:

    data: {"type": "progress", "current": 1, "total": 5, "message": "..."}
    data: {"type": "imageComplete", "image": {...}, "imageType": "cover"}
    ...
    data: {"type": "complete", "data": [...]}     (or {"type": "error", "error": "..."})

Exactly one terminal event is emitted per stream.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Dict

from fastapi.encoders import jsonable_encoder

from storybook.core.models import ImageType, PageImage

logger = logging.getLogger(__name__)

_CLOSED = object()


def format_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


class ProgressStream:
    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.terminated = False

    def _emit(self, event: Dict[str, Any]):
        if self.terminated:
            raise RuntimeError("Cannot emit after the terminal event")
        logger.debug(f"SSE event: {event['type']}")
        self.queue.put_nowait(event)

    def on_progress(self, current: int, total: int, message: str):
        self._emit({"type": "progress", "current": current, "total": total, "message": message})

    def on_image_complete(self, image: PageImage, image_type: ImageType):
        self._emit({
            "type": "imageComplete",
            "image": image.model_dump(mode="json"),
            "imageType": ImageType(image_type).value,
        })

    def complete(self, data: Any):
        self._emit({"type": "complete", "data": jsonable_encoder(data)})
        self.terminated = True

    def fail(self, error: str):
        self._emit({"type": "error", "error": error})
        self.terminated = True

    async def run(self, operation: Awaitable):
        """Awaits the operation and closes the stream with its outcome."""
        try:
            result = await operation
        except Exception as e:
            logger.error(f"Streamed operation failed: {e}")
            self.fail(str(e))
        else:
            self.complete(result)
        finally:
            self.queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self.queue.get()
            if event is _CLOSED:
                return
            yield event

    async def sse(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield format_sse(event)
