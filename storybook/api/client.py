import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Optional

import httpx

from storybook.core.errors import StreamError
from storybook.core.models import ImageType, PageImage

logger = logging.getLogger(__name__)


@dataclass
class ProgressCallbacks:
    on_progress: Optional[Callable[[int, int, str], Any]] = None
    on_image_complete: Optional[Callable[[PageImage, ImageType], Any]] = None
    on_complete: Optional[Callable[[Any], Any]] = None
    on_error: Optional[Callable[[str], Any]] = None


async def _call(callback: Optional[Callable], *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def iter_sse_events(chunks: AsyncIterable[str]) -> AsyncIterator[Dict[str, Any]]:
    """Splits a text stream into `data:` frames and decodes each one."""
    buffer = ""
    async for chunk in chunks:
        buffer += chunk
        frames = buffer.split("\n\n")
        buffer = frames.pop()
        for frame in frames:
            if not frame.startswith("data: "):
                continue
            try:
                yield json.loads(frame[6:])
            except json.JSONDecodeError:
                logger.error(f"Failed to parse SSE event: {frame}")


async def consume_events(chunks: AsyncIterable[str], callbacks: Optional[ProgressCallbacks] = None) -> Any:
    """
    Applies stream events as they arrive and returns the final result.

    imageComplete events are handed to the callback immediately, before the
    run is over. Raises StreamError on an error event or when the stream ends
    without a terminal event.
    """
    callbacks = callbacks or ProgressCallbacks()
    received = False
    result = None

    async for event in iter_sse_events(chunks):
        event_type = event.get("type")
        if event_type == "progress":
            if "current" in event and "total" in event and event.get("message"):
                await _call(callbacks.on_progress, event["current"], event["total"], event["message"])
        elif event_type == "imageComplete":
            if event.get("image") and event.get("imageType"):
                image = PageImage.model_validate(event["image"])
                await _call(callbacks.on_image_complete, image, ImageType(event["imageType"]))
        elif event_type == "complete":
            received = True
            result = event.get("data")
            await _call(callbacks.on_complete, result)
        elif event_type == "error":
            message = event.get("error") or "Unknown error"
            await _call(callbacks.on_error, message)
            raise StreamError(message)

    if not received:
        raise StreamError("No result received from server")
    return result


async def fetch_with_progress(
    http_client: httpx.AsyncClient,
    url: str,
    body: Dict[str, Any],
    callbacks: Optional[ProgressCallbacks] = None,
) -> Any:
    """POSTs a request that answers with a progress stream and follows it to the end."""
    callbacks = callbacks or ProgressCallbacks()
    headers = {"Accept": "text/event-stream"}
    async with http_client.stream("POST", url, json=body, headers=headers, timeout=None) as response:
        if response.status_code >= 400:
            await response.aread()
            try:
                payload = response.json()
                message = payload.get("details") or payload.get("error") or response.reason_phrase
            except ValueError:
                message = response.reason_phrase
            message = message or f"Request failed: {response.status_code}"
            await _call(callbacks.on_error, message)
            raise StreamError(message)
        return await consume_events(response.aiter_text(), callbacks)
