import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from storybook.core.cache import FileCache

logger = logging.getLogger(__name__)


class Observability:
    """
    Event recorder and provider cache handed to the clients and the illustrator.

    Events are logged and the most recent ones are kept in memory so a debug
    endpoint or a test can inspect what happened during a run.
    """

    def __init__(self, cache: Optional[FileCache] = None, max_events: int = 500):
        self.cache = cache
        self.events: Deque[Dict[str, Any]] = deque(maxlen=max_events)

    def record_event(self, name: str, **fields: Any):
        self.events.append({"event": name, **fields})
        if fields:
            details = ", ".join(f"{k}={v}" for k, v in fields.items())
            logger.info(f"{name}: {details}")
        else:
            logger.info(name)

    def events_named(self, name: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["event"] == name]

    def get_text_cache(self, key: str) -> Optional[str]:
        return self.cache.get_text(key) if self.cache else None

    def set_text_cache(self, key: str, value: str):
        if self.cache:
            self.cache.set_text(key, value)

    def get_image_cache(self, key: str) -> Optional[bytes]:
        return self.cache.get_image(key) if self.cache else None

    def set_image_cache(self, key: str, data: bytes):
        if self.cache:
            self.cache.set_image(key, data)
