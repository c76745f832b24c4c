import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def cache_key(*parts: str) -> str:
    """Short deterministic key for a provider request."""
    digest = hashlib.sha256("|||".join(parts).encode("utf-8")).hexdigest()
    return digest[:32]


class FileCache:
    """
    TTL cache on disk for provider responses.

    Text entries are stored as JSON envelopes, images as a PNG next to a small
    meta file. Cache problems never fail a generation: they are logged and the
    caller simply misses.
    """

    def __init__(self, base_path: Path, ttl_days: int = 7, enabled: bool = True):
        self.base_path = Path(base_path)
        self.ttl_days = ttl_days
        self.enabled = enabled
        self.text_dir = self.base_path / "text"
        self.image_dir = self.base_path / "images"

    def _expired(self, entry: dict) -> bool:
        age = time.time() - entry.get("created_at", 0)
        return age > entry.get("ttl_days", self.ttl_days) * SECONDS_PER_DAY

    def get_text(self, key: str) -> Optional[str]:
        if not self.enabled:
            return None
        path = self.text_dir / f"{key}.json"
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                entry = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable text cache entry {key}: {e}")
            return None

        if self._expired(entry):
            path.unlink(missing_ok=True)
            return None
        logger.debug(f"Cache HIT text: {key}")
        return entry["data"]

    def set_text(self, key: str, value: str, ttl_days: Optional[int] = None):
        if not self.enabled:
            return
        entry = {"data": value, "created_at": time.time(), "ttl_days": self.ttl_days if ttl_days is None else ttl_days}
        try:
            self.text_dir.mkdir(parents=True, exist_ok=True)
            with open(self.text_dir / f"{key}.json", "w", encoding="utf-8") as f:
                json.dump(entry, f)
            logger.debug(f"Cache SET text: {key}")
        except OSError as e:
            logger.warning(f"Failed to set text cache: {e}")

    def get_image(self, key: str) -> Optional[bytes]:
        if not self.enabled:
            return None
        meta_path = self.image_dir / f"{key}.meta.json"
        image_path = self.image_dir / f"{key}.png"
        if not meta_path.exists() or not image_path.exists():
            return None
        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                entry = json.load(f)
            if self._expired(entry):
                meta_path.unlink(missing_ok=True)
                image_path.unlink(missing_ok=True)
                return None
            data = image_path.read_bytes()
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable image cache entry {key}: {e}")
            return None
        logger.debug(f"Cache HIT image: {key}")
        return data

    def set_image(self, key: str, data: bytes, ttl_days: Optional[int] = None):
        if not self.enabled:
            return
        entry = {"data": "", "created_at": time.time(), "ttl_days": self.ttl_days if ttl_days is None else ttl_days}
        try:
            self.image_dir.mkdir(parents=True, exist_ok=True)
            with open(self.image_dir / f"{key}.meta.json", "w", encoding="utf-8") as f:
                json.dump(entry, f)
            (self.image_dir / f"{key}.png").write_bytes(data)
            logger.debug(f"Cache SET image: {key}")
        except OSError as e:
            logger.warning(f"Failed to set image cache: {e}")

    def clear(self):
        for directory in (self.text_dir, self.image_dir):
            if not directory.exists():
                continue
            for path in directory.iterdir():
                path.unlink(missing_ok=True)
        logger.info("Cache cleared")
