
import json

import pytest

from storybook.core.cache import SECONDS_PER_DAY, FileCache, cache_key
from storybook.core.observability import Observability


@pytest.fixture
def cache(tmp_path):
    return FileCache(tmp_path / "cache", ttl_days=7)


def age_entry(path, days):
    with open(path, encoding="utf-8") as f:
        entry = json.load(f)
    entry["created_at"] -= days * SECONDS_PER_DAY
    with open(path, "w", encoding="utf-8") as f:
        json.dump(entry, f)


class TestCacheKey:
    def test_deterministic_and_short(self):
        key = cache_key("model", "prompt")
        assert key == cache_key("model", "prompt")
        assert len(key) == 32

    def test_parts_are_separated(self):
        assert cache_key("ab", "c") != cache_key("a", "bc")


class TestFileCache:
    def test_text_round_trip(self, cache):
        assert cache.get_text("k") is None
        cache.set_text("k", "hello")
        assert cache.get_text("k") == "hello"

    def test_text_expires(self, cache):
        cache.set_text("k", "hello")
        age_entry(cache.text_dir / "k.json", days=8)

        assert cache.get_text("k") is None
        assert not (cache.text_dir / "k.json").exists()

    def test_image_round_trip_and_expiry(self, cache):
        cache.set_image("img", b"\x89PNG")
        assert cache.get_image("img") == b"\x89PNG"

        age_entry(cache.image_dir / "img.meta.json", days=30)
        assert cache.get_image("img") is None
        assert not (cache.image_dir / "img.png").exists()

    def test_corrupt_entry_is_a_miss(self, cache):
        cache.text_dir.mkdir(parents=True)
        (cache.text_dir / "bad.json").write_text("{not json", encoding="utf-8")
        assert cache.get_text("bad") is None

    def test_explicit_zero_ttl_is_kept(self, cache):
        cache.set_text("k", "hello", ttl_days=0)
        cache.set_image("img", b"data", ttl_days=0)

        with open(cache.text_dir / "k.json", encoding="utf-8") as f:
            assert json.load(f)["ttl_days"] == 0
        with open(cache.image_dir / "img.meta.json", encoding="utf-8") as f:
            assert json.load(f)["ttl_days"] == 0

    def test_disabled(self, tmp_path):
        cache = FileCache(tmp_path / "cache", enabled=False)
        cache.set_text("k", "hello")
        assert cache.get_text("k") is None
        assert not (tmp_path / "cache").exists()

    def test_clear(self, cache):
        cache.set_text("k", "hello")
        cache.set_image("img", b"data")
        cache.clear()

        assert cache.get_text("k") is None
        assert cache.get_image("img") is None


class TestObservability:
    def test_records_events(self):
        obs = Observability(max_events=2)
        obs.record_event("a")
        obs.record_event("b", page=1)
        obs.record_event("b", page=2)

        assert [e["event"] for e in obs.events] == ["b", "b"]
        assert obs.events_named("b")[-1] == {"event": "b", "page": 2}

    def test_cache_is_optional(self):
        obs = Observability()
        obs.set_text_cache("k", "v")
        assert obs.get_text_cache("k") is None
        assert obs.get_image_cache("k") is None

    def test_delegates_to_cache(self, cache):
        obs = Observability(cache)
        obs.set_text_cache("k", "v")
        assert obs.get_text_cache("k") == "v"
