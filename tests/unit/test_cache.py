import json
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from tunisafka.cache.store import CacheStore, format_bytes
from tunisafka.core.errors import StorageError
from tunisafka.schemas import Menu, MenuItem, ScrapingResult


def make_menus(*titles):
    return [
        Menu(title=title, items=[MenuItem(name=f"{title} soup", price="€2.70")])
        for title in titles
    ]


def ok_result(count=1):
    return ScrapingResult.succeeded(count, "https://unisafka.fi/tty/", 120)


class TestCacheReadWrite:
    """Unit tests for the daily file cache"""

    def test_read_empty_cache_is_miss(self, store):
        """Reading before anything was written is a miss, not an error"""
        assert store.read() is None
        assert store.misses == 1
        assert store.hits == 0

    def test_write_then_read_same_day(self, store, clock):
        """An entry written today is served back and counted as a hit"""
        store.write(make_menus("Hertsi", "Newton"), ok_result(2))

        entry = store.read()

        assert entry is not None
        assert entry.date == "2025-10-29"
        assert entry.timezone == "Europe/Helsinki"
        assert [menu.title for menu in entry.menu_data] == ["Hertsi", "Newton"]
        assert entry.scraping_result.menus_found == 2
        assert entry.timestamp == clock.now
        assert store.hits == 1

    def test_entry_from_yesterday_is_miss(self, store, clock):
        """A previous day's entry is never served by read()"""
        store.write(make_menus("Hertsi"), ok_result())
        clock.now = clock.now + timedelta(days=1)

        assert store.read() is None
        assert store.misses == 1

    def test_stale_fallback_ignores_date(self, store, clock):
        """read_stale_fallback returns the entry whatever its date"""
        store.write(make_menus("Hertsi"), ok_result())
        clock.now = clock.now + timedelta(days=3)

        stale = store.read_stale_fallback()

        assert stale is not None
        assert stale.date == "2025-10-29"

    def test_local_midnight_invalidates_entry(self, store, clock):
        """Validity follows the calendar day in the cache timezone, not UTC"""
        # 23:59 in Helsinki (UTC+2)
        clock.now = datetime(2025, 10, 29, 21, 59, tzinfo=timezone.utc)
        store.write(make_menus("Hertsi"), ok_result())
        assert store.read() is not None

        # 00:01 the next day in Helsinki, still the 29th in UTC
        clock.now = datetime(2025, 10, 29, 22, 1, tzinfo=timezone.utc)
        assert store.read() is None

    def test_ttl_guard_expires_entry_within_same_day(self, cache_dir, clock):
        """The secondary TTL rejects an entry older than the configured hours"""
        store = CacheStore(cache_dir=str(cache_dir), tz="Europe/Helsinki", ttl_hours=1, clock=clock)
        store.initialize()
        store.write(make_menus("Hertsi"), ok_result())

        clock.now = clock.now + timedelta(hours=2)

        assert store.read() is None

    def test_entry_survives_long_dst_day(self, cache_dir, clock):
        """On the 25 hour fall-back day an early entry is still today's entry by default"""
        store = CacheStore(cache_dir=str(cache_dir), tz="Europe/Helsinki", clock=clock)
        store.initialize()
        # 00:05 on 2025-10-26 in Helsinki, still summer time (UTC+3)
        clock.now = datetime(2025, 10, 25, 21, 5, tzinfo=timezone.utc)
        store.write(make_menus("Hertsi"), ok_result())

        # 23:55 the same local day, now UTC+2, almost 25 hours later
        clock.now = datetime(2025, 10, 26, 21, 55, tzinfo=timezone.utc)

        assert store.ttl is None
        assert store.read() is not None

    def test_corrupted_file_is_miss(self, store):
        """A corrupt cache file reads as a miss and has no stale fallback"""
        store.cache_file.write_text("{not json", encoding="utf-8")

        assert store.read() is None
        assert store.read_stale_fallback() is None

    def test_invalid_entry_shape_is_miss(self, store):
        """Valid JSON with the wrong shape is treated like corruption"""
        store.cache_file.write_text(json.dumps({"date": "yesterday"}), encoding="utf-8")

        assert store.read() is None

    def test_needs_refresh(self, store):
        assert store.needs_refresh() is True
        store.write(make_menus("Hertsi"), ok_result())
        assert store.needs_refresh() is False

    def test_persisted_layout_uses_camel_case(self, store):
        """The cache file is a camelCase JSON document"""
        store.write(make_menus("Hertsi"), ok_result())

        data = json.loads(store.cache_file.read_text(encoding="utf-8"))

        assert data["date"] == "2025-10-29"
        assert data["version"] == "1.0.0"
        assert "menuData" in data
        assert data["scrapingResult"]["menusFound"] == 1
        assert data["menuData"][0]["isSelected"] is False


class TestCacheWriteFailures:
    """Atomic replacement and failure behaviour"""

    def test_failed_write_keeps_previous_entry(self, store):
        """A failed replace raises StorageError and leaves the old entry readable"""
        store.write(make_menus("Hertsi"), ok_result())

        with patch("tunisafka.cache.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError):
                store.write(make_menus("Newton"), ok_result())

        entry = store.read()
        assert [menu.title for menu in entry.menu_data] == ["Hertsi"]

    def test_failed_write_removes_temp_file(self, store, cache_dir):
        """No temporary files are left behind after a failed write"""
        with patch("tunisafka.cache.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError):
                store.write(make_menus("Hertsi"), ok_result())

        assert [name for name in os.listdir(cache_dir) if name.endswith(".tmp")] == []
        assert not store.cache_file.exists()

    def test_initialize_fails_when_directory_cannot_be_created(self, tmp_path):
        """An unusable cache directory is reported at startup"""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        store = CacheStore(cache_dir=str(blocker / "cache"))

        with pytest.raises(StorageError) as exc_info:
            store.initialize()
        assert exc_info.value.retryable is False


class TestCacheClearAndStats:
    """clear() and stats()"""

    def test_clear_is_idempotent(self, store):
        store.write(make_menus("Hertsi"), ok_result())

        assert store.clear() is True
        assert store.clear() is True
        assert store.read_stale_fallback() is None

    def test_stats_do_not_touch_counters(self, store):
        """stats() reads the file without counting hits or misses"""
        store.write(make_menus("Hertsi"), ok_result())
        store.read()
        store.read()

        stats = store.stats()
        stats_again = store.stats()

        assert stats["hits"] == 2
        assert stats["misses"] == 0
        assert stats_again["hits"] == 2
        assert stats["hitRate"] == "100.00%"
        assert stats["isValid"] is True
        assert stats["currentDate"] == "2025-10-29"
        assert stats["cacheDate"] == "2025-10-29"
        assert stats["timezone"] == "Europe/Helsinki"
        assert stats["cacheSize"].endswith("B")

    def test_stats_on_empty_cache(self, store):
        stats = store.stats()

        assert stats["isValid"] is False
        assert stats["cacheDate"] is None
        assert stats["hitRate"] == "0.00%"
        assert stats["cacheSize"] == "0 B"

    def test_stats_report_stale_entry(self, store, clock):
        """A stale entry shows its own date and is not valid"""
        store.write(make_menus("Hertsi"), ok_result())
        clock.now = clock.now + timedelta(days=1)

        stats = store.stats()

        assert stats["isValid"] is False
        assert stats["cacheDate"] == "2025-10-29"
        assert stats["currentDate"] == "2025-10-30"

    def test_counters_survive_restart(self, cache_dir, clock):
        """Hit/miss counters are persisted and reloaded by a new store"""
        first = CacheStore(cache_dir=str(cache_dir), tz="Europe/Helsinki", clock=clock)
        first.initialize()
        first.read()
        first.write(make_menus("Hertsi"), ok_result())
        first.read()
        first.flush_stats()

        second = CacheStore(cache_dir=str(cache_dir), tz="Europe/Helsinki", clock=clock)
        second.initialize()

        assert second.hits == 1
        assert second.misses == 1

    def test_unknown_timezone_falls_back_to_local_date(self, cache_dir, clock):
        """An unknown zone never raises, it uses the system local date"""
        store = CacheStore(cache_dir=str(cache_dir), tz="Mars/Olympus_Mons", clock=clock)

        today = store.current_date()

        assert today == clock.now.astimezone().date().isoformat()


class TestFormatBytes:
    def test_sizes(self):
        assert format_bytes(0) == "0 B"
        assert format_bytes(512) == "512 B"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(1024 * 1024) == "1 MB"
