import json
import os
import tempfile
from contextlib import suppress
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from tunisafka.core.config import settings
from tunisafka.core.errors import StorageError
from tunisafka.fetch.utils import today_str
from tunisafka.schemas import CacheEntry, Menu, ScrapingResult, utcnow

CACHE_FILENAME = "daily-menus.json"
STATS_FILENAME = "cache-stats.json"


def format_bytes(size: int) -> str:
    """Human readable file size: 0 B, 512 B, 1.5 KB"""
    if size <= 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{round(value, 2):g} {unit}"
        value /= 1024
    return f"{round(value, 2):g} GB"


class CacheStore:
    """
    File backed store holding exactly one CacheEntry.

    The entry is valid only while its `date` equals today in the configured
    timezone, checked on every read, so it expires at local midnight without
    any timer. Hit/miss counters live on the instance and are persisted next
    to the entry.
    """

    def __init__(
        self,
        cache_dir: Optional[str] = None,
        tz: Optional[str] = None,
        ttl_hours: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cache_dir = Path(cache_dir or settings.CACHE_DIR)
        self.timezone = tz or settings.CACHE_TIMEZONE
        if ttl_hours is None:
            ttl_hours = settings.cache_ttl_hours
        self.ttl: Optional[timedelta] = timedelta(hours=ttl_hours) if ttl_hours else None
        self.cache_file = self.cache_dir / CACHE_FILENAME
        self.stats_file = self.cache_dir / STATS_FILENAME
        self._clock = clock or utcnow
        self.hits = 0
        self.misses = 0
        self.last_access: Optional[datetime] = None
        self._initialized = False

    def initialize(self) -> None:
        """Create the cache directory and load persisted counters (once)"""
        if self._initialized:
            return
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create cache directory {self.cache_dir}: {e}", retryable=False) from e
        if not os.access(self.cache_dir, os.R_OK | os.W_OK):
            raise StorageError(f"Cache directory {self.cache_dir} is not writable", retryable=False)
        self._load_stats()
        self._initialized = True
        print(f"CacheStore initialized at {self.cache_dir} (timezone: {self.timezone})")

    def current_date(self, tz: Optional[str] = None) -> str:
        """Today's date in the given (or configured) timezone, YYYY-MM-DD"""
        return today_str(tz or self.timezone, self._clock())

    def read(self) -> Optional[CacheEntry]:
        """Return today's entry, or None (counted as a miss)"""
        entry = self._load()
        today = self.current_date()
        if entry is not None and self._is_valid(entry, today):
            self.hits += 1
            self.last_access = self._clock()
            print(f"CACHE HIT for {entry.date} ({entry.menu_count} menus)")
            return entry

        self.misses += 1
        if entry is not None:
            print(f"CACHE STALE: entry from {entry.date}, today is {today}")
        else:
            print(f"CACHE MISS for {today}")
        return None

    def read_stale_fallback(self) -> Optional[CacheEntry]:
        """Return the persisted entry whatever its date, None if absent or corrupt"""
        return self._load()

    def write(self, menu_data: Iterable[Menu], scraping_result: Optional[ScrapingResult]) -> CacheEntry:
        """
        Replace the persisted entry with a new one stamped with today's date.

        The JSON is written to a temporary file in the cache directory and then
        renamed over the canonical file, so readers see either the old or the
        new entry. Raises StorageError; the previous entry stays intact.
        """
        entry = CacheEntry(
            date=self.current_date(),
            timestamp=self._clock(),
            timezone=self.timezone,
            menu_data=list(menu_data),
            scraping_result=scraping_result,
        )
        try:
            self._atomic_write(self.cache_file, entry.model_dump_json(by_alias=True, indent=2))
        except OSError as e:
            print(f"CACHE SAVE FAILED: {e}")
            raise StorageError(f"Cache save failed: {e}") from e

        print(f"CACHED {entry.menu_count} menus for {entry.date}")
        self._save_stats()
        return entry

    def clear(self) -> bool:
        """Delete the persisted entry; an already empty cache is not an error"""
        try:
            self.cache_file.unlink()
        except FileNotFoundError:
            print("CACHE was already empty")
            return True
        except OSError as e:
            raise StorageError(f"Cache clear failed: {e}") from e
        print("CACHE cleared")
        return True

    def needs_refresh(self) -> bool:
        return self.read() is None

    def stats(self) -> dict[str, Any]:
        """Cache telemetry; reads the file without touching the hit/miss counters"""
        entry = self._load()
        today = self.current_date()
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total else 0.0

        size = 0
        with suppress(OSError):
            size = self.cache_file.stat().st_size

        return {
            "isValid": entry is not None and self._is_valid(entry, today),
            "currentDate": today,
            "cacheDate": entry.date if entry else None,
            "lastUpdated": entry.timestamp.isoformat() if entry else None,
            "age": entry.formatted_age(self._clock()) if entry else None,
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": f"{hit_rate:.2f}%",
            "cacheSize": format_bytes(size),
            "timezone": self.timezone,
            "lastAccess": self.last_access.isoformat() if self.last_access else None,
        }

    def flush_stats(self) -> None:
        self._save_stats()

    def _is_valid(self, entry: CacheEntry, today: str) -> bool:
        if not entry.is_valid_for(today):
            return False
        if self.ttl is not None and entry.is_expired(self.ttl, now=self._clock()):
            return False
        return True

    def _load(self) -> Optional[CacheEntry]:
        try:
            raw = self.cache_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            print(f"CACHE UNREADABLE {self.cache_file}: {e}")
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as e:
            print(f"CACHE CORRUPTED {self.cache_file}: {e.error_count()} error(s)")
            return None

    def _atomic_write(self, path: Path, payload: str) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except OSError:
            with suppress(OSError):
                os.unlink(tmp_path)
            raise

    def _load_stats(self) -> None:
        try:
            data = json.loads(self.stats_file.read_text(encoding="utf-8"))
            self.hits = int(data.get("totalHits", 0))
            self.misses = int(data.get("totalMisses", 0))
        except (OSError, ValueError, AttributeError, TypeError):
            # First run or unreadable stats, start from zero
            self.hits = 0
            self.misses = 0

    def _save_stats(self) -> None:
        payload = {
            "totalHits": self.hits,
            "totalMisses": self.misses,
            "lastUpdate": self._clock().isoformat(),
            "timezone": self.timezone,
        }
        try:
            self._atomic_write(self.stats_file, json.dumps(payload, indent=2))
        except OSError as e:
            print(f"WARNING: failed to update cache stats: {e}")
