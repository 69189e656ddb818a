from datetime import datetime, timezone

import pytest

from tunisafka.cache.store import CacheStore
from tunisafka.core import config
from tunisafka.core.errors import ExtractionError
from tunisafka.fetch.base import BaseExtractor
from tunisafka.schemas import ScrapingResult

# Wednesday noon in Helsinki
FIXED_NOW = datetime(2025, 10, 29, 10, 0, tzinfo=timezone.utc)

SAMPLE_RAW_MENUS = [
    {
        "title": "Hertsi",
        "description": "Lunch buffet",
        "items": [
            {"name": "Broccoli soup", "price": "2.70", "dietary": ["Veg", "G"], "allergens": ["milk"]},
            {"name": "Chicken curry", "price": "€2.95", "dietary": ["L"], "allergens": []},
        ],
        "availability": {"startTime": "10:30", "endTime": "14:00", "days": ["monday", "wednesday"]},
    },
    {
        "title": "Newton",
        "items": [
            {"name": "Falafel bowl", "price": "3,50 €", "dietary": ["plant-based"], "allergens": ["sesame"]},
        ],
        "availability": None,
    },
]


class FakeExtractor(BaseExtractor):
    """Extractor returning canned raw menus, or raising a canned error"""

    source_url = "https://unisafka.fi/tty/"

    def __init__(self, raw_menus=None, error=None):
        self.raw_menus = SAMPLE_RAW_MENUS if raw_menus is None else raw_menus
        self.error = error
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.raw_menus), ScrapingResult.succeeded(len(self.raw_menus), self.source_url, 12)


class Clock:
    """Settable clock for CacheStore"""

    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(autouse=True)
def setup_test_environment(tmp_path):
    """Setup test environment with an isolated cache directory and no network"""
    original = {
        name: getattr(config.settings, name)
        for name in ("CACHE_DIR", "USE_MOCK", "USE_JS_FALLBACK", "CACHE_TIMEZONE")
    }

    config.settings.CACHE_DIR = str(tmp_path / "cache")
    config.settings.USE_MOCK = False
    config.settings.USE_JS_FALLBACK = False
    config.settings.CACHE_TIMEZONE = "Europe/Helsinki"

    yield

    for name, value in original.items():
        setattr(config.settings, name, value)


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(cache_dir, clock):
    cache_store = CacheStore(cache_dir=str(cache_dir), tz="Europe/Helsinki", clock=clock)
    cache_store.initialize()
    return cache_store


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def failing_extractor():
    return FakeExtractor(error=ExtractionError("Network error while fetching https://unisafka.fi/tty/",
                                               duration_ms=42))


@pytest.fixture
def make_extractor():
    return FakeExtractor


@pytest.fixture
def sample_raw_menus():
    return [dict(menu) for menu in SAMPLE_RAW_MENUS]
