import os
from typing import Optional

class Settings:
    # Source page
    SOURCE_URL: str = os.getenv("SOURCE_URL", "https://unisafka.fi/tty/")

    # File cache
    CACHE_DIR: str = os.getenv("CACHE_DIR", "data/cache")
    CACHE_TIMEZONE: str = os.getenv("CACHE_TIMEZONE", "Europe/Helsinki")
    # Secondary guard on top of the calendar-day rule, 0 disables it
    CACHE_TTL_HOURS: int = int(os.getenv("CACHE_TTL_HOURS", "0"))

    # Development
    USE_MOCK: bool = os.getenv("USE_MOCK", "0").lower() in ("1", "true", "yes")
    APP_ENV: str = os.getenv("APP_ENV", "development")

    # Scraping
    REQUEST_TIMEOUT: int = int(os.getenv("REQUEST_TIMEOUT", "5"))
    USER_AGENT: str = os.getenv("USER_AGENT", "Tunisafka Menu App (Educational/Research Purpose)")
    # Playwright / JS rendering
    USE_JS_FALLBACK: bool = os.getenv("USE_JS_FALLBACK", "1").lower() in ("1", "true", "yes")
    PLAYWRIGHT_HEADLESS: bool = os.getenv("PLAYWRIGHT_HEADLESS", "1").lower() in ("1", "true", "yes")
    JS_WAIT_TIMEOUT_MS: int = int(os.getenv("JS_WAIT_TIMEOUT_MS", "10000"))
    JS_EXTRA_WAIT_MS: int = int(os.getenv("JS_EXTRA_WAIT_MS", "1500"))

    # Random selection
    SELECTION_HISTORY_SIZE: int = int(os.getenv("SELECTION_HISTORY_SIZE", "10"))

    @property
    def cache_ttl_hours(self) -> Optional[int]:
        return self.CACHE_TTL_HOURS if self.CACHE_TTL_HOURS > 0 else None

settings = Settings()
