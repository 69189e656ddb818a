import time
from datetime import datetime
from typing import Any, Optional

from tunisafka.cache.store import CacheStore
from tunisafka.core.config import settings
from tunisafka.core.errors import MenuValidationError, NoDataAvailableError, StorageError
from tunisafka.fetch.base import BaseExtractor, RawMenu
from tunisafka.fetch.utils import normalize_price, now_in, standardize_allergens, standardize_dietary
from tunisafka.schemas import Menu, MenuItem, MenusResponse, ScrapingResult, validate_menu, validate_menu_item

STALE_WARNING = "serving cached data due to fetch failure"


class MenuService:
    """
    Answers "what are today's menus".

    A valid cache entry short-circuits everything. On a miss the extractor
    runs, raw menus are normalized and validated, and the result is cached.
    When extraction fails the last persisted entry is served with a warning,
    whatever its date; only when there is nothing at all to serve does
    get_menus() raise NoDataAvailableError.
    """

    def __init__(self, cache_store: CacheStore, extractor: BaseExtractor, timezone: Optional[str] = None):
        self.cache_store = cache_store
        self.extractor = extractor
        self.timezone = timezone or cache_store.timezone
        # Mirrors of the last outcome, for status reporting only
        self.last_scraping_result: Optional[ScrapingResult] = None
        self.last_update: Optional[datetime] = None
        self._initialized = False

    @property
    def origin(self) -> str:
        return self.extractor.source_url or settings.SOURCE_URL

    def initialize(self) -> None:
        if self._initialized:
            return
        self.cache_store.initialize()
        self._initialized = True

    async def get_menus(self) -> MenusResponse:
        self.initialize()

        entry = self.cache_store.read()
        if entry is not None:
            self.last_update = entry.timestamp
            if entry.scraping_result is not None:
                self.last_scraping_result = entry.scraping_result
            return MenusResponse(
                menus=entry.menu_data,
                last_updated=entry.timestamp,
                source=f"{self.origin} (cached)",
                scraping_result=entry.scraping_result,
            )

        started = time.monotonic()
        try:
            print(f"REFRESHING menus from {self.origin}")
            raw_menus, scraping_result = await self.extractor.fetch()
            print(f"SCRAPED {scraping_result.menus_found} raw menus in {scraping_result.formatted_duration}")

            menus = self.process_menus(raw_menus)
            print(f"PROCESSED {len(menus)} menus")

            try:
                self.cache_store.write(menus, scraping_result)
            except StorageError as e:
                print(f"WARNING: returning fresh menus without caching them: {e}")
        except Exception as e:
            return self._serve_stale(e, started)

        self.last_scraping_result = scraping_result
        self.last_update = scraping_result.timestamp
        return MenusResponse(
            menus=menus,
            last_updated=self.last_update,
            source=self.origin,
            scraping_result=scraping_result,
        )

    def _serve_stale(self, error: Exception, started: float) -> MenusResponse:
        message = str(error) or type(error).__name__
        duration = getattr(error, "duration_ms", 0) or int((time.monotonic() - started) * 1000)
        self.last_scraping_result = ScrapingResult.failed(message, self.origin, duration)
        print(f"SCRAPING FAILED after {self.last_scraping_result.formatted_duration}: {message}")

        stale = self.cache_store.read_stale_fallback()
        if stale is None:
            print("FALLBACK impossible: no cached menus of any date")
            raise NoDataAvailableError(
                f"No menu data available: {message}",
                retryable=getattr(error, "retryable", True),
            ) from error

        print(f"FALLBACK serving stale cache from {stale.date} ({stale.formatted_age()} old)")
        return MenusResponse(
            menus=stale.menu_data,
            last_updated=stale.timestamp,
            source=f"{self.origin} (stale cache)",
            scraping_result=stale.scraping_result,
            warning=STALE_WARNING,
            scraping_error=message,
            cache_date=stale.date,
        )

    def process_menus(self, raw_menus: list[RawMenu]) -> list[Menu]:
        """
        Normalize and validate raw menus.

        A menu that fails validation, or has no valid item left, is skipped;
        one bad menu never fails the batch. Missing or duplicate ids are
        replaced by sequential `menu-N` ids.
        """
        menus = []
        for index, raw in enumerate(raw_menus):
            try:
                menu = self.process_menu(raw)
            except (MenuValidationError, TypeError, ValueError, AttributeError) as e:
                print(f"SKIPPING menu #{index + 1}: {e}")
                continue
            if not menu.items:
                print(f"SKIPPING menu '{menu.title}': no valid items")
                continue
            menus.append(menu)
        return assign_fallback_ids(menus)

    def process_menu(self, raw: RawMenu) -> Menu:
        if not isinstance(raw, dict):
            raise MenuValidationError(f"menu must be an object, got {type(raw).__name__}")

        raw_items = raw.get("items") or []
        if not isinstance(raw_items, list):
            raise MenuValidationError(f"items of '{raw.get('title')}' must be a list, got {type(raw_items).__name__}")

        items = []
        for raw_item in raw_items:
            if not isinstance(raw_item, (dict, MenuItem)):
                continue
            try:
                outcome = validate_menu_item(self.normalize_item(raw_item))
            except (TypeError, ValueError, AttributeError) as e:
                print(f"SKIPPING item in '{raw.get('title')}': {e}")
                continue
            if outcome.valid:
                items.append(outcome.value)
            else:
                print(f"SKIPPING item in '{raw.get('title')}': {outcome.reason}")

        outcome = validate_menu({**raw, "items": items})
        if not outcome.valid:
            raise MenuValidationError(f"invalid menu '{raw.get('title')}': {outcome.reason}")
        return outcome.value

    @staticmethod
    def normalize_item(item: Any) -> dict[str, Any]:
        """Canonical price, dietary and allergen tags; applying it twice changes nothing"""
        if isinstance(item, MenuItem):
            item = item.model_dump()
        price = item.get("price")
        return {
            **item,
            "price": normalize_price("" if price is None else str(price)),
            "dietary": standardize_dietary(item.get("dietary")),
            "allergens": standardize_allergens(item.get("allergens")),
        }

    async def get_menu_by_id(self, menu_id: str) -> Optional[Menu]:
        response = await self.get_menus()
        return next((menu for menu in response.menus if menu.id == menu_id), None)

    async def get_menus_by_dietary(self, dietary: str) -> MenusResponse:
        response = await self.get_menus()
        return response.model_copy(update={
            "menus": [menu for menu in response.menus if menu.has_dietary(dietary)],
            "dietary_filter": dietary,
        })

    async def get_currently_available_menus(self, now: Optional[datetime] = None) -> list[Menu]:
        response = await self.get_menus()
        moment = now_in(self.timezone, now)
        return [menu for menu in response.menus if menu.is_currently_available(moment)]

    async def get_menu_statistics(self, now: Optional[datetime] = None) -> dict[str, Any]:
        response = await self.get_menus()
        menus = response.menus
        moment = now_in(self.timezone, now)

        total_items = sum(menu.item_count for menu in menus)
        dietary: dict[str, None] = {}
        allergens: dict[str, None] = {}
        for menu in menus:
            for tag in menu.dietary_categories():
                dietary.setdefault(tag)
            for tag in menu.all_allergens():
                allergens.setdefault(tag)

        prices = [item.price_numeric for menu in menus for item in menu.items if item.price_numeric > 0]
        price_range = None
        if prices:
            price_range = {
                "min": min(prices),
                "max": max(prices),
                "average": round(sum(prices) / len(prices), 2),
            }

        return {
            "totalMenus": len(menus),
            "totalItems": total_items,
            "averageItemsPerMenu": round(total_items / len(menus), 2) if menus else 0,
            "currentlyAvailable": sum(1 for menu in menus if menu.is_currently_available(moment)),
            "dietaryCategories": list(dietary),
            "allergens": list(allergens),
            "priceRange": price_range,
            "lastUpdated": response.last_updated.isoformat() if response.last_updated else None,
            "source": response.source,
        }

    async def refresh_menus(self) -> MenusResponse:
        """Drop today's entry and fetch again; the only way to bypass a cache hit"""
        self.clear_cache()
        return await self.get_menus()

    def clear_cache(self) -> bool:
        self.initialize()
        self.cache_store.clear()
        self.last_scraping_result = None
        self.last_update = None
        return True

    def get_cache_stats(self) -> dict[str, Any]:
        self.initialize()
        return self.cache_store.stats()

    def get_service_status(self) -> dict[str, Any]:
        last_result = self.last_scraping_result
        return {
            "initialized": self._initialized,
            "sourceUrl": self.origin,
            "timezone": self.timezone,
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
            "lastScrapingResult": last_result.model_dump(mode="json", by_alias=True) if last_result else None,
            "lastScrapingStatus": last_result.status_message() if last_result else None,
            "cacheStats": self.get_cache_stats(),
            "extractor": self.extractor.get_config(),
        }


def assign_fallback_ids(menus: list[Menu]) -> list[Menu]:
    """Give every menu a usable id, unique within the list"""
    seen: set[str] = set()
    result = []
    for index, menu in enumerate(menus):
        menu_id = menu.id
        if not menu_id or menu_id in seen:
            number = index + 1
            menu_id = f"menu-{number}"
            while menu_id in seen:
                number += 1
                menu_id = f"menu-{number}"
            menu = menu.model_copy(update={"id": menu_id})
        seen.add(menu_id)
        result.append(menu)
    return result
