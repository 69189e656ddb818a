import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tunisafka.fetch.utils import WEEKDAYS, price_to_float, slugify, weekday_name

CACHE_VERSION = "1.0.0"
TIME_RE = re.compile(r'^([01]?[0-9]|2[0-3]):[0-5][0-9]$')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def format_age(age: timedelta) -> str:
    """Human readable age: '<1m', '42m', '3h 5m'"""
    total_minutes = max(int(age.total_seconds() // 60), 0)
    hours, minutes = divmod(total_minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m"
    return "<1m"


class CamelModel(BaseModel):
    """camelCase on the wire and on disk, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Availability(CamelModel):
    start_time: Optional[str] = Field(None, description="Opening time, HH:MM")
    end_time: Optional[str] = Field(None, description="Closing time, HH:MM")
    days: list[str] = Field(default_factory=list, description="Lower-case English weekday names")

    @field_validator("start_time", "end_time")
    @classmethod
    def check_time(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not TIME_RE.match(value):
            raise ValueError(f"time must be HH:MM, got {value!r}")
        return value

    @field_validator("days")
    @classmethod
    def check_days(cls, value: list[str]) -> list[str]:
        days = [day.strip().lower() for day in value]
        invalid = [day for day in days if day not in WEEKDAYS]
        if invalid:
            raise ValueError(f"unknown weekday(s): {', '.join(invalid)}")
        return days

    def covers(self, moment: datetime) -> bool:
        """Whether the menu is served at the given local time"""
        if self.days and weekday_name(moment) not in self.days:
            return False
        if self.start_time and self.end_time:
            current = moment.time().replace(second=0, microsecond=0)
            return _parse_hhmm(self.start_time) <= current <= _parse_hhmm(self.end_time)
        return True


class MenuItem(CamelModel):
    id: str
    name: str
    description: str = ""
    price: str = Field("", description="Display price, e.g. '€2.70'")
    dietary: list[str] = Field(default_factory=list, description="Normalized dietary tags")
    allergens: list[str] = Field(default_factory=list, description="Allergen tags prefixed 'contains '")
    availability: str = ""

    @model_validator(mode="before")
    @classmethod
    def derive_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id") and isinstance(data.get("name"), str):
            data = {**data, "id": slugify(data["name"])}
        return data

    @field_validator("description", "price", "availability", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("id", "name")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @property
    def price_numeric(self) -> float:
        return price_to_float(self.price)


class Menu(CamelModel):
    id: str = Field("", description="Slug derived from the title, unique within a menu list")
    title: str
    description: str = ""
    items: list[MenuItem] = Field(default_factory=list)
    availability: Optional[Availability] = None
    last_updated: datetime = Field(default_factory=utcnow)
    is_selected: bool = False

    @model_validator(mode="before")
    @classmethod
    def derive_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id") and isinstance(data.get("title"), str):
            data = {**data, "id": slugify(data["title"])}
        return data

    @field_validator("description", mode="before")
    @classmethod
    def none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be a non-empty string")
        return value

    @property
    def item_count(self) -> int:
        return len(self.items)

    def dietary_categories(self) -> list[str]:
        seen: dict[str, None] = {}
        for item in self.items:
            for tag in item.dietary:
                seen.setdefault(tag)
        return list(seen)

    def all_allergens(self) -> list[str]:
        seen: dict[str, None] = {}
        for item in self.items:
            for tag in item.allergens:
                seen.setdefault(tag)
        return list(seen)

    def has_dietary(self, dietary_filter: str) -> bool:
        needle = dietary_filter.lower()
        return any(needle in tag.lower() for item in self.items for tag in item.dietary)

    def is_currently_available(self, now: Optional[datetime] = None) -> bool:
        """Menus without an availability window are always available"""
        if self.availability is None:
            return True
        return self.availability.covers(now or datetime.now())

    def selected_copy(self) -> "Menu":
        """Deep copy flagged as selected, the original stays untouched"""
        return self.model_copy(deep=True, update={"is_selected": True})


class ScrapingResult(CamelModel):
    """
    Outcome of one fetch + extraction run.
    Immutable; build it with ScrapingResult.succeeded() or ScrapingResult.failed().
    """
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    success: bool
    menus_found: int = Field(0, ge=0)
    source: str = ""
    error: Optional[str] = None
    duration: int = Field(0, ge=0, description="Duration in milliseconds")

    @model_validator(mode="after")
    def check_outcome(self) -> "ScrapingResult":
        if not self.success and self.menus_found > 0:
            raise ValueError("a failed scraping result cannot report menus found")
        if not self.success and not self.error:
            raise ValueError("a failed scraping result needs an error message")
        if self.success and self.error:
            raise ValueError("a successful scraping result cannot carry an error")
        return self

    @classmethod
    def succeeded(cls, menus_found: int, source: str, duration: int,
                  timestamp: Optional[datetime] = None) -> "ScrapingResult":
        return cls(
            timestamp=timestamp or utcnow(),
            success=True,
            menus_found=menus_found,
            source=source,
            error=None,
            duration=duration,
        )

    @classmethod
    def failed(cls, error: str, source: str, duration: int,
               timestamp: Optional[datetime] = None) -> "ScrapingResult":
        return cls(
            timestamp=timestamp or utcnow(),
            success=False,
            menus_found=0,
            source=source,
            error=error or "Unknown scraping error",
            duration=duration,
        )

    @property
    def formatted_duration(self) -> str:
        if self.duration < 1000:
            return f"{self.duration}ms"
        return f"{round(self.duration / 1000, 2)}s"

    @property
    def error_category(self) -> Optional[str]:
        if self.success:
            return None
        message = (self.error or "").lower()
        if "timeout" in message or "time out" in message or "timed out" in message:
            return "timeout"
        if "network" in message or "connection" in message:
            return "network"
        if "parse" in message or "parsing" in message:
            return "parsing"
        if "404" in message or "not found" in message:
            return "not-found"
        if "500" in message or "server" in message:
            return "server"
        return "other"

    @property
    def is_retryable(self) -> bool:
        return self.error_category in ("timeout", "network", "server")

    def status_message(self) -> str:
        if self.success:
            plural = "" if self.menus_found == 1 else "s"
            return f"Successfully found {self.menus_found} menu{plural} in {self.formatted_duration}"
        return f"Failed after {self.formatted_duration}: {self.error}"


class CacheEntry(CamelModel):
    date: str = Field(pattern=r'^\d{4}-\d{2}-\d{2}$', description="Calendar day in `timezone`")
    timestamp: datetime = Field(default_factory=utcnow, description="Write time")
    timezone: str
    menu_data: list[Menu] = Field(default_factory=list)
    scraping_result: Optional[ScrapingResult] = None
    version: str = CACHE_VERSION

    def is_valid_for(self, date_str: str) -> bool:
        return self.date == date_str

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return _aware(now or utcnow()) - _aware(self.timestamp)

    def formatted_age(self, now: Optional[datetime] = None) -> str:
        return format_age(self.age(now))

    def is_expired(self, ttl: timedelta = timedelta(hours=24), now: Optional[datetime] = None) -> bool:
        return self.age(now) > ttl

    @property
    def menu_count(self) -> int:
        return len(self.menu_data)

    @property
    def total_item_count(self) -> int:
        return sum(menu.item_count for menu in self.menu_data)

    def __str__(self) -> str:
        return f"CacheEntry[{self.date}, {self.menu_count} menus, {self.formatted_age()} old]"


T = TypeVar("T")


@dataclass(frozen=True)
class ValidationOutcome(Generic[T]):
    valid: bool
    value: Optional[T] = None
    reason: Optional[str] = None


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {error['msg']}" if location else error["msg"]


def validate_menu_item(data: Any) -> ValidationOutcome[MenuItem]:
    try:
        return ValidationOutcome(valid=True, value=MenuItem.model_validate(data))
    except ValidationError as e:
        return ValidationOutcome(valid=False, reason=_first_error(e))


def validate_menu(data: Any) -> ValidationOutcome[Menu]:
    """
    Validate a raw menu dict (items included) against the Menu schema.
    Returns a typed outcome instead of raising so callers can log and skip.
    """
    try:
        return ValidationOutcome(valid=True, value=Menu.model_validate(data))
    except ValidationError as e:
        return ValidationOutcome(valid=False, reason=_first_error(e))


class MenusResponse(CamelModel):
    menus: list[Menu]
    last_updated: Optional[datetime] = None
    source: str
    scraping_result: Optional[ScrapingResult] = None
    warning: Optional[str] = None
    scraping_error: Optional[str] = None
    cache_date: Optional[str] = None
    dietary_filter: Optional[str] = None


class RefreshResponse(MenusResponse):
    refreshed: bool = True
    message: str = "Menu data has been refreshed"


class WeightRules(CamelModel):
    base_weight: float = 1.0
    item_count_bonus: float = 0.0
    dietary_bonus: float = 0.0
    availability_bonus: float = 0.0


class SelectionResult(CamelModel):
    selected_menu: Menu
    total_menus_available: int
    selection_timestamp: datetime = Field(default_factory=utcnow)
    available_after_filtering: Optional[int] = None
    selection_weight: Optional[float] = None


class ItemSelectionResult(CamelModel):
    selected_item: MenuItem
    menu_id: str
    menu_title: str
    total_items_available: int
    selection_timestamp: datetime = Field(default_factory=utcnow)


class RandomnessRequest(BaseModel):
    iterations: int = Field(100, ge=1, description="Number of draws, capped at 1000")


class ErrorResponse(CamelModel):
    error: str
    code: str
    retry: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    details: Optional[str] = None
