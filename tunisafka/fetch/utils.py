import re
import unicodedata
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Any, Iterable, Optional

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
CURRENCY_MARKERS = ("€", "$", "£", "¥")

DIETARY_SYNONYMS = {
    "veg": "vegetarian",
    "veggie": "vegetarian",
    "kasvis": "vegetarian",
    "kasv": "vegetarian",
    "plant-based": "vegan",
    "plant based": "vegan",
    "ve": "vegan",
    "vl": "low-lactose",
    "gluten free": "gluten-free",
    "gluteeniton": "gluten-free",
    "g": "gluten-free",
    "dairy free": "dairy-free",
    "maidoton": "dairy-free",
    "m": "dairy-free",
    "laktoositon": "lactose-free",
    "l": "lactose-free",
    "lactose free": "lactose-free",
    "luomu": "organic",
}

ALLERGEN_SYNONYMS = {
    "gluten": "contains gluten",
    "wheat": "contains gluten",
    "vehnä": "contains gluten",
    "milk": "contains dairy",
    "dairy": "contains dairy",
    "maito": "contains dairy",
    "laktoosi": "contains dairy",
    "nuts": "contains nuts",
    "nut": "contains nuts",
    "pähkinä": "contains nuts",
    "egg": "contains eggs",
    "eggs": "contains eggs",
    "muna": "contains eggs",
    "fish": "contains fish",
    "kala": "contains fish",
    "soy": "contains soy",
    "soja": "contains soy",
}

_PRICE_RE = re.compile(r'(\d+(?:[.,]\d{1,2})?)')


def get_zone(tz_name: str) -> Optional[ZoneInfo]:
    """Resolve a timezone name, None if the runtime does not know it"""
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        return None


def now_in(tz_name: str, now: Optional[datetime] = None) -> datetime:
    """
    Current time converted to the given timezone.
    Unknown zones degrade to the system local time instead of failing.
    """
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.astimezone()
    zone = get_zone(tz_name)
    if zone is None:
        return current.astimezone()
    return current.astimezone(zone)


def today_str(tz_name: str, now: Optional[datetime] = None) -> str:
    """Get today's date in the given timezone as ISO string (YYYY-MM-DD)"""
    return now_in(tz_name, now).date().isoformat()


def weekday_name(moment: datetime) -> str:
    return WEEKDAYS[moment.weekday()]


def slugify(text: str) -> str:
    """
    Build an id from a title or item name.
    Examples: 'Café Konehuone' -> 'cafe-konehuone', 'Lounas 11-14' -> 'lounas-11-14'
    """
    if not text:
        return ""
    folded = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    return re.sub(r'[^a-z0-9]+', '-', folded.lower()).strip('-')


def price_to_float(price_text: str) -> float:
    """
    Extract the numeric part of a price string.
    Examples: '€8.90' -> 8.9, '2,70 €' -> 2.7, '5' -> 5.0, 'free' -> 0.0
    """
    if not price_text:
        return 0.0
    match = _PRICE_RE.search(str(price_text))
    if not match:
        return 0.0
    return float(match.group(1).replace(',', '.'))


def has_currency_marker(price_text: str) -> bool:
    return any(marker in price_text for marker in CURRENCY_MARKERS)


def normalize_price(price_text: str) -> str:
    """
    Canonical display price.
    Prices without a currency marker become '€X.XX' when a value can be
    extracted; anything carrying a marker is returned as is.
    """
    if not price_text:
        return ""
    price_text = price_text.strip()
    if has_currency_marker(price_text):
        return price_text
    value = price_to_float(price_text)
    if value > 0:
        return f"€{value:.2f}"
    return price_text


def _as_tags(value: Any) -> list:
    """A lone string is one tag; anything that is not a list or tuple has none"""
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _dedupe(values: Iterable[str]) -> list[str]:
    seen = set()
    out = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


def standardize_dietary(dietary: Optional[Iterable[str]]) -> list[str]:
    """Lower-case, map synonyms to English terms, dedupe preserving order"""
    normalized = []
    for tag in _as_tags(dietary):
        if not isinstance(tag, str):
            continue
        key = tag.lower().strip()
        normalized.append(DIETARY_SYNONYMS.get(key, key))
    return _dedupe(normalized)


def standardize_allergens(allergens: Optional[Iterable[str]]) -> list[str]:
    """Map allergen synonyms and prefix every tag with 'contains '"""
    normalized = []
    for tag in _as_tags(allergens):
        if not isinstance(tag, str):
            continue
        key = tag.lower().strip()
        if not key:
            continue
        if key in ALLERGEN_SYNONYMS:
            normalized.append(ALLERGEN_SYNONYMS[key])
        elif key.startswith("contains "):
            normalized.append(key)
        else:
            normalized.append(f"contains {key}")
    return _dedupe(normalized)


def extract_time_window(text: str) -> Optional[tuple[str, str]]:
    """
    Find an opening-hours window like '10:30-14:00' or '10.30 – 14.00'.
    Returns zero padded ('10:30', '14:00') or None.
    """
    if not text:
        return None
    match = re.search(r'(\d{1,2})[:.](\d{2})\s*[-–]\s*(\d{1,2})[:.](\d{2})', text)
    if not match:
        return None
    start = f"{int(match.group(1)):02d}:{match.group(2)}"
    end = f"{int(match.group(3)):02d}:{match.group(4)}"
    return start, end
