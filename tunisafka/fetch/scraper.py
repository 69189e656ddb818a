import re
import time
from typing import Any, Optional

import httpx
from bs4 import BeautifulSoup, Tag

from tunisafka.core.config import settings
from tunisafka.core.errors import ExtractionError, ExtractionTimeoutError
from tunisafka.fetch.base import BaseExtractor, RawMenu
from tunisafka.fetch.utils import WEEKDAYS, extract_time_window
from tunisafka.schemas import ScrapingResult

MENU_SECTION_SELECTORS = [
    ".menu-section", ".restaurant", ".daily-menu", ".lunch-menu", ".food-menu",
    ".restaurant-section", ".food-section",
    "[class*='menu' i]", "[id*='menu' i]",
]
ITEM_SELECTORS = [".menu-item", ".food-item", ".dish", ".item", "li"]
TITLE_SELECTORS = "h1, h2, h3, h4, h5, h6, .title, .menu-title, .restaurant-name, .section-title"
PRICE_RE = re.compile(r'[€$£¥]\s*\d+(?:[.,]\d{2})?|\d+[.,]\d{2}\s*[€$£¥]?')
DIET_CODES_RE = re.compile(r'\(([A-Za-z*]{1,5}(?:\s*,\s*[A-Za-z*]{1,5})*)\)\s*$')
ALLERGEN_LABEL_RE = re.compile(r'(?:allergens?|allergeenit)\s*:\s*([^.;)]+)', re.IGNORECASE)
DIETARY_KEYWORDS = {
    "vegetarian": ["vegetarian", "veggie"],
    "vegan": ["vegan"],
    "gluten-free": ["gluten-free", "gluten free", "gluteeniton"],
    "dairy-free": ["dairy-free", "dairy free", "maidoton"],
    "organic": ["organic", "luomu"],
}
MAX_SECTIONS = 10
MAX_ITEMS_PER_MENU = 20
WEEKDAYS_MON_FRI = WEEKDAYS[:5]


async def fetch_html(url: str) -> str:
    """Fetch raw HTML from a URL, mapping transport failures to ExtractionError."""
    headers = {
        "User-Agent": settings.USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.7,fi;q=0.3",
        "Accept-Encoding": "gzip, deflate",
        "Connection": "keep-alive",
    }
    try:
        async with httpx.AsyncClient(
            timeout=settings.REQUEST_TIMEOUT,
            headers=headers,
            follow_redirects=True
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.text
    except httpx.TimeoutException as e:
        raise ExtractionTimeoutError(f"Request timeout after {settings.REQUEST_TIMEOUT}s for {url}") from e
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        raise ExtractionError(
            f"HTTP error {status} for {url}",
            retryable=status >= 500 or status == 429,
        ) from e
    except httpx.HTTPError as e:
        raise ExtractionError(f"Network error while fetching {url}: {e}") from e


async def fetch_html_with_js_fallback(url: str) -> str:
    """
    Fetch HTML, rendering the page with Playwright when the static response
    looks empty or like a client-side app.
    """
    if settings.USE_MOCK:
        return _mock_fetch_html(url)

    try:
        html = await fetch_html(url)
    except ExtractionError as e:
        if not settings.USE_JS_FALLBACK:
            raise
        try:
            from tunisafka.fetch.js_scraper import fetch_js_html
            print(f"Static request failed: {e}, trying JavaScript rendering...")
            return await fetch_js_html(url)
        except ImportError:
            raise ExtractionError(f"{e} (JavaScript rendering unavailable)", retryable=e.retryable) from e
        except ExtractionError as js_e:
            raise ExtractionError(
                f"Both static and JavaScript fetching failed. Static: {e}, JS: {js_e}",
                retryable=e.retryable,
            ) from js_e

    if not settings.USE_JS_FALLBACK:
        return html

    extracted = extract_menu_text(html)
    spa_markers = (
        'id="__next"' in html or
        '__NEXT_DATA__' in html or
        'data-reactroot' in html or
        'window.__NUXT__' in html or
        'ng-version' in html
    )
    if len(extracted.strip()) < 150 or spa_markers:
        reason = f"{len(extracted)} chars" + (" + SPA markers" if spa_markers else "")
        print(f"Static content insufficient ({reason}), trying JavaScript rendering...")
        try:
            from tunisafka.fetch.js_scraper import fetch_js_html
            html = await fetch_js_html(url)
        except ImportError:
            print("Playwright not available, using static content")
        except ExtractionError as e:
            print(f"JavaScript rendering failed: {e}, using static content")
    return html


def extract_menu_text(html: str) -> str:
    """Visible text of the page without scripts and chrome, one block per line."""
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style", "noscript", "nav", "header", "footer"]):
        element.decompose()
    lines = [line.strip() for line in soup.get_text("\n").splitlines()]
    return "\n".join(line for line in lines if line)


def parse_menus_from_html(html: str) -> list[RawMenu]:
    """
    Parse restaurant menus out of the cafeteria page.

    Each menu section becomes a raw menu; when the page has no recognisable
    sections, all food items found are grouped into a single "Today's Menu".
    An empty list means the page simply had no menus.
    """
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style", "noscript"]):
        element.decompose()

    menus = []
    for index, section in enumerate(find_menu_sections(soup)):
        menu = parse_menu_section(section, index)
        if menu["items"]:
            menus.append(menu)

    if not menus:
        items = [item for item in (parse_menu_item(el) for el in find_all_menu_items(soup)) if item]
        if items:
            menus.append({
                "title": "Today's Menu",
                "description": "Available food items for today",
                "items": items[:MAX_ITEMS_PER_MENU],
                "availability": None,
            })
    return menus


def find_menu_sections(soup: BeautifulSoup) -> list[Tag]:
    # First selector with substantial matches wins, nested matches are skipped
    for selector in MENU_SECTION_SELECTORS:
        sections: list[Tag] = []
        chosen: set[int] = set()
        for element in soup.select(selector):
            if len(element.get_text(" ", strip=True)) <= 20:
                continue
            if any(id(parent) in chosen for parent in element.parents):
                continue
            sections.append(element)
            chosen.add(id(element))
        if sections:
            return sections[:MAX_SECTIONS]
    return []


def find_all_menu_items(soup: BeautifulSoup) -> list[Tag]:
    elements = soup.select(".item, .dish, .food, li")
    return [el for el in elements if 10 < len(el.get_text(" ", strip=True)) < 200]


def parse_menu_section(section: Tag, index: int) -> RawMenu:
    title = _first_text(section, TITLE_SELECTORS)
    if not title:
        title = _first_text(section, "strong, b, .bold") or f"Menu {index + 1}"

    items: list[dict[str, Any]] = []
    for selector in ITEM_SELECTORS:
        for element in section.select(selector):
            item = parse_menu_item(element)
            if item:
                items.append(item)
        if items:
            break

    return {
        "id": section.get("data-menu-id") or None,
        "title": title,
        "description": _first_text(section, ".description, .menu-description, .subtitle") or "",
        "items": items[:MAX_ITEMS_PER_MENU],
        "availability": extract_availability(section),
    }


def parse_menu_item(element: Tag) -> Optional[dict[str, Any]]:
    text = element.get_text(" ", strip=True)
    if len(text) < 3:
        return None

    name = _first_text(element, ".name, .item-name, .dish-name, .title")
    if not name:
        name = PRICE_RE.split(text)[0].strip(" -–:") or text[:50]

    price = _first_text(element, ".price, .cost, .amount")
    if not price:
        match = PRICE_RE.search(text)
        price = match.group(0).strip() if match else ""

    return {
        "name": name,
        "description": _first_text(element, ".description, .item-description, .details") or "",
        "price": price,
        "dietary": extract_dietary(element, text),
        "allergens": extract_allergens(element, text),
        "availability": _first_text(element, ".availability, .hours") or "",
    }


def extract_dietary(element: Tag, text: str) -> list[str]:
    """
    Dietary tags from a dedicated element ("G, M"), trailing diet codes
    ("... (G, L)") or keywords in the item text.
    """
    tagged = _first_text(element, ".diets, .dietary, .diet")
    if tagged:
        return [code for code in re.split(r'[,\s]+', tagged) if code]

    codes = DIET_CODES_RE.search(text)
    if codes:
        return [code.strip() for code in codes.group(1).split(",") if code.strip()]

    lower = text.lower()
    found = []
    for category, keywords in DIETARY_KEYWORDS.items():
        if any(re.search(rf'\b{re.escape(keyword)}\b', lower) for keyword in keywords):
            found.append(category)
    return found


def extract_allergens(element: Tag, text: str) -> list[str]:
    """Allergens listed in an .allergens element or after an 'Allergens:' label"""
    listed = _first_text(element, ".allergens, .allergen")
    if not listed:
        match = ALLERGEN_LABEL_RE.search(text)
        listed = match.group(1) if match else ""
    listed = re.sub(r'^(?:allergens?|allergeenit)\s*:\s*', '', listed, flags=re.IGNORECASE)
    return [part.strip() for part in listed.split(",") if part.strip()]


def extract_availability(section: Tag) -> Optional[dict[str, Any]]:
    """Serving window like '10:30-14:00'; lunch is served on weekdays"""
    hours = _first_text(section, ".opening-hours, .hours, .lunch-hours, time")
    window = extract_time_window(hours or "")
    if window is None:
        heading_text = " ".join(el.get_text(" ", strip=True) for el in section.select(TITLE_SELECTORS))
        window = extract_time_window(heading_text)
    if window is None:
        return None
    start, end = window
    return {"startTime": start, "endTime": end, "days": list(WEEKDAYS_MON_FRI)}


def _first_text(element: Tag, selector: str) -> Optional[str]:
    found = element.select_one(selector)
    if found is None:
        return None
    text = found.get_text(" ", strip=True)
    return text or None


def _elapsed_ms(started: float) -> int:
    return max(int(round((time.perf_counter() - started) * 1000)), 0)


class MenuExtractor(BaseExtractor):
    """Scrapes the cafeteria page configured in settings.SOURCE_URL."""

    def __init__(self, source_url: Optional[str] = None):
        self.source_url = source_url or settings.SOURCE_URL

    async def fetch(self) -> tuple[list[RawMenu], ScrapingResult]:
        started = time.perf_counter()
        print(f"SCRAPING {self.source_url} ...")
        try:
            html = await fetch_html_with_js_fallback(self.source_url)
            if not html:
                raise ExtractionError(f"No content received from {self.source_url}")
            print(f"HTML RECEIVED: {len(html)} characters")
            menus = parse_menus_from_html(html)
        except ExtractionError as e:
            e.duration_ms = _elapsed_ms(started)
            print(f"SCRAPING failed: {e}")
            raise
        except Exception as e:
            print(f"PARSING failed: {e}")
            raise ExtractionError(f"Menu parsing failed: {e}", retryable=False,
                                  duration_ms=_elapsed_ms(started)) from e

        result = ScrapingResult.succeeded(len(menus), self.source_url, _elapsed_ms(started))
        print(f"SCRAPING completed: {result.status_message()}")
        return menus, result

    def get_config(self) -> dict[str, Any]:
        return {
            "sourceUrl": self.source_url,
            "timeout": settings.REQUEST_TIMEOUT,
            "userAgent": settings.USER_AGENT,
            "mock": settings.USE_MOCK,
        }


def _mock_fetch_html(url: str) -> str:
    """Bundled copy of the cafeteria page for development without network requests"""
    return """
    <html>
    <head><title>Unisafka - Hervanta</title></head>
    <body>
        <header><nav>Hervanta | Keskusta | Kauppi</nav></header>
        <main id="restaurants">
            <section class="restaurant menu-section" data-menu-id="hertsi">
                <h2 class="restaurant-name">Hertsi</h2>
                <p class="description">Lunch buffet and salad bar in Tietotalo</p>
                <p class="opening-hours">Lunch 10:30-14:00</p>
                <ul class="menu-items">
                    <li class="menu-item">
                        <span class="name">FROM THE FIELD-VEGAN</span>
                        <span class="description">Chili-roasted butternut squash, organic beans and rice, hummus</span>
                        <span class="diets">G, M</span>
                        <span class="price">3,50 €</span>
                    </li>
                    <li class="menu-item">
                        <span class="name">From our favorites</span>
                        <span class="description">Chicken Mac&amp;Cheese and warm vegetables</span>
                        <span class="diets">L</span>
                        <span class="allergens">milk, gluten</span>
                        <span class="price">3.50</span>
                    </li>
                    <li class="menu-item">
                        <span class="name">FROM THE SOUP BOWL</span>
                        <span class="description">Spicy tomato soup</span>
                        <span class="diets">G, M</span>
                        <span class="price">3.50</span>
                    </li>
                </ul>
            </section>
            <section class="restaurant menu-section" data-menu-id="newton">
                <h2 class="restaurant-name">Newton</h2>
                <p class="description">Traditional Finnish lunch</p>
                <p class="opening-hours">Lunch 11:00-14:00</p>
                <ul class="menu-items">
                    <li class="menu-item">
                        <span class="name">LUNCH</span>
                        <span class="description">Pea soup with pork meat</span>
                        <span class="diets">G, M</span>
                        <span class="price">3,50 €</span>
                    </li>
                    <li class="menu-item">
                        <span class="name">Pancake</span>
                        <span class="description">Traditional Finnish pancake with strawberry jam</span>
                        <span class="allergens">egg, milk, wheat</span>
                        <span class="price">2.50</span>
                    </li>
                </ul>
            </section>
            <section class="restaurant menu-section" data-menu-id="cafe-konehuone">
                <h2 class="restaurant-name">Café Konehuone</h2>
                <p class="description">Fusion burgers and street food favorites</p>
                <p class="opening-hours">10:30-15:00</p>
                <ul class="menu-items">
                    <li class="menu-item">
                        <span class="name">FUSION VEGE BURGER</span>
                        <span class="description">Tofu burger</span>
                        <span class="diets">KASV, M</span>
                        <span class="allergens">soy</span>
                        <span class="price">3,50 €</span>
                    </li>
                    <li class="menu-item">
                        <span class="name">STREET FOOD</span>
                        <span class="description">Minced meat corn tortillas</span>
                        <span class="diets">M</span>
                        <span class="price">3,50 €</span>
                    </li>
                </ul>
            </section>
            <section class="restaurant menu-section" data-menu-id="reaktori">
                <h2 class="restaurant-name">Reaktori</h2>
                <p class="description">Buffet-style dining with vegan options</p>
                <p class="opening-hours">10:30-13:30</p>
                <ul class="menu-items">
                    <li class="menu-item">
                        <span class="name">Vegan lunch</span>
                        <span class="description">Aubergine and tomato stew with gremolata</span>
                        <span class="diets">VE, G, L, M</span>
                        <span class="price">3,50 €</span>
                    </li>
                    <li class="menu-item">
                        <span class="name">Pop Up Grill</span>
                        <span class="description">Mildly smoked rainbow trout</span>
                        <span class="diets">G, L, M</span>
                        <span class="allergens">fish</span>
                        <span class="price">3,50 €</span>
                    </li>
                </ul>
            </section>
        </main>
        <footer><p>© Unisafka</p></footer>
    </body>
    </html>
    """
