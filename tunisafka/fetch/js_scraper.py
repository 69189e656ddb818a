from playwright.async_api import async_playwright, Error as PlaywrightError, TimeoutError as PlaywrightTimeout

from tunisafka.core.config import settings
from tunisafka.core.errors import ExtractionError, ExtractionTimeoutError

COOKIE_SELECTORS = [
    'button:has-text("Hyväksy")',
    'button:has-text("Hyväksy kaikki")',
    'button:has-text("Accept")',
    'button:has-text("I Agree")',
    '[id*="cookie" i] button',
    '[class*="cookie" i] button',
]
CONTENT_SELECTORS = [
    '.menu-section, .restaurant',
    '[class*="menu" i], [id*="menu" i]',
    '[class*="lounas" i]',
    'main',
    'section',
]


async def fetch_js_html(url: str, wait_for_content: bool = True) -> str:
    """
    Fetch HTML from a URL using Playwright to handle JavaScript.

    Args:
        url: The URL to fetch
        wait_for_content: Whether to wait for menu sections to render

    Returns:
        Raw HTML string after JavaScript execution
    """
    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(
                headless=settings.PLAYWRIGHT_HEADLESS,
                args=[
                    '--no-sandbox',
                    '--disable-dev-shm-usage',
                    '--disable-gpu',
                ]
            )
            try:
                page = await browser.new_page()
                await page.set_extra_http_headers({"User-Agent": settings.USER_AGENT})

                await page.goto(url, timeout=settings.REQUEST_TIMEOUT * 1000, wait_until="domcontentloaded")
                try:
                    await page.wait_for_load_state("networkidle", timeout=settings.REQUEST_TIMEOUT * 1000)
                except PlaywrightTimeout:
                    pass

                await _dismiss_cookie_banner(page)

                if wait_for_content:
                    for sel in CONTENT_SELECTORS:
                        try:
                            await page.wait_for_selector(sel, timeout=min(4000, settings.JS_WAIT_TIMEOUT_MS))
                            break
                        except PlaywrightTimeout:
                            continue
                    # Extra small wait for hydration
                    await page.wait_for_timeout(min(3000, settings.JS_EXTRA_WAIT_MS))

                return await page.content()
            finally:
                await browser.close()

    except PlaywrightTimeout as e:
        raise ExtractionTimeoutError(f"Timeout while rendering {url}") from e
    except PlaywrightError as e:
        raise ExtractionError(f"Failed to fetch {url} with JavaScript: {e}") from e


async def _dismiss_cookie_banner(page) -> None:
    for sel in COOKIE_SELECTORS:
        try:
            button = page.locator(sel).first
            if await button.count() > 0:
                await button.click(timeout=1500)
                return
        except PlaywrightError:
            continue
