from typing import Any

from tunisafka.schemas import ScrapingResult

# Raw menu as produced by an extractor, validated later by the menu service:
# {"title", "description", "items": [{"name", "price", "dietary", ...}], "availability"}
RawMenu = dict[str, Any]


class BaseExtractor:
    """
    Turns the source page into raw menus.

    `fetch()` returns an empty list with a successful result when the page has
    no menus, and raises ExtractionError only for transport or parse failures.
    """
    source_url: str = ""

    async def fetch(self) -> tuple[list[RawMenu], ScrapingResult]:
        raise NotImplementedError

    def get_config(self) -> dict[str, Any]:
        return {"sourceUrl": self.source_url}
