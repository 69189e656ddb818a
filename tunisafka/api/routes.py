from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from tunisafka.core.errors import MenuNotFoundError
from tunisafka.schemas import (
    ItemSelectionResult,
    Menu,
    MenusResponse,
    RandomnessRequest,
    RefreshResponse,
    SelectionResult,
    utcnow,
)
from tunisafka.services.menus import MenuService
from tunisafka.services.selection import SelectionService

MAX_RANDOMNESS_ITERATIONS = 1000

router = APIRouter()


def get_menu_service(request: Request) -> MenuService:
    return request.app.state.menu_service


def get_selection_service(request: Request) -> SelectionService:
    return request.app.state.selection_service


@router.get("/menus", response_model=MenusResponse, response_model_by_alias=True,
            response_model_exclude_none=True)
async def list_menus(menu_service: MenuService = Depends(get_menu_service)):
    """
    Today's menus.

    Served from the daily cache when possible; on a scraping failure the
    last cached menus are returned with a `warning`.
    """
    return await menu_service.get_menus()


@router.get("/menus/random", response_model=SelectionResult, response_model_by_alias=True,
            response_model_exclude_none=True)
async def random_menu(
    avoid_recent: Optional[int] = Query(None, alias="avoidRecent", ge=0,
                                        description="Skip menus among the last N selections"),
    menu_service: MenuService = Depends(get_menu_service),
    selection_service: SelectionService = Depends(get_selection_service),
):
    """Pick one of today's menus at random"""
    response = await menu_service.get_menus()
    if avoid_recent:
        return selection_service.select_random_avoiding_recent(response.menus, avoid_recent)
    return selection_service.select_random(response.menus)


@router.get("/menus/random/item", response_model=ItemSelectionResult, response_model_by_alias=True)
async def random_menu_item(
    menu_service: MenuService = Depends(get_menu_service),
    selection_service: SelectionService = Depends(get_selection_service),
):
    """Pick a single dish across all of today's menus"""
    response = await menu_service.get_menus()
    return selection_service.select_random_item(response.menus)


@router.get("/menus/random/multiple")
async def random_menus(
    count: int = Query(3, ge=1, le=10),
    unique: bool = Query(True),
    menu_service: MenuService = Depends(get_menu_service),
    selection_service: SelectionService = Depends(get_selection_service),
):
    response = await menu_service.get_menus()
    selections = selection_service.create_multiple_selections(response.menus, count, unique)
    return {
        "selections": [
            selection.model_dump(mode="json", by_alias=True, exclude_none=True) for selection in selections
        ],
        "count": len(selections),
        "timestamp": utcnow().isoformat(),
    }


@router.post("/menus/test-randomness")
async def randomness_check(
    body: RandomnessRequest,
    menu_service: MenuService = Depends(get_menu_service),
    selection_service: SelectionService = Depends(get_selection_service),
):
    """Distribution check of the random selection over today's menus"""
    response = await menu_service.get_menus()
    iterations = min(body.iterations, MAX_RANDOMNESS_ITERATIONS)
    return selection_service.test_randomness_distribution(response.menus, iterations)


@router.get("/menus/available")
async def available_menus(menu_service: MenuService = Depends(get_menu_service)):
    """Menus whose serving window covers the current time"""
    menus = await menu_service.get_currently_available_menus()
    return {
        "menus": [menu.model_dump(mode="json", by_alias=True) for menu in menus],
        "count": len(menus),
        "timestamp": utcnow().isoformat(),
    }


@router.get("/menus/dietary/{dietary_type}", response_model=MenusResponse, response_model_by_alias=True,
            response_model_exclude_none=True)
async def menus_by_dietary(dietary_type: str, menu_service: MenuService = Depends(get_menu_service)):
    return await menu_service.get_menus_by_dietary(dietary_type)


@router.get("/menus/stats")
async def menu_statistics(menu_service: MenuService = Depends(get_menu_service)):
    return await menu_service.get_menu_statistics()


@router.post("/menus/refresh", response_model=RefreshResponse, response_model_by_alias=True,
             response_model_exclude_none=True)
async def refresh_menus(menu_service: MenuService = Depends(get_menu_service)):
    """Bypass today's cache entry and scrape again"""
    response = await menu_service.refresh_menus()
    return RefreshResponse(**response.model_dump())


@router.get("/menus/{menu_id}", response_model=Menu, response_model_by_alias=True)
async def menu_by_id(menu_id: str, menu_service: MenuService = Depends(get_menu_service)):
    menu = await menu_service.get_menu_by_id(menu_id)
    if menu is None:
        raise MenuNotFoundError(f"Menu '{menu_id}' not found")
    return menu


@router.delete("/cache")
async def clear_cache(menu_service: MenuService = Depends(get_menu_service)):
    """Delete today's cache entry; clearing an empty cache succeeds too"""
    menu_service.clear_cache()
    return {"message": "Cache cleared successfully", "timestamp": utcnow().isoformat()}


@router.post("/cache/refresh", response_model=RefreshResponse, response_model_by_alias=True,
             response_model_exclude_none=True)
async def refresh_cache(menu_service: MenuService = Depends(get_menu_service)):
    response = await menu_service.refresh_menus()
    return RefreshResponse(**response.model_dump(), message="Cache has been refreshed")


@router.get("/cache/status")
async def cache_status(menu_service: MenuService = Depends(get_menu_service)):
    """Cache statistics for debugging"""
    return {"cacheStats": menu_service.get_cache_stats(), "timestamp": utcnow().isoformat()}


@router.get("/health")
async def health_check(menu_service: MenuService = Depends(get_menu_service)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "Tunisafka Menu Service",
        "timestamp": utcnow().isoformat(),
        "services": menu_service.get_service_status(),
    }
