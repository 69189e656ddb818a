from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tunisafka.api.routes import router
from tunisafka.cache.store import CacheStore
from tunisafka.core.config import settings
from tunisafka.core.errors import (
    EmptyInputError,
    MenuNotFoundError,
    MenuServiceError,
    NoAvailableMenusError,
    NoDataAvailableError,
    StorageError,
)
from tunisafka.fetch.base import BaseExtractor
from tunisafka.fetch.scraper import MenuExtractor
from tunisafka.schemas import ErrorResponse
from tunisafka.services.menus import MenuService
from tunisafka.services.selection import SelectionService

SERVICE_NAME = "Tunisafka Menu Service"
VERSION = "1.0.0"

ERROR_STATUS = {
    NoDataAvailableError: 500,
    EmptyInputError: 404,
    NoAvailableMenusError: 404,
    MenuNotFoundError: 404,
    StorageError: 500,
}


def error_status(exc: MenuServiceError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 503 if exc.retryable else 500


def create_app(extractor: Optional[BaseExtractor] = None, cache_store: Optional[CacheStore] = None) -> FastAPI:
    """
    Build the application. Collaborators can be injected (tests); by default
    the scraper and the file cache are configured from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan handler.
        Wire the services on startup, persist cache counters on shutdown.
        """
        print(f"Initializing {SERVICE_NAME}...")
        store = cache_store or CacheStore()
        store.initialize()
        menu_extractor = extractor or MenuExtractor()
        app.state.cache_store = store
        app.state.menu_service = MenuService(store, menu_extractor)
        app.state.selection_service = SelectionService()
        print(f"Serving menus from {menu_extractor.source_url} (mock: {settings.USE_MOCK})")

        yield

        print(f"Shutting down {SERVICE_NAME}...")
        store.flush_stats()

    app = FastAPI(
        title=SERVICE_NAME,
        description="API serving today's university cafeteria menus with random menu selection",
        version=VERSION,
        lifespan=lifespan
    )

    @app.exception_handler(MenuServiceError)
    async def menu_service_error_handler(request: Request, exc: MenuServiceError):
        status_code = error_status(exc)
        print(f"ERROR {exc.code} on {request.url.path}: {exc.message}")
        body = ErrorResponse(error=exc.message, code=exc.code, retry=exc.retryable)
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint with basic info"""
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "environment": settings.APP_ENV,
            "endpoints": {
                "menus": "GET /menus",
                "random": "GET /menus/random",
                "random_item": "GET /menus/random/item",
                "random_multiple": "GET /menus/random/multiple",
                "available": "GET /menus/available",
                "dietary": "GET /menus/dietary/{type}",
                "stats": "GET /menus/stats",
                "menu": "GET /menus/{id}",
                "refresh": "POST /menus/refresh",
                "test_randomness": "POST /menus/test-randomness",
                "cache_status": "GET /cache/status",
                "cache_clear": "DELETE /cache",
                "cache_refresh": "POST /cache/refresh",
                "health": "GET /health",
            }
        }

    return app


app = create_app()
