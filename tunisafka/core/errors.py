"""Menu service exceptions.

Every exception carries a machine readable ``code`` and a ``retryable``
hint. The API layer turns them into ``{error, code, retry, timestamp}``
responses; the services decide which of them are absorbed and which
reach the caller.
"""

from typing import Optional


class MenuServiceError(Exception):
    """Base exception for the menu service."""

    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class StorageError(MenuServiceError):
    """Raised when the cache directory or cache file cannot be written.

    Fatal on writes and on startup, swallowed (counted as a miss) on reads.
    """

    code = "STORAGE_ERROR"
    retryable = True


class ExtractionError(MenuServiceError):
    """Raised when the source page cannot be fetched or parsed.

    Recoverable: the menu service falls back to the stale cache entry.
    """

    code = "SCRAPING_ERROR"
    retryable = True

    def __init__(self, message: str, retryable: Optional[bool] = None, duration_ms: int = 0):
        super().__init__(message, retryable)
        self.duration_ms = duration_ms


class ExtractionTimeoutError(ExtractionError):
    """Raised when fetching the source page times out."""

    code = "SOURCE_UNAVAILABLE"


class NoDataAvailableError(MenuServiceError):
    """No valid cache, extraction failed and no stale entry exists."""

    code = "NO_DATA_AVAILABLE"
    retryable = True


class EmptyInputError(MenuServiceError):
    """Raised when a selection is requested from an empty menu list."""

    code = "NO_MENUS_AVAILABLE"
    retryable = True


class NoAvailableMenusError(MenuServiceError):
    """Raised when filtering left no menu to select from."""

    code = "NO_AVAILABLE_MENUS"
    retryable = True


class MenuValidationError(MenuServiceError):
    """A raw menu or menu item failed schema validation.

    Only the offending entity is dropped, the request carries on.
    """

    code = "VALIDATION_ERROR"


class MenuNotFoundError(MenuServiceError):
    """Raised when no menu with the requested id is served today."""

    code = "MENU_NOT_FOUND"
