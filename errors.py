"""Errors raised by the marketplace services.

Each carries the HTTP status the API answers with, so main.py can map
them with a single exception handler.
"""

from typing import List, Optional


class MarketplaceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    """Missing or malformed input; the client must correct it."""

    status_code = 400

    def __init__(self, message: str, fields: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.fields = fields or []


class NotFound(MarketplaceError):
    status_code = 404


class InvalidState(MarketplaceError):
    """The requested transition is not allowed from the listing's current status."""

    status_code = 409

    def __init__(self, message: str, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status


class EmptyResult(MarketplaceError):
    status_code = 404


class PersistenceError(MarketplaceError):
    status_code = 500
