"""Domain errors raised by the marketplace core.

Each error knows the HTTP status it maps to; ``main.py`` renders them as JSON.
"""
from typing import Any, Dict, List, Optional


class MarketplaceError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


class ValidationFailed(MarketplaceError):
    status_code = 422
    default_message = "Validation failed"

    def __init__(self, errors: Dict[str, List[str]], message: Optional[str] = None):
        super().__init__(message)
        self.errors = errors

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "errors": self.errors}


class NotAuthenticated(MarketplaceError):
    status_code = 401
    default_message = "Unauthenticated"


class PermissionDenied(MarketplaceError):
    status_code = 403
    default_message = "Unauthorized"


class NotFound(MarketplaceError):
    status_code = 404
    default_message = "Not found"


class Conflict(MarketplaceError):
    status_code = 409
    default_message = "Resource already exists"

    def __init__(self, message: Optional[str] = None, existing: Any = None, key: str = "existing"):
        super().__init__(message)
        self.existing = existing
        self.key = key


class InvalidState(MarketplaceError):
    status_code = 422
    default_message = "Operation not allowed in the current state"
