"""
Shared error handling for the identity cache layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    context_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class IdentityCacheException(Exception):
    """Base exception for the identity cache layer."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Imported lazily; logging depends on nothing in this module
        from shared.logging import context_id_var

        return ErrorResponse(
            context_id=context_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class UsageError(IdentityCacheException, ValueError):
    """Caller asked for something the declarations do not support."""

    def __init__(self, message: str = "Unsupported usage", details: Optional[Dict[str, Any]] = None):
        super().__init__("USAGE_ERROR", message, details)


class RecordNotFound(IdentityCacheException, LookupError):
    """Record is neither cached nor present in the record store."""

    def __init__(self, type_name: str, record_id: Any, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {}, type=type_name, id=record_id)
        super().__init__("RECORD_NOT_FOUND", f"Couldn't find {type_name} with ID={record_id}", details)


class BackendError(IdentityCacheException):
    """Cache backend could not be started or reached."""

    def __init__(self, backend: str, message: str = "Cache backend error", details: Optional[Dict[str, Any]] = None):
        super().__init__("BACKEND_ERROR", f"{backend}: {message}", details)


class DecodingError(IdentityCacheException):
    """Cached payload could not be turned back into a value."""

    def __init__(self, message: str = "Could not decode cached value", details: Optional[Dict[str, Any]] = None):
        super().__init__("DECODING_ERROR", message, details)
