"""
Shipdesk Exception Hierarchy

Every error carries a stable machine-readable code, a human-readable message,
and the HTTP status the API layer answers with.

Exception Hierarchy:
    ShippingError (500)
    ├── ShippingValidationError (400)
    ├── ShippingNotFoundError (404)
    ├── ShippingConflictError (409)
    ├── ShippingQuoteError (422)
    └── EasyshipAPIError (500)
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ShippingError(Exception):
    """
    Base exception for shipping label errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context (missing fields, upstream payload, ...)
        status_code: HTTP status the API returns for this error
    """

    default_code: str = "SHIPPING_ERROR"
    default_status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.status_code = status_code or self.default_status
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ShippingValidationError(ShippingError):
    """Input or precondition the operator has to fix (ship-from, destination, parcel)."""
    default_code = "INVALID_INPUT"
    default_status = 400


class ShippingNotFoundError(ShippingError):
    default_code = "NOT_FOUND"
    default_status = 404


class ShippingConflictError(ShippingError):
    """State conflict: already purchased, preset in use, purchase in flight."""
    default_code = "SHIPMENT_ALREADY_PURCHASED"
    default_status = 409


class ShippingQuoteError(ShippingError):
    default_code = "NO_QUOTES"
    default_status = 422


class EasyshipAPIError(ShippingError):
    """Upstream provider failure: network, 4xx/5xx, or unusable response."""
    default_code = "EASYSHIP_ERROR"
    default_status = 500

    @property
    def upstream_status(self) -> Optional[int]:
        return self.details.get("status")
