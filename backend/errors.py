"""Exception types for the store backend.

Every error carries the HTTP status it maps to; the handlers in main.py turn
them into ``{"success": false, "message": ...}`` bodies.
"""

from typing import Optional


class ShopError(Exception):
    """Base exception for all store errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ShopError):
    """Raised when request input is missing or malformed."""

    status_code = 400


class CouponError(ValidationError):
    """Raised when a coupon cannot be applied."""


class CouponNotFoundError(CouponError):
    """Raised when no coupon exists for a code."""

    status_code = 404

    def __init__(self, code: str):
        self.code = code
        super().__init__("Invalid coupon code")


class AuthError(ShopError):
    """Raised when a credential is missing, invalid or expired."""

    status_code = 401


class ForbiddenError(AuthError):
    """Raised when a valid credential lacks the required role."""

    status_code = 403


class NotFoundError(ShopError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class ConflictError(ShopError):
    """Raised on duplicates and on operations the current state forbids."""

    status_code = 409


class UpstreamError(ShopError):
    """Raised when a payment, shipping or SMS provider call fails.

    The provider message is passed through to the client as is.
    """

    status_code = 500

    def __init__(self, provider: str, message: str, payload: Optional[dict] = None):
        self.provider = provider
        self.payload = payload
        super().__init__(message)


class ShipmentCreationError(UpstreamError):
    """Raised when the carrier rejects an order-creation request."""

    def __init__(self, message: str, payload: Optional[dict] = None):
        super().__init__("shiprocket", message, payload)


class PersistenceError(ShopError):
    """Raised when a database write fails. Detail stays in the server log."""

    status_code = 500

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__("Server error")
