# Overview: Business error kinds shared by the fulfillment services.

"""
Every failure raised by the service layer is a MarketplaceError with a
stable `kind`. Callers (CLI, future HTTP layer) render it with to_dict()
instead of leaking driver exceptions.
"""

from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError


class MarketplaceError(Exception):
    """Base class for business-rule failures."""
    kind = "marketplace_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details,
        }


class NotFound(MarketplaceError):
    kind = "not_found"


class ValidationError(MarketplaceError):
    """400-level input problem."""
    kind = "validation_error"


class InsufficientStock(MarketplaceError):
    kind = "insufficient_stock"


class InvalidRelease(MarketplaceError):
    kind = "invalid_release"


class InvalidConfirm(MarketplaceError):
    kind = "invalid_confirm"


class InvalidTransition(MarketplaceError):
    kind = "invalid_transition"


class InvalidState(MarketplaceError):
    kind = "invalid_state"


class PaymentNotVerified(MarketplaceError):
    kind = "payment_not_verified"


class NoDriverAvailable(MarketplaceError):
    kind = "no_driver_available"


class LocationUnavailable(MarketplaceError):
    kind = "location_unavailable"


class RouteUnavailable(MarketplaceError):
    kind = "route_unavailable"


class DuplicateDelivery(MarketplaceError):
    """Only raised when a caller asks for strict (non-idempotent) dispatch."""
    kind = "duplicate_delivery"


class DatabaseError(MarketplaceError):
    kind = "database_error"


def wrap_database_error(exc: SQLAlchemyError, action: str) -> DatabaseError:
    """Map a driver/ORM error onto a structured failure for the caller."""
    return DatabaseError(
        f"Database error while trying to {action}",
        details={"exception": exc.__class__.__name__},
    )
