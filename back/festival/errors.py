"""
Error taxonomy for the order lifecycle.

Every error carries a machine-readable `kind` (also used for socket `error`
frames) and the HTTP status the API maps it to.
"""


class FestivalError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, product_id: int | None = None):
        self.message = message
        self.product_id = product_id
        super().__init__(message)

    def to_dict(self) -> dict:
        data = {"detail": self.message, "kind": self.kind}
        if self.product_id is not None:
            data["product_id"] = self.product_id
        return data


class ValidationError(FestivalError):
    """Malformed or empty request, rejected before any mutation."""
    kind = "validation"
    status_code = 400


class NotFound(FestivalError):
    kind = "not-found"
    status_code = 404


class ProductUnavailable(FestivalError):
    """Product missing, disabled, sold out or soft-deleted."""
    kind = "product-unavailable"
    status_code = 409


class InsufficientStock(FestivalError):
    kind = "insufficient-stock"
    status_code = 409


class OrdersSuspended(FestivalError):
    """An emergency stop is active."""
    kind = "orders-suspended"
    status_code = 409


class InvalidTransition(FestivalError):
    kind = "invalid-transition"
    status_code = 409


class Conflict(FestivalError):
    """Order number collisions survived every regeneration attempt."""
    kind = "conflict"
    status_code = 409


class InfrastructureError(FestivalError):
    """Pool timeout or query failure. The message stays generic."""
    kind = "infrastructure"
    status_code = 503
