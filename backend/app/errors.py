from typing import Optional

from fastapi import status


class TradeError(Exception):
    """Base error for the trade core.

    Each subclass carries the HTTP status family and a stable machine-readable
    ``kind``; the message is safe to show to the caller.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind: str = "internal_error"
    default_message: str = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


class Unauthorized(TradeError):
    status_code = status.HTTP_401_UNAUTHORIZED
    kind = "unauthorized"
    default_message = "Unauthorized"


class Forbidden(TradeError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "forbidden"
    default_message = "Forbidden"


class NotFound(TradeError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "not_found"
    default_message = "Trade not found"


class InvalidTransition(TradeError):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "invalid_transition"
    default_message = "Invalid status transition"


class InvalidRequest(TradeError):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "invalid_request"
    default_message = "Invalid request"


class Conflict(TradeError):
    status_code = status.HTTP_409_CONFLICT
    kind = "conflict"
    default_message = "Trade is in a state that does not allow this change"


class BuyerRequired(TradeError):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "buyer_required"
    default_message = "buyerUserId is required to approve"


class ShippingInfoMissing(TradeError):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "shipping_info_missing"
    default_message = "Shipping destination and contact are required to approve"


class InternalError(TradeError):
    pass
