from fastapi import status


class TradeServiceError(Exception):
    """Base for failures the REST boundary maps onto an HTTP status."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(TradeServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(TradeServiceError):
    status_code = status.HTTP_409_CONFLICT


class AuthorizationError(TradeServiceError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidTradeError(TradeServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class DeliveryFailure(Exception):
    """No live connection accepted a realtime message. Never surfaces to HTTP callers."""

    def __init__(self, user_id: int, reason: str = "no live connection"):
        super().__init__(f"Delivery to user {user_id} failed: {reason}")
        self.user_id = user_id
        self.reason = reason
