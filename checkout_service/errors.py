"""Error taxonomy for the checkout engine.

Engine functions raise these; routers turn them into ``HTTPException``
through :func:`to_http_exception`. Every error carries a machine-readable
``code`` and the HTTP status the API answers with.
"""

from typing import Any, Optional

from fastapi import HTTPException, status


class CheckoutError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "checkout_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


class ValidationError(CheckoutError):
    code = "validation_error"


class InvalidQuantity(ValidationError):
    code = "invalid_quantity"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class NoStagedOrder(CheckoutError):
    code = "no_staged_order"

    def __init__(self, user_id: int):
        super().__init__("No staged order for this user. Start checkout from the cart again.", user_id=user_id)


class NotFound(CheckoutError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class InsufficientStock(CheckoutError):
    status_code = status.HTTP_409_CONFLICT
    code = "insufficient_stock"

    def __init__(self, product_id: int, available: int, requested: int, message: Optional[str] = None):
        super().__init__(
            message or f"Insufficient stock for product {product_id}. Available: {available}, Requested: {requested}",
            product_id=product_id,
            available=available,
            requested=requested,
        )


class TransactionFailure(CheckoutError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "transaction_failed"


class ExternalServiceFailure(CheckoutError):
    # Raised by notification dispatchers and handled in dispatch_order_confirmation;
    # a dispatch failure never changes the response of the request that placed the order.
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "external_service_failed"


def to_http_exception(exc: CheckoutError) -> HTTPException:
    if isinstance(exc, TransactionFailure):
        # Never leak internals of a rolled back transaction
        return HTTPException(status_code=exc.status_code, detail={"error": exc.code, "message": exc.message})
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
