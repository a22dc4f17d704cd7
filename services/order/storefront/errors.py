"""
Order Service — エラー分類

すべての業務エラーは StorefrontError を継承し、
機械可読な kind と HTTP ステータスを持つ。
main.py の例外ハンドラがこれを JSON に変換する。
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    kind = "StorefrontError"
    status_code = 500
    retryable = False

    def __init__(self, message: str, **details):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            **self.details,
        }


class ValidationError(StorefrontError):
    """Malformed or incomplete request. Nothing was written."""

    kind = "ValidationError"
    status_code = 400


class InsufficientStock(StorefrontError):
    """A reservation would drive a product's stock below zero."""

    kind = "InsufficientStock"
    status_code = 400

    def __init__(self, product_id: str, product_name: str, available: int, requested: int):
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name}. "
            f"Available: {available}, Requested: {requested}",
            productId=product_id,
            productName=product_name,
            available=available,
            requested=requested,
        )


class InvalidTransition(StorefrontError):
    """Operation not allowed from the order's current status or for this caller."""

    kind = "InvalidTransition"
    status_code = 400


class Unauthorized(StorefrontError):
    kind = "Unauthorized"
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class Forbidden(StorefrontError):
    kind = "Forbidden"
    status_code = 403

    def __init__(self, message: str = "Admin access required"):
        super().__init__(message)


class NotFound(StorefrontError):
    kind = "NotFound"
    status_code = 404


class TransientError(StorefrontError):
    """The store failed mid-transaction (lock timeout, lost connection). Safe to retry."""

    kind = "TransientError"
    status_code = 503
    retryable = True


class IntegrityError(StorefrontError):
    """Stored data contradicts itself, e.g. an order line pointing at a missing product."""

    kind = "IntegrityError"
    status_code = 500
