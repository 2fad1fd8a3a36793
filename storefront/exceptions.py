"""
Custom exceptions for the storefront order service.

Business outcomes of checkout and cancellation are returned as typed results
(see results.py); these exceptions cover caller mistakes and infrastructure
failures.
"""
from typing import Optional


class StorefrontException(Exception):
    """Base exception for storefront operations"""
    pass


class ValidationError(StorefrontException):
    """Raised when validation fails"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class LimitExceededError(StorefrontException):
    """Raised when cart limits are exceeded"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RedisConnectionError(StorefrontException):
    """Raised when Redis connection fails"""
    pass


class ProductNotFoundError(StorefrontException):
    """Raised when a product is not found in cart"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found in cart: {product_id}")


class CheckoutInProgressError(StorefrontException):
    """Raised when a cart is mutated while its owner is checking out"""
    def __init__(self, owner: str):
        self.owner = owner
        super().__init__("Cart is locked by an in-flight checkout")


class UnmatchedReleaseError(StorefrontException):
    """Raised when stock is released without a matching reservation"""
    def __init__(self, product_id: str, reservation_id: str, quantity: int):
        self.product_id = product_id
        self.reservation_id = reservation_id
        self.quantity = quantity
        super().__init__(
            f"No reservation {reservation_id} of {quantity} for product {product_id}"
        )


class PaymentFailed(StorefrontException):
    """Raised by a payment gateway when a charge or refund does not go through"""
    def __init__(self, reason: str, code: Optional[str] = None):
        self.reason = reason
        self.code = code
        super().__init__(reason)
