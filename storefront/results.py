"""
Typed outcomes of the order core.

Callers branch on ``ErrorKind`` rather than on messages. ``Disposition``
tells whether a failed call left no trace, was fully undone, or could only
be partially undone.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from storefront.models import Order


class ReserveOutcome(str, Enum):
    OK = "ok"
    INSUFFICIENT_STOCK = "insufficient_stock"
    UNKNOWN_PRODUCT = "unknown_product"


class TransitionOutcome(str, Enum):
    OK = "ok"
    FORBIDDEN = "forbidden"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"


class ErrorKind(str, Enum):
    EMPTY_CART = "empty_cart"
    INSUFFICIENT_STOCK = "insufficient_stock"
    UNKNOWN_PRODUCT = "unknown_product"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_IN_PROGRESS = "checkout_in_progress"
    STORE_UNAVAILABLE = "store_unavailable"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_TRANSITION = "invalid_transition"
    COMPENSATION_PARTIAL_FAILURE = "compensation_partial_failure"


class Disposition(str, Enum):
    NO_EFFECT = "no_effect"
    ROLLED_BACK = "rolled_back"
    PARTIALLY_UNDONE = "partially_undone"


@dataclass(frozen=True, slots=True)
class StepFailure:
    """One compensation sub-step that could not be applied"""
    step: str
    detail: str
    product_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TransitionResult:
    outcome: TransitionOutcome
    order: Optional[Order] = None

    @property
    def ok(self) -> bool:
        return self.outcome is TransitionOutcome.OK


@dataclass(frozen=True, slots=True)
class CheckoutError:
    kind: ErrorKind
    message: str
    disposition: Disposition = Disposition.NO_EFFECT
    product_id: Optional[str] = None
    reason: Optional[str] = None
    failures: Tuple[StepFailure, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class CheckoutResult:
    """Either an order or a typed error; an error may still carry the affected order"""
    order: Optional[Order] = None
    error: Optional[CheckoutError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, order: Order) -> "CheckoutResult":
        return cls(order=order)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, order: Optional[Order] = None, **details) -> "CheckoutResult":
        return cls(order=order, error=CheckoutError(kind=kind, message=message, **details))
