"""
Pydantic models for carts, inventory, orders, payments, requests, and responses.
"""
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from enum import Enum


class OrderStatus(str, Enum):
    """Lifecycle states of a persisted order"""
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Requester(BaseModel):
    """Identity supplied by the authentication middleware"""
    user_id: str = Field(..., min_length=1, description="Requesting user identifier")
    is_administrator: bool = Field(False, description="Whether the requester is an administrator")


class CartLine(BaseModel):
    """Cart line model"""
    product_id: str = Field(..., description="Product identifier")
    quantity: int = Field(..., ge=1, description="Line quantity")


class Cart(BaseModel):
    """An owner's pending line items, in insertion order"""
    owner: str = Field(..., description="Owning user or anonymous session")
    lines: List[CartLine] = Field(default_factory=list)
    updated_at: Optional[datetime] = Field(None, description="Last modification time")

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines


class InventoryRecord(BaseModel):
    """Available stock of one product"""
    product_id: str
    available: int = Field(..., ge=0)
    reserved: int = Field(0, ge=0, description="Units held by open reservations")


class ShippingAddress(BaseModel):
    """Shipping address snapshot stored on an order"""
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1, description="State/Province")
    zip_code: str = Field(..., min_length=1, description="Zip/Postal code")
    country: str = Field(..., min_length=1)

    @field_validator("street", "city", "state", "zip_code")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Field is required")
        return v

    @field_validator("country")
    @classmethod
    def normalize_country(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("Country is required")
        return v


class OrderLine(BaseModel):
    """Order line with the unit price frozen at purchase"""
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0, description="Unit price at purchase")

    @property
    def extension(self) -> Decimal:
        return self.unit_price * self.quantity


class CompensationRecord(BaseModel):
    """
    Progress of a cancellation or refund.

    Each sub-step is recorded as it succeeds so a retry only redoes the
    pending ones.
    """
    target_status: OrderStatus
    refund_amount: Optional[Decimal] = None
    reason: Optional[str] = None
    products_to_release: List[str] = Field(default_factory=list)
    refund_done: bool = False
    refund_attempts: int = Field(0, ge=0, description="Refund calls made so far; keys each call")
    released_products: List[str] = Field(default_factory=list)
    status_done: bool = False
    failures: List[str] = Field(default_factory=list)

    def pending_releases(self, lines: List[OrderLine]) -> List[OrderLine]:
        return [
            line for line in lines
            if line.product_id in self.products_to_release and line.product_id not in self.released_products
        ]

    def is_complete(self, lines: List[OrderLine]) -> bool:
        return self.refund_done and self.status_done and not self.pending_releases(lines)


class Order(BaseModel):
    """Immutable record of a completed purchase"""
    order_id: str
    order_number: str
    owner: str
    lines: List[OrderLine] = Field(..., min_length=1)
    total: Decimal = Field(..., frozen=True)
    currency: str = "usd"
    shipping_address: ShippingAddress
    charge_id: str
    refund_ids: List[str] = Field(default_factory=list)
    status: OrderStatus = OrderStatus.PROCESSING
    compensation: Optional[CompensationRecord] = None
    idempotency_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def check_total(self) -> "Order":
        expected = sum((line.extension for line in self.lines), Decimal("0"))
        if self.total != expected:
            raise ValueError(f"Order total {self.total} does not match line total {expected}")
        return self

    @property
    def compensation_pending(self) -> bool:
        return self.compensation is not None and not self.compensation.is_complete(self.lines)


class ChargeResult(BaseModel):
    """Successful charge reported by the payment gateway"""
    charge_id: str
    status: str
    amount: Decimal
    currency: str


class RefundResult(BaseModel):
    """Refund reported by the payment gateway"""
    refund_id: str
    status: str
    amount: Optional[Decimal] = None


class CartItemRequest(BaseModel):
    """Request model for adding cart items"""
    product_id: str = Field(..., min_length=1, description="Product identifier")
    quantity: int = Field(..., ge=1, description="Quantity to add")


class UpdateQuantityRequest(BaseModel):
    """Request model for setting a line quantity (0 removes the line)"""
    quantity: int = Field(..., ge=0, description="New line quantity")


class CartResponse(BaseModel):
    """Response model for cart retrieval"""
    owner: str = Field(..., description="Cart owner")
    items: List[CartLine] = Field(default_factory=list, description="Cart lines in insertion order")
    total_items: int = Field(0, description="Total number of units")
    total_price: Decimal = Field(Decimal("0"), description="Cart value at current prices")
    updated_at: Optional[datetime] = None


class PlaceOrderRequest(BaseModel):
    """Request model for checkout"""
    payment_method_id: str = Field(..., min_length=1, description="Payment method reference")
    shipping_address: ShippingAddress


class StatusUpdateRequest(BaseModel):
    """Request model for order status updates"""
    status: str = Field(..., description="Requested order status")


class RefundRequest(BaseModel):
    """Request model for refunds"""
    amount: Optional[Decimal] = Field(None, gt=0, description="Partial refund amount; full refund when omitted")
    reason: Optional[str] = Field(None, description="Refund reason")


class OrderListResponse(BaseModel):
    """One page of an owner's orders, newest first"""
    orders: List[Order]
    current_page: int
    total_pages: int
    total_orders: int
