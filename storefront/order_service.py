"""
Order service: persistence and status transitions of orders.

The order aggregate never calls inventory or payment; cancellation side
effects are driven by the checkout service.
"""
import math
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from storefront.redis_client import RedisClient, get_redis_client
from storefront.config import Config
from storefront.models import (
    CompensationRecord,
    Order,
    OrderLine,
    OrderListResponse,
    OrderStatus,
    Requester,
    ShippingAddress,
)
from storefront.results import TransitionOutcome, TransitionResult
from storefront.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Forward progress of a live order
_FORWARD_RANK: Dict[OrderStatus, int] = {
    OrderStatus.PROCESSING: 0,
    OrderStatus.SHIPPED: 1,
    OrderStatus.DELIVERED: 2,
}
_TERMINAL = {OrderStatus.CANCELLED, OrderStatus.REFUNDED}


def is_valid_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """Statuses only move forward; cancelled/refunded end an undelivered order"""
    if current == new:
        return True
    if current == OrderStatus.DELIVERED or current in _TERMINAL:
        return False
    if new in _TERMINAL:
        return True
    return _FORWARD_RANK[new] > _FORWARD_RANK[current]


def can_access(order: Order, requester: Requester) -> bool:
    return requester.is_administrator or requester.user_id == order.owner


class OrderService:
    """Service for order records"""

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()

    def _get_order_key(self, order_id: str) -> str:
        return f"order:{order_id}"

    def _get_owner_index_key(self, owner: str) -> str:
        return f"orders:owner:{owner}"

    def _get_charge_index_key(self, charge_id: str) -> str:
        return f"orders:charge:{charge_id}"

    def next_order_number(self, now: datetime) -> str:
        """Human-readable order number, ORD-YYMM-NNNN, counted per month"""
        period = now.strftime("%y%m")
        count = self.redis.incr(f"orders:seq:{period}")
        return f"ORD-{period}-{count:04d}"

    def create(
        self,
        owner: str,
        lines: Sequence[OrderLine],
        total: Decimal,
        shipping_address: ShippingAddress,
        charge_id: str,
        currency: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        order_id: Optional[str] = None
    ) -> Order:
        """Build and persist a new order in status processing"""
        now = datetime.now(timezone.utc)
        order = Order(
            order_id=order_id or uuid.uuid4().hex,
            order_number=self.next_order_number(now),
            owner=owner,
            lines=list(lines),
            total=total,
            currency=currency or Config.CURRENCY,
            shipping_address=shipping_address,
            charge_id=charge_id,
            status=OrderStatus.PROCESSING,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now
        )

        order_key = self._get_order_key(order.order_id)
        index_key = self._get_owner_index_key(owner)
        payload = order.model_dump_json()

        def build(pipe):
            pipe.set(order_key, payload)
            pipe.zadd(index_key, {order.order_id: now.timestamp()})
            pipe.set(self._get_charge_index_key(charge_id), order.order_id)

        self.redis.multi_exec(build)
        logger.info("Order %s created: total=%s lines=%d", order.order_number, order.total, len(order.lines))
        return order

    def get(self, order_id: str) -> Optional[Order]:
        raw = self.redis.get(self._get_order_key(order_id))
        if raw is None:
            return None
        return Order.model_validate_json(raw)

    def find_by_charge(self, charge_id: str) -> Optional[Order]:
        """Look up the order paid for by a gateway charge"""
        order_id = self.redis.get(self._get_charge_index_key(charge_id))
        if order_id is None:
            return None
        return self.get(order_id)

    def list_orders(self, owner: str, page: int = 1, limit: int = 10) -> OrderListResponse:
        """Page through an owner's orders, newest first"""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        index_key = self._get_owner_index_key(owner)
        total_orders = self.redis.zcard(index_key)
        start = (page - 1) * limit
        order_ids = self.redis.zrevrange(index_key, start, start + limit - 1)

        orders: List[Order] = []
        for order_id in order_ids:
            order = self.get(order_id)
            if order is not None:
                orders.append(order)

        return OrderListResponse(
            orders=orders,
            current_page=page,
            total_pages=math.ceil(total_orders / limit),
            total_orders=total_orders
        )

    def save_compensation(self, order_id: str, compensation: CompensationRecord) -> Optional[Order]:
        """Record compensation progress without changing the status"""
        order_key = self._get_order_key(order_id)

        def update(pipe):
            raw = pipe.get(order_key)
            if raw is None:
                return None
            order = Order.model_validate_json(raw)
            updated = order.model_copy(update={
                "compensation": compensation,
                "updated_at": datetime.now(timezone.utc)
            })
            pipe.multi()
            pipe.set(order_key, updated.model_dump_json())
            return updated

        return self.redis.transaction(update, order_key)

    def record_refunds(self, order_id: str, refund_ids: Sequence[str]) -> Optional[Order]:
        """Add gateway refund ids to an order, keeping its status"""
        order_key = self._get_order_key(order_id)

        def update(pipe):
            raw = pipe.get(order_key)
            if raw is None:
                return None
            order = Order.model_validate_json(raw)
            new_ids = [r for r in refund_ids if r not in order.refund_ids]
            if not new_ids:
                return order
            updated = order.model_copy(update={
                "refund_ids": order.refund_ids + new_ids,
                "updated_at": datetime.now(timezone.utc)
            })
            pipe.multi()
            pipe.set(order_key, updated.model_dump_json())
            return updated

        return self.redis.transaction(update, order_key)

    def transition_status(
        self,
        order_id: str,
        requester: Requester,
        new_status: str,
        compensation: Optional[CompensationRecord] = None,
        refund_ids: Sequence[str] = ()
    ) -> TransitionResult:
        """
        Move an order to `new_status`.

        The read-check-write runs under WATCH so a concurrent update of the
        same order forces a re-check. A compensation record and refund ids,
        when given, are written in the same transaction.

        Returns:
            TransitionResult with OK, NOT_FOUND, FORBIDDEN or INVALID_TRANSITION
        """
        order_key = self._get_order_key(order_id)

        def update(pipe):
            raw = pipe.get(order_key)
            if raw is None:
                return TransitionResult(TransitionOutcome.NOT_FOUND)

            order = Order.model_validate_json(raw)
            if not can_access(order, requester):
                return TransitionResult(TransitionOutcome.FORBIDDEN, order)

            try:
                status = OrderStatus(new_status)
            except ValueError:
                return TransitionResult(TransitionOutcome.INVALID_TRANSITION, order)

            if not is_valid_transition(order.status, status):
                return TransitionResult(TransitionOutcome.INVALID_TRANSITION, order)

            changes = {
                "status": status,
                "updated_at": datetime.now(timezone.utc),
                "refund_ids": order.refund_ids + [r for r in refund_ids if r not in order.refund_ids],
            }
            if compensation is not None:
                changes["compensation"] = compensation
            updated = order.model_copy(update=changes)

            pipe.multi()
            pipe.set(order_key, updated.model_dump_json())
            return TransitionResult(TransitionOutcome.OK, updated)

        result = self.redis.transaction(update, order_key)
        if result.ok:
            logger.info("Order %s is now %s", result.order.order_number, result.order.status.value)
        else:
            logger.info("Order %s transition to %s refused: %s", order_id, new_status, result.outcome.value)
        return result
