"""
Checkout service: turns a cart into a paid order and undoes orders.

Placing an order walks one attempt through

    STARTED -> STOCK_VALIDATED -> PAYMENT_CHARGED -> ORDER_PERSISTED
            -> STOCK_RESERVED -> CART_CLEARED -> COMMITTED

Failures before the charge leave no trace. Failures after it roll back what
was done, in reverse, and report every rollback step that could not be
applied. Cancellation and refund run the same compensation: refund, stock
release, status change, each attempted even when another one fails.
"""
import hashlib
import logging
import uuid
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence, Tuple

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
from storefront.results import (
    CheckoutResult,
    Disposition,
    ErrorKind,
    ReserveOutcome,
    StepFailure,
    TransitionOutcome,
    TransitionResult,
)
from storefront.exceptions import (
    PaymentFailed,
    RedisConnectionError,
    StorefrontException,
    UnmatchedReleaseError,
    ValidationError,
)
from storefront.redis_client import RedisClient, get_redis_client
from storefront.cart_service import CartService
from storefront.catalog_service import CatalogService
from storefront.inventory_service import InventoryService
from storefront.order_service import OrderService, can_access
from storefront.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

ATTEMPT_ROLLED_BACK = "rolled-back"
# Stripe error code for a refund against a fully refunded charge
ALREADY_REFUNDED = "charge_already_refunded"

# Acts on orders when the payment gateway reports a change
GATEWAY = Requester(user_id="payment-gateway", is_administrator=True)


class CheckoutState(str, Enum):
    STARTED = "started"
    STOCK_VALIDATED = "stock_validated"
    PAYMENT_CHARGED = "payment_charged"
    ORDER_PERSISTED = "order_persisted"
    STOCK_RESERVED = "stock_reserved"
    CART_CLEARED = "cart_cleared"
    COMMITTED = "committed"


_TRANSITION_ERRORS = {
    TransitionOutcome.NOT_FOUND: (ErrorKind.NOT_FOUND, "Order not found"),
    TransitionOutcome.FORBIDDEN: (ErrorKind.FORBIDDEN, "Unauthorized access to order"),
    TransitionOutcome.INVALID_TRANSITION: (ErrorKind.INVALID_TRANSITION, "Invalid order status transition"),
}


class CheckoutService:
    """Service for placing, cancelling and refunding orders"""

    def __init__(
        self,
        payment_gateway: PaymentGateway,
        redis: Optional[RedisClient] = None,
        carts: Optional[CartService] = None,
        inventory: Optional[InventoryService] = None,
        orders: Optional[OrderService] = None,
        catalog: Optional[CatalogService] = None
    ):
        self.redis = redis or get_redis_client()
        self.payment_gateway = payment_gateway
        self.catalog = catalog or CatalogService(self.redis)
        self.carts = carts or CartService(self.redis, self.catalog)
        self.inventory = inventory or InventoryService(self.redis)
        self.orders = orders or OrderService(self.redis)

    def _get_attempt_key(self, idempotency_key: str) -> str:
        return f"checkout:attempt:{idempotency_key}"

    def _hash_owner(self, owner: str) -> str:
        """Hash owner for logging (no PII)"""
        return hashlib.sha256(owner.encode()).hexdigest()[:8]

    def _log_state(self, attempt: str, state: CheckoutState) -> None:
        logger.info("[checkout=%s] %s", attempt, state.value.upper())

    # Place order

    def place_order(
        self,
        owner: str,
        payment_method_ref: str,
        shipping_address: ShippingAddress,
        idempotency_key: Optional[str] = None
    ) -> CheckoutResult:
        """
        Convert the owner's cart into a paid order.

        Args:
            owner: Cart owner placing the order
            payment_method_ref: Gateway payment method reference
            shipping_address: Address snapshot stored on the order
            idempotency_key: Identifies the checkout attempt; a replay of a
                committed attempt returns the same order without charging again

        Returns:
            CheckoutResult with the order, or EMPTY_CART, INSUFFICIENT_STOCK,
            UNKNOWN_PRODUCT, PAYMENT_FAILED, CHECKOUT_IN_PROGRESS or
            STORE_UNAVAILABLE
        """
        idempotency_key = idempotency_key or uuid.uuid4().hex

        previous = self.redis.get(self._get_attempt_key(idempotency_key))
        if previous == ATTEMPT_ROLLED_BACK:
            return CheckoutResult.failure(
                ErrorKind.PAYMENT_FAILED,
                "Checkout attempt was rolled back; retry with a new idempotency key",
                reason="attempt_rolled_back"
            )
        if previous is not None:
            order = self.orders.get(previous)
            if order is not None:
                logger.info("[checkout=%s] replay of committed attempt, order %s", idempotency_key, order.order_number)
                return CheckoutResult.success(order)

        lock_token = uuid.uuid4().hex
        if not self.carts.lock_for_checkout(owner, lock_token):
            return CheckoutResult.failure(
                ErrorKind.CHECKOUT_IN_PROGRESS,
                "Another checkout for this cart is in progress"
            )

        try:
            return self._place_order(owner, payment_method_ref, shipping_address, idempotency_key, lock_token)
        finally:
            try:
                self.carts.unlock_checkout(owner, lock_token)
            except RedisConnectionError as e:
                # The lock expires on its own after CHECKOUT_LOCK_SECONDS
                logger.error("[checkout=%s] could not release checkout lock: %s", idempotency_key, e)

    def _place_order(
        self,
        owner: str,
        payment_method_ref: str,
        shipping_address: ShippingAddress,
        attempt: str,
        lock_token: str
    ) -> CheckoutResult:
        logger.info("[checkout=%s] START owner=%s", attempt, self._hash_owner(owner))
        self._log_state(attempt, CheckoutState.STARTED)

        lines = self.carts.snapshot_for_checkout(owner)
        if not lines:
            return CheckoutResult.failure(ErrorKind.EMPTY_CART, "Cart is empty")

        # Validate stock and freeze prices at this instant
        order_lines: List[OrderLine] = []
        for line in lines:
            record = self.inventory.get(line.product_id)
            price = self.catalog.get_price(line.product_id)
            if record is None or price is None:
                return CheckoutResult.failure(
                    ErrorKind.UNKNOWN_PRODUCT,
                    f"Product not found: {line.product_id}",
                    product_id=line.product_id
                )
            if record.available < line.quantity:
                return CheckoutResult.failure(
                    ErrorKind.INSUFFICIENT_STOCK,
                    f"Insufficient stock for product: {line.product_id}",
                    product_id=line.product_id
                )
            order_lines.append(OrderLine(product_id=line.product_id, quantity=line.quantity, unit_price=price))

        total = sum((line.extension for line in order_lines), Decimal("0"))
        self._log_state(attempt, CheckoutState.STOCK_VALIDATED)

        try:
            charge = self.payment_gateway.charge_and_confirm(
                amount=total,
                currency=Config.CURRENCY,
                payment_method_ref=payment_method_ref,
                idempotency_key=f"checkout-{attempt}",
                metadata={"owner": owner, "attempt": attempt}
            )
        except PaymentFailed as e:
            logger.info("[checkout=%s] payment failed: %s", attempt, e.reason)
            return CheckoutResult.failure(ErrorKind.PAYMENT_FAILED, "Payment failed", reason=e.reason)
        self._log_state(attempt, CheckoutState.PAYMENT_CHARGED)

        try:
            order = self.orders.create(
                owner=owner,
                lines=order_lines,
                total=total,
                shipping_address=shipping_address,
                charge_id=charge.charge_id,
                currency=charge.currency,
                idempotency_key=attempt
            )
        except StorefrontException as e:
            logger.error("[checkout=%s] order could not be persisted: %s", attempt, e)
            failures = self._refund_unpersisted_charge(attempt, charge.charge_id)
            return self._rolled_back(
                attempt, None, failures, ErrorKind.STORE_UNAVAILABLE, "Order could not be saved"
            )
        self._log_state(attempt, CheckoutState.ORDER_PERSISTED)

        reserved: List[str] = []
        try:
            for line in order.lines:
                outcome = self.inventory.reserve(line.product_id, line.quantity, order.order_id)
                if outcome is not ReserveOutcome.OK:
                    # Lost a race with a concurrent checkout since validation
                    kind = (ErrorKind.INSUFFICIENT_STOCK if outcome is ReserveOutcome.INSUFFICIENT_STOCK
                            else ErrorKind.UNKNOWN_PRODUCT)
                    return self._roll_back_order(
                        attempt, order, reserved, kind,
                        f"Insufficient stock for product: {line.product_id}",
                        product_id=line.product_id
                    )
                reserved.append(line.product_id)
        except StorefrontException as e:
            logger.error("[checkout=%s] stock reservation failed: %s", attempt, e)
            # The failed call may have taken the stock before its reply was lost
            return self._roll_back_order(
                attempt, order, reserved + [line.product_id],
                ErrorKind.STORE_UNAVAILABLE, "Stock could not be reserved"
            )
        self._log_state(attempt, CheckoutState.STOCK_RESERVED)

        try:
            self.carts.clear_cart(owner, lock_token)
        except StorefrontException as e:
            logger.error("[checkout=%s] cart could not be cleared: %s", attempt, e)
            return self._roll_back_order(attempt, order, reserved, ErrorKind.STORE_UNAVAILABLE, "Cart could not be cleared")
        self._log_state(attempt, CheckoutState.CART_CLEARED)

        self._remember_attempt(attempt, order.order_id)
        self._log_state(attempt, CheckoutState.COMMITTED)
        logger.info("[checkout=%s] order %s placed, total=%s", attempt, order.order_number, order.total)
        return CheckoutResult.success(order)

    def _remember_attempt(self, attempt: str, value: str) -> None:
        try:
            self.redis.set(self._get_attempt_key(attempt), value, ex=Config.IDEMPOTENCY_TTL_SECONDS)
        except RedisConnectionError as e:
            # Without the marker a replay re-runs checkout; the gateway's idempotency key still prevents a second charge
            logger.error("[checkout=%s] could not record attempt outcome: %s", attempt, e)

    def _refund_unpersisted_charge(self, attempt: str, charge_id: str) -> List[StepFailure]:
        logger.info("[checkout=%s] COMPENSATE charge %s", attempt, charge_id)
        try:
            self.payment_gateway.refund(charge_id, idempotency_key=f"refund-{attempt}")
        except PaymentFailed as e:
            logger.error("[checkout=%s] COMPENSATION FAILED at refund: %s", attempt, e.reason)
            return [StepFailure(step="refund", detail=e.reason)]
        return []

    def _roll_back_order(
        self,
        attempt: str,
        order: Order,
        reserved: List[str],
        kind: ErrorKind,
        message: str,
        product_id: Optional[str] = None
    ) -> CheckoutResult:
        """Refund, release the reservations taken so far, and cancel the order"""
        logger.info("[checkout=%s] FAILED after charge: %s", attempt, message)
        compensation = CompensationRecord(
            target_status=OrderStatus.CANCELLED,
            reason=message,
            products_to_release=list(reserved)
        )
        order, failures = self._compensate(order, compensation, Requester(user_id=order.owner))
        return self._rolled_back(attempt, order, failures, kind, message, product_id)

    def _rolled_back(
        self,
        attempt: str,
        order: Optional[Order],
        failures: List[StepFailure],
        kind: ErrorKind,
        message: str,
        product_id: Optional[str] = None
    ) -> CheckoutResult:
        self._remember_attempt(attempt, ATTEMPT_ROLLED_BACK)
        disposition = Disposition.PARTIALLY_UNDONE if failures else Disposition.ROLLED_BACK
        logger.info("[checkout=%s] END (%s)", attempt, disposition.value)
        return CheckoutResult.failure(
            kind,
            message,
            order=order,
            disposition=disposition,
            product_id=product_id,
            failures=tuple(failures)
        )

    # Compensation

    def _compensate(
        self,
        order: Order,
        compensation: CompensationRecord,
        requester: Requester
    ) -> Tuple[Order, List[StepFailure]]:
        """
        Apply the pending parts of a compensation: refund, stock release,
        status change. Every part is attempted; failed parts are returned
        and stay pending on the order's compensation record.
        """
        compensation = compensation.model_copy(deep=True)
        failures: List[StepFailure] = []
        refund_ids: List[str] = []
        tag = f"[order={order.order_number}]"

        if not compensation.refund_done:
            compensation.refund_attempts += 1
            logger.info("%s COMPENSATE refund (attempt %d)", tag, compensation.refund_attempts)
            try:
                # Each attempt is a new refund request to the gateway
                refund = self.payment_gateway.refund(
                    order.charge_id,
                    amount=compensation.refund_amount,
                    idempotency_key=f"refund-{order.order_id}-{compensation.refund_attempts}"
                )
                compensation.refund_done = True
                refund_ids.append(refund.refund_id)
            except PaymentFailed as e:
                if e.code == ALREADY_REFUNDED:
                    # An earlier attempt went through but its reply was lost
                    logger.warning("%s charge %s already refunded", tag, order.charge_id)
                    compensation.refund_done = True
                else:
                    logger.error("%s COMPENSATION FAILED at refund: %s", tag, e.reason)
                    failures.append(StepFailure(step="refund", detail=e.reason))

        for line in compensation.pending_releases(order.lines):
            logger.info("%s COMPENSATE stock release %s", tag, line.product_id)
            try:
                self.inventory.release(line.product_id, line.quantity, order.order_id)
                compensation.released_products.append(line.product_id)
            except UnmatchedReleaseError:
                # Nothing is held for this order any more: an earlier attempt already released it
                logger.warning("%s stock of %s already released", tag, line.product_id)
                compensation.released_products.append(line.product_id)
            except StorefrontException as e:
                logger.error("%s COMPENSATION FAILED at stock release %s: %s", tag, line.product_id, e)
                failures.append(StepFailure(step="stock_release", detail=str(e), product_id=line.product_id))

        compensation.failures = [
            f"{f.step}:{f.product_id}: {f.detail}" if f.product_id else f"{f.step}: {f.detail}"
            for f in failures
        ]

        logger.info("%s COMPENSATE status %s", tag, compensation.target_status.value)
        final = compensation.model_copy(update={"status_done": True})
        try:
            result = self.orders.transition_status(
                order.order_id,
                requester,
                compensation.target_status.value,
                compensation=final,
                refund_ids=refund_ids
            )
        except RedisConnectionError as e:
            logger.error("%s COMPENSATION FAILED at status: %s", tag, e)
            failures.append(StepFailure(step="status", detail=str(e)))
            return order.model_copy(update={"compensation": compensation}), failures

        if not result.ok:
            logger.error("%s COMPENSATION FAILED at status: %s", tag, result.outcome.value)
            failures.append(StepFailure(step="status", detail=result.outcome.value))
            compensation.failures.append(f"status: {result.outcome.value}")
            self._save_compensation_quietly(order, compensation)
            return (result.order or order).model_copy(update={"compensation": compensation}), failures

        return result.order, failures

    def _save_compensation_quietly(self, order: Order, compensation: CompensationRecord) -> None:
        try:
            self.orders.save_compensation(order.order_id, compensation)
        except RedisConnectionError as e:
            logger.error("[order=%s] could not record compensation progress: %s", order.order_number, e)

    def _run_compensation(self, order: Order, compensation: CompensationRecord, requester: Requester) -> CheckoutResult:
        # Mark the order before any side effect so an interrupted run is visible and resumable
        try:
            marked = self.orders.save_compensation(order.order_id, compensation)
        except RedisConnectionError as e:
            logger.error("[order=%s] compensation not started: %s", order.order_number, e)
            return CheckoutResult.failure(ErrorKind.STORE_UNAVAILABLE, "Order could not be updated", order=order)

        order, failures = self._compensate(marked or order, compensation, requester)
        if failures:
            return CheckoutResult.failure(
                ErrorKind.COMPENSATION_PARTIAL_FAILURE,
                "Some compensation steps failed: " + ", ".join(f.step for f in failures),
                order=order,
                disposition=Disposition.PARTIALLY_UNDONE,
                failures=tuple(failures)
            )
        return CheckoutResult.success(order)

    def _load_for_requester(self, order_id: str, requester: Requester) -> Tuple[Optional[Order], Optional[CheckoutResult]]:
        order = self.orders.get(order_id)
        if order is None:
            return None, CheckoutResult.failure(ErrorKind.NOT_FOUND, "Order not found")
        if not can_access(order, requester):
            return None, CheckoutResult.failure(ErrorKind.FORBIDDEN, "Unauthorized access to order")
        return order, None

    def cancel_order(self, order_id: str, requester: Requester) -> CheckoutResult:
        """
        Cancel a processing or shipped order: refund the charge, release the
        stock of every line, and mark the order cancelled.

        Calling again on an order whose compensation is incomplete retries
        only the steps that have not succeeded.

        Returns:
            CheckoutResult with the cancelled order, or NOT_FOUND, FORBIDDEN,
            INVALID_TRANSITION or COMPENSATION_PARTIAL_FAILURE
        """
        order, error = self._load_for_requester(order_id, requester)
        if error:
            return error

        if order.compensation_pending:
            logger.info("[order=%s] resuming %s compensation", order.order_number, order.compensation.target_status.value)
            return self._run_compensation(order, order.compensation, requester)

        if order.status not in (OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            return CheckoutResult.failure(
                ErrorKind.INVALID_TRANSITION,
                f"Cannot cancel an order that is {order.status.value}",
                order=order
            )

        compensation = CompensationRecord(
            target_status=OrderStatus.CANCELLED,
            reason="cancelled",
            products_to_release=[line.product_id for line in order.lines]
        )
        return self._run_compensation(order, compensation, requester)

    def refund_order(
        self,
        order_id: str,
        requester: Requester,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None
    ) -> CheckoutResult:
        """
        Refund an undelivered order, fully or partially, and mark it refunded.
        Stock goes back only while the order has not shipped.
        Administrators only.
        """
        order, error = self._load_for_requester(order_id, requester)
        if error:
            return error
        if not requester.is_administrator:
            return CheckoutResult.failure(ErrorKind.FORBIDDEN, "Refunds require an administrator")

        if order.compensation_pending:
            return self._run_compensation(order, order.compensation, requester)

        if order.status not in (OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            return CheckoutResult.failure(
                ErrorKind.INVALID_TRANSITION,
                f"Cannot refund an order that is {order.status.value}",
                order=order
            )
        if amount is not None and (amount <= 0 or amount > order.total):
            raise ValidationError(f"Refund amount must be between 0 and {order.total}")

        products = [line.product_id for line in order.lines] if order.status == OrderStatus.PROCESSING else []
        compensation = CompensationRecord(
            target_status=OrderStatus.REFUNDED,
            refund_amount=amount,
            reason=reason or "requested_by_customer",
            products_to_release=products
        )
        return self._run_compensation(order, compensation, requester)

    # Gateway notifications

    def reconcile_refund(
        self,
        charge_id: str,
        refund_ids: Sequence[str],
        fully_refunded: bool
    ) -> Optional[CheckoutResult]:
        """
        Bring an order in line with a refund reported by the gateway, including
        refunds issued outside this service.

        Refund ids are recorded on the order. A full refund of an undelivered
        order completes it as refunded without requesting another refund;
        stock goes back while the order has not shipped.

        Returns:
            None when no order was paid by `charge_id`
        """
        order = self.orders.find_by_charge(charge_id)
        if order is None:
            logger.info("No order for refunded charge %s", charge_id)
            return None

        order = self.orders.record_refunds(order.order_id, refund_ids) or order
        if not fully_refunded:
            return CheckoutResult.success(order)

        if order.compensation_pending:
            if order.compensation.refund_done:
                return CheckoutResult.success(order)
            compensation = order.compensation.model_copy(update={"refund_done": True})
            return self._run_compensation(order, compensation, GATEWAY)

        if order.status not in (OrderStatus.PROCESSING, OrderStatus.SHIPPED):
            return CheckoutResult.success(order)

        logger.info("[order=%s] refunded at the gateway", order.order_number)
        products = [line.product_id for line in order.lines] if order.status == OrderStatus.PROCESSING else []
        compensation = CompensationRecord(
            target_status=OrderStatus.REFUNDED,
            reason="refunded_at_gateway",
            products_to_release=products,
            refund_done=True
        )
        return self._run_compensation(order, compensation, GATEWAY)

    def reconcile_payment_failure(self, charge_id: str) -> Optional[CheckoutResult]:
        """
        Cancel a processing order whose payment the gateway reports as failed.
        Nothing is refunded; its stock is released.

        Returns:
            None when no order was paid by `charge_id`
        """
        order = self.orders.find_by_charge(charge_id)
        if order is None:
            logger.info("Payment %s failed with no order attached", charge_id)
            return None

        if order.compensation_pending or order.status is not OrderStatus.PROCESSING:
            return CheckoutResult.success(order)

        logger.info("[order=%s] payment failed at the gateway", order.order_number)
        compensation = CompensationRecord(
            target_status=OrderStatus.CANCELLED,
            reason="payment_failed",
            products_to_release=[line.product_id for line in order.lines],
            refund_done=True
        )
        return self._run_compensation(order, compensation, GATEWAY)

    # Queries and plain transitions

    def get_order(self, order_id: str, requester: Requester) -> CheckoutResult:
        """Returns the order, or NOT_FOUND / FORBIDDEN"""
        order, error = self._load_for_requester(order_id, requester)
        return error or CheckoutResult.success(order)

    def list_orders(self, requester: Requester, page: int = 1, limit: int = 10) -> OrderListResponse:
        return self.orders.list_orders(requester.user_id, page, limit)

    def update_status(self, order_id: str, requester: Requester, new_status: str) -> CheckoutResult:
        """
        Move an order along processing -> shipped -> delivered. Cancellation
        and refund requests are routed through their compensation flows.
        """
        if new_status == OrderStatus.CANCELLED.value:
            return self.cancel_order(order_id, requester)
        if new_status == OrderStatus.REFUNDED.value:
            return self.refund_order(order_id, requester)

        result: TransitionResult = self.orders.transition_status(order_id, requester, new_status)
        if result.ok:
            return CheckoutResult.success(result.order)

        kind, message = _TRANSITION_ERRORS[result.outcome]
        # Do not leak another owner's order
        order = result.order if result.outcome is TransitionOutcome.INVALID_TRANSITION else None
        return CheckoutResult.failure(kind, message, order=order)
