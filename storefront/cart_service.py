"""
Cart service for managing shopping cart operations with Redis.
"""
import logging
import hashlib
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from storefront.redis_client import RedisClient, get_redis_client
from storefront.config import Config
from storefront.models import Cart, CartLine
from storefront.catalog_service import CatalogService
from storefront.exceptions import (
    ValidationError,
    LimitExceededError,
    ProductNotFoundError,
    CheckoutInProgressError
)
from storefront.atomic_scripts import AtomicScripts

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CartService:
    """Service for cart operations"""

    def __init__(self, redis: Optional[RedisClient] = None, catalog: Optional[CatalogService] = None):
        self.redis = redis or get_redis_client()
        self.catalog = catalog or CatalogService(self.redis)
        self.scripts = AtomicScripts(self.redis)

    def _get_cart_key(self, owner: str, is_guest: bool = False) -> str:
        """Generate Redis key for cart; guest and user carts never share a key"""
        namespace = "guest" if is_guest else "user"
        return f"cart:{namespace}:{owner}"

    def _get_cart_keys(self, owner: str, is_guest: bool = False) -> List[str]:
        """Keys touched by cart scripts: lines hash, line order, timestamp, checkout lock"""
        cart_key = self._get_cart_key(owner, is_guest)
        return [cart_key, f"{cart_key}:lines", f"{cart_key}:updated_at", f"{cart_key}:checkout"]

    def _get_lock_key(self, owner: str) -> str:
        """Only user carts are checked out"""
        return f"{self._get_cart_key(owner)}:checkout"

    def _hash_owner(self, owner: str) -> str:
        """Hash owner for logging (no PII)"""
        return hashlib.sha256(owner.encode()).hexdigest()[:8]

    def _get_ttl(self, is_guest: bool = False) -> int:
        """Get TTL for cart based on type"""
        if is_guest:
            return Config.GUEST_CART_TTL_SECONDS
        return Config.CART_TTL_SECONDS

    def _raise_for_script_error(self, owner: str, product_id: Optional[str], result: List[str]) -> None:
        """Translate a refused script reply into the matching exception"""
        if result[0] == "OK":
            return

        error = result[1]
        if error == "CHECKOUT_IN_PROGRESS":
            raise CheckoutInProgressError(owner)
        elif error == "PRODUCT_NOT_FOUND":
            raise ProductNotFoundError(product_id)
        elif error == "MAX_QUANTITY_EXCEEDED":
            raise LimitExceededError(
                f"Quantity {result[2]} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )
        elif error == "MAX_ITEMS_EXCEEDED":
            raise LimitExceededError(
                f"Cart exceeds maximum items {Config.MAX_ITEMS_PER_CART}"
            )
        else:
            raise ValidationError(f"Redis script error: {error}")

    def add_item(
        self,
        owner: str,
        product_id: str,
        quantity: int,
        is_guest: bool = False
    ) -> Dict:
        """
        Add a line, or add to an existing line, using an atomic script.

        Re-adding a product sums the quantities into its existing line.

        Returns:
            Dict with the resulting line quantity and whether the line is new
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        result = self.scripts.add_item(
            cart_keys=self._get_cart_keys(owner, is_guest),
            product_id=product_id,
            quantity=quantity,
            max_items=Config.MAX_ITEMS_PER_CART,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=self._get_ttl(is_guest),
            now=_now()
        )
        self._raise_for_script_error(owner, product_id, result)

        logger.info(
            "Cart line added",
            extra={"hashed_owner": self._hash_owner(owner), "product_id": product_id, "quantity": int(result[1])}
        )
        return {"quantity": int(result[1]), "is_new": result[2] == "1"}

    def update_quantity(
        self,
        owner: str,
        product_id: str,
        quantity: int,
        is_guest: bool = False
    ) -> Dict:
        """
        Set a line's quantity using an atomic script. Zero removes the line.

        Returns:
            Dict with the new quantity and whether the line was removed
        """
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative")

        if quantity > Config.MAX_QUANTITY_PER_ITEM:
            raise LimitExceededError(
                f"Quantity {quantity} exceeds maximum {Config.MAX_QUANTITY_PER_ITEM}"
            )

        result = self.scripts.update_quantity(
            cart_keys=self._get_cart_keys(owner, is_guest),
            product_id=product_id,
            quantity=quantity,
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            ttl=self._get_ttl(is_guest),
            now=_now()
        )
        self._raise_for_script_error(owner, product_id, result)

        return {"quantity": int(result[1]), "removed": result[2] == "1"}

    def remove_item(self, owner: str, product_id: str, is_guest: bool = False) -> bool:
        """Remove a line from the cart"""
        result = self.scripts.remove_item(
            cart_keys=self._get_cart_keys(owner, is_guest),
            product_id=product_id,
            ttl=self._get_ttl(is_guest),
            now=_now()
        )
        if result[0] != "OK" and result[1] == "PRODUCT_NOT_FOUND":
            return False
        self._raise_for_script_error(owner, product_id, result)
        return True

    def _read_cart(self, owner: str, is_guest: bool = False) -> Tuple[List[str], Dict[str, str], Optional[str]]:
        """Read line order, quantities and timestamp in one MULTI/EXEC"""
        cart_key, lines_key, updated_key, _ = self._get_cart_keys(owner, is_guest)

        def build(pipe):
            pipe.lrange(lines_key, 0, -1)
            pipe.hgetall(cart_key)
            pipe.get(updated_key)

        order, quantities, updated_at = self.redis.multi_exec(build)
        return order, quantities, updated_at

    def get_or_create(self, owner: str, is_guest: bool = False) -> Cart:
        """
        Get the owner's cart.

        A cart comes into existence with its first line; until then an empty
        cart is returned.
        """
        order, quantities, updated_at = self._read_cart(owner, is_guest)

        lines: List[CartLine] = []
        seen = set()
        for product_id in order:
            if product_id in quantities and product_id not in seen:
                lines.append(CartLine(product_id=product_id, quantity=int(quantities[product_id])))
                seen.add(product_id)
        # Lines missing from the order list go last, in a stable order
        for product_id in sorted(set(quantities) - seen):
            lines.append(CartLine(product_id=product_id, quantity=int(quantities[product_id])))

        return Cart(
            owner=owner,
            lines=lines,
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None
        )

    def snapshot_for_checkout(self, owner: str, is_guest: bool = False) -> Tuple[CartLine, ...]:
        """Read-consistent, ordered view of the cart's lines"""
        return tuple(self.get_or_create(owner, is_guest).lines)

    def total(self, owner: str, is_guest: bool = False) -> Decimal:
        """Value of the cart at current catalog prices"""
        total = Decimal("0")
        for line in self.snapshot_for_checkout(owner, is_guest):
            price = self.catalog.get_price(line.product_id)
            if price is not None:
                total += price * line.quantity
        return total.quantize(Decimal("0.01"))

    def clear_cart(self, owner: str, lock_token: str = "", is_guest: bool = False) -> int:
        """
        Empty the cart without deleting it.

        A cart locked by a checkout can only be cleared with that checkout's
        lock token.

        Returns:
            Number of lines removed
        """
        result = self.scripts.clear_cart(
            cart_keys=self._get_cart_keys(owner, is_guest),
            lock_token=lock_token,
            ttl=self._get_ttl(is_guest),
            now=_now()
        )
        self._raise_for_script_error(owner, None, result)
        return int(result[1])

    def lock_for_checkout(self, owner: str, lock_token: str) -> bool:
        """Freeze the cart for one checkout; False if another checkout holds it"""
        return self.redis.set(
            self._get_lock_key(owner),
            lock_token,
            ex=Config.CHECKOUT_LOCK_SECONDS,
            nx=True
        )

    def unlock_checkout(self, owner: str, lock_token: str) -> bool:
        """Release the checkout lock if `lock_token` still holds it"""
        return self.scripts.release_lock(self._get_lock_key(owner), lock_token)

    def merge_carts(self, guest_cart_id: str, user_id: str) -> Dict:
        """
        Merge a guest cart into a user cart using atomic script.

        Shared lines are summed and capped at the per-line maximum; lines that
        would exceed the per-cart maximum are dropped.

        Args:
            guest_cart_id: Guest cart to merge from; it is deleted afterwards
            user_id: Logged-in user whose cart receives the lines

        Returns:
            Dict with merge counts
        """
        result = self.scripts.merge_cart(
            source_keys=self._get_cart_keys(guest_cart_id, is_guest=True),
            target_keys=self._get_cart_keys(user_id),
            max_quantity=Config.MAX_QUANTITY_PER_ITEM,
            max_items=Config.MAX_ITEMS_PER_CART,
            ttl=self._get_ttl(is_guest=False),  # Target is always user cart
            now=_now()
        )
        self._raise_for_script_error(user_id, None, result)

        logger.info(
            "Guest cart merged",
            extra={"hashed_owner": self._hash_owner(user_id), "merged": int(result[1])}
        )
        return {
            "merged": int(result[1]),
            "conflicts": int(result[2]),
            "dropped": int(result[3])
        }
