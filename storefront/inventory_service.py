"""
Inventory ledger: per-product available stock with atomic reserve/release.
"""
import logging
from typing import List, Optional

from storefront.redis_client import RedisClient, get_redis_client
from storefront.config import Config
from storefront.models import InventoryRecord
from storefront.results import ReserveOutcome
from storefront.exceptions import ValidationError, UnmatchedReleaseError
from storefront.atomic_scripts import (
    AtomicScripts,
    INSUFFICIENT_STOCK,
    UNKNOWN_PRODUCT,
    DUPLICATE_RESERVATION,
    UNMATCHED_RELEASE,
)

logger = logging.getLogger(__name__)

PRODUCTS_KEY = "inventory:products"


class InventoryService:
    """Service for stock levels and reservations"""

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()
        self.scripts = AtomicScripts(self.redis)

    def _get_record_key(self, product_id: str) -> str:
        return f"inventory:{product_id}"

    def _get_reservations_key(self, product_id: str) -> str:
        return f"inventory:{product_id}:reservations"

    def stock(self, product_id: str, available: int) -> InventoryRecord:
        """Create or restock a product's inventory record"""
        if available < 0:
            raise ValidationError("Available stock cannot be negative")

        self.redis.hset(self._get_record_key(product_id), "available", available)
        self.redis.sadd(PRODUCTS_KEY, product_id)
        logger.info("Stocked product %s: available=%d", product_id, available)
        return self.get(product_id)

    def get(self, product_id: str) -> Optional[InventoryRecord]:
        """Read a product's inventory record"""
        def build(pipe):
            pipe.hget(self._get_record_key(product_id), "available")
            pipe.hvals(self._get_reservations_key(product_id))

        available, reservations = self.redis.multi_exec(build)
        if available is None:
            return None

        return InventoryRecord(
            product_id=product_id,
            available=int(available),
            reserved=sum(int(quantity) for quantity in reservations)
        )

    def reserve(self, product_id: str, quantity: int, reservation_id: str) -> ReserveOutcome:
        """
        Atomically take `quantity` units if that many are available.

        The reservation is recorded under `reservation_id` so it can be
        released exactly once. Reserving again under the same id is a no-op
        reported as OK.

        Returns:
            ReserveOutcome.OK, INSUFFICIENT_STOCK or UNKNOWN_PRODUCT
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        result = self.scripts.reserve_stock(
            record_key=self._get_record_key(product_id),
            reservations_key=self._get_reservations_key(product_id),
            quantity=quantity,
            reservation_id=reservation_id
        )

        if result == INSUFFICIENT_STOCK:
            logger.info("Reservation %s refused for %s: insufficient stock for %d", reservation_id, product_id, quantity)
            return ReserveOutcome.INSUFFICIENT_STOCK
        if result == UNKNOWN_PRODUCT:
            logger.info("Reservation %s refused: no inventory record for %s", reservation_id, product_id)
            return ReserveOutcome.UNKNOWN_PRODUCT
        if result == DUPLICATE_RESERVATION:
            # A retried call whose first reply was lost; the stock is already held
            logger.warning("Reservation %s already holds stock of %s", reservation_id, product_id)
            return ReserveOutcome.OK

        logger.info("Reserved %d of %s for %s (available=%d)", quantity, product_id, reservation_id, result)
        return ReserveOutcome.OK

    def release(self, product_id: str, quantity: int, reservation_id: str) -> int:
        """
        Give back a reservation taken by `reserve`.

        Returns:
            Available stock after the release

        Raises:
            UnmatchedReleaseError: If no reservation of that quantity is held
                under `reservation_id` (never taken, or already released)
        """
        result = self.scripts.release_stock(
            record_key=self._get_record_key(product_id),
            reservations_key=self._get_reservations_key(product_id),
            quantity=quantity,
            reservation_id=reservation_id
        )

        if result == UNMATCHED_RELEASE:
            raise UnmatchedReleaseError(product_id, reservation_id, quantity)

        logger.info("Released %d of %s for %s (available=%d)", quantity, product_id, reservation_id, result)
        return result

    def low_stock(self, threshold: Optional[int] = None) -> List[InventoryRecord]:
        """List products at or below the threshold, lowest stock first"""
        if threshold is None:
            threshold = Config.LOW_STOCK_THRESHOLD

        product_ids = sorted(self.redis.smembers(PRODUCTS_KEY))
        if not product_ids:
            return []

        def build(pipe):
            for product_id in product_ids:
                pipe.hget(self._get_record_key(product_id), "available")

        levels = self.redis.multi_exec(build)

        records = [
            InventoryRecord(product_id=product_id, available=int(available))
            for product_id, available in zip(product_ids, levels)
            if available is not None and int(available) <= threshold
        ]
        return sorted(records, key=lambda record: record.available)
