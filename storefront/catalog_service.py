"""
Read side of the product catalog: the live unit price used at checkout.
"""
from decimal import Decimal, InvalidOperation
from typing import Optional

from storefront.redis_client import RedisClient, get_redis_client
from storefront.config import Config
from storefront.exceptions import ValidationError


class CatalogService:
    """Service for product prices"""

    def __init__(self, redis: Optional[RedisClient] = None):
        self.redis = redis or get_redis_client()

    def _get_product_key(self, product_id: str) -> str:
        return f"product:{product_id}"

    def set_product(self, product_id: str, name: str, price: Decimal, currency: Optional[str] = None) -> None:
        """Create or reprice a product"""
        if price < 0:
            raise ValidationError("Price cannot be negative")

        self.redis.hset(
            self._get_product_key(product_id),
            mapping={
                "name": name,
                "price": str(price),
                "currency": currency or Config.CURRENCY,
            }
        )

    def get_price(self, product_id: str) -> Optional[Decimal]:
        """Current unit price, or None for an unknown product"""
        price = self.redis.hget(self._get_product_key(product_id), "price")
        if price is None:
            return None
        try:
            return Decimal(price)
        except InvalidOperation:
            raise ValidationError(f"Stored price for {product_id} is not a number: {price!r}")
