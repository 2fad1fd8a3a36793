"""
Configuration management for the storefront order service.
Loads settings from environment variables and AWS Secrets Manager.
"""
import os
import json
import logging
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from typing import Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Application configuration"""

    # Application settings
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "storefront")
    REGION: str = os.getenv("REGION", "ap-southeast-2")

    # Redis settings
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_AUTH_TOKEN: Optional[str] = os.getenv("REDIS_AUTH_TOKEN")
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_SSL: bool = _env_bool("REDIS_SSL", "true")

    # Cart settings
    CART_TTL_SECONDS: int = int(os.getenv("CART_TTL_SECONDS", str(7 * 24 * 60 * 60)))  # 7 days default
    GUEST_CART_TTL_SECONDS: int = int(os.getenv("GUEST_CART_TTL_SECONDS", str(1 * 24 * 60 * 60)))  # 1 day for guests
    MAX_ITEMS_PER_CART: int = int(os.getenv("MAX_ITEMS_PER_CART", "200"))
    MAX_QUANTITY_PER_ITEM: int = int(os.getenv("MAX_QUANTITY_PER_ITEM", "100"))

    # Checkout settings
    CHECKOUT_LOCK_SECONDS: int = int(os.getenv("CHECKOUT_LOCK_SECONDS", "60"))
    IDEMPOTENCY_TTL_SECONDS: int = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", str(24 * 60 * 60)))
    CURRENCY: str = os.getenv("CURRENCY", "usd")

    # Inventory settings
    LOW_STOCK_THRESHOLD: int = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))

    # Payment settings
    STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET")

    # Redis connection settings
    REDIS_SOCKET_CONNECT_TIMEOUT: int = 5
    REDIS_SOCKET_TIMEOUT: int = 5
    REDIS_RETRY_ON_TIMEOUT: bool = True
    REDIS_MAX_CONNECTIONS: int = 50

    @classmethod
    def _get_secret(cls, secret_name: str) -> dict:
        client = boto3.client("secretsmanager", region_name=cls.REGION)
        response = client.get_secret_value(SecretId=secret_name)
        return json.loads(response["SecretString"])

    @classmethod
    def load_redis_secrets(cls) -> None:
        """Load Redis authentication token from AWS Secrets Manager"""
        if cls.REDIS_AUTH_TOKEN:
            return  # Already loaded from environment

        secret_name = os.getenv("REDIS_SECRET_NAME")
        if not secret_name:
            return  # No secret name provided, use no auth

        try:
            secret_data = cls._get_secret(secret_name)
            cls.REDIS_AUTH_TOKEN = secret_data.get("auth_token")
            if "endpoint" in secret_data:
                cls.REDIS_HOST = secret_data["endpoint"]
        except (BotoCoreError, ClientError, ValueError) as e:
            # Continue without auth token (may fail on connection)
            logger.warning("Could not load Redis secrets from Secrets Manager: %s", e)

    @classmethod
    def load_stripe_secrets(cls) -> None:
        """Load the Stripe API key and webhook signing secret from AWS Secrets Manager"""
        if cls.STRIPE_SECRET_KEY and cls.STRIPE_WEBHOOK_SECRET:
            return

        secret_name = os.getenv("STRIPE_SECRET_NAME")
        if not secret_name:
            return

        try:
            secret_data = cls._get_secret(secret_name)
            cls.STRIPE_SECRET_KEY = cls.STRIPE_SECRET_KEY or secret_data.get("secret_key")
            cls.STRIPE_WEBHOOK_SECRET = cls.STRIPE_WEBHOOK_SECRET or secret_data.get("webhook_secret")
        except (BotoCoreError, ClientError, ValueError) as e:
            # Checkout will report PaymentFailed until a key is configured
            logger.warning("Could not load Stripe secrets from Secrets Manager: %s", e)


# Load secrets at module import
Config.load_redis_secrets()
Config.load_stripe_secrets()
