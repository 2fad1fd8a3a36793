"""
Redis client wrapper with connection pooling, retry logic, and error handling.
"""
import redis
import time
import random
import logging
from typing import Optional, Any, Callable, List, Dict
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    RedisError,
    AuthenticationError
)

from storefront.config import Config
from storefront.exceptions import RedisConnectionError

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client with connection pooling and retry logic"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = client
        # An injected client (tests, shared pools) is used as-is
        self._owns_connection = client is None
        if self._owns_connection:
            self._connect()

    def _connect(self):
        """Initialize Redis connection pool"""
        try:
            # ElastiCache with encryption-in-transit requires rediss://
            scheme = "rediss" if Config.REDIS_SSL else "redis"
            auth = f":{Config.REDIS_AUTH_TOKEN}@" if Config.REDIS_AUTH_TOKEN else ""
            redis_url = f"{scheme}://{auth}{Config.REDIS_HOST}:{Config.REDIS_PORT}/{Config.REDIS_DB}"

            pool_kwargs = dict(
                max_connections=Config.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
                decode_responses=True,
            )
            if Config.REDIS_SSL:
                # ElastiCache uses self-signed certs
                pool_kwargs["ssl_cert_reqs"] = None

            self.pool = redis.ConnectionPool.from_url(redis_url, **pool_kwargs)
            self.client = redis.Redis(connection_pool=self.pool)

            # Test connection
            self.client.ping()

        except (ConnectionError, AuthenticationError) as e:
            raise RedisConnectionError(f"Failed to connect to Redis: {e}")

    def _retry_with_backoff(
        self,
        func: Callable,
        max_retries: int = 3,
        initial_backoff: float = 0.1,
        max_backoff: float = 2.0
    ) -> Any:
        """
        Execute function with exponential backoff retry.

        Args:
            func: Function to execute
            max_retries: Maximum number of retry attempts
            initial_backoff: Initial backoff delay in seconds
            max_backoff: Maximum backoff delay in seconds

        Returns:
            Result of function execution

        Raises:
            RedisConnectionError: If all retries fail
        """
        backoff = initial_backoff

        for attempt in range(max_retries):
            try:
                return func()
            except (ConnectionError, TimeoutError) as e:
                if attempt == max_retries - 1:
                    raise RedisConnectionError(f"Redis operation failed after {max_retries} retries: {e}")

                logger.warning("Redis operation failed (attempt %d/%d): %s", attempt + 1, max_retries, e)

                # Exponential backoff with jitter
                jitter = random.uniform(0, backoff * 0.1)
                time.sleep(backoff + jitter)
                backoff = min(backoff * 2, max_backoff)

                if self._owns_connection:
                    try:
                        self._connect()
                    except RedisConnectionError as reconnect_error:
                        logger.warning("Redis reconnect failed: %s", reconnect_error)

            except RedisError as e:
                # Non-retryable errors
                raise RedisConnectionError(f"Redis error: {e}")

    def get(self, key: str) -> Optional[str]:
        """Get value from Redis"""
        def _get():
            return self.client.get(key)
        return self._retry_with_backoff(_get)

    def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> bool:
        """Set value in Redis with optional TTL; with nx only if the key is absent"""
        def _set():
            return self.client.set(key, value, ex=ex, nx=nx)
        return bool(self._retry_with_backoff(_set))

    def incr(self, key: str) -> int:
        """Increment a counter"""
        def _incr():
            return self.client.incr(key)
        return self._retry_with_backoff(_incr)

    def hget(self, key: str, field: str) -> Optional[str]:
        """Get field from hash"""
        def _hget():
            return self.client.hget(key, field)
        return self._retry_with_backoff(_hget)

    def hset(self, key: str, field: Optional[str] = None, value: Any = None,
             mapping: Optional[Dict[str, Any]] = None) -> int:
        """Set one field, or a mapping of fields, in a hash"""
        def _hset():
            return self.client.hset(key, field, value, mapping=mapping)
        return self._retry_with_backoff(_hset)

    def sadd(self, key: str, *members: str) -> int:
        """Add members to a set"""
        def _sadd():
            return self.client.sadd(key, *members)
        return self._retry_with_backoff(_sadd)

    def smembers(self, key: str) -> set:
        """Get all members of a set"""
        def _smembers():
            return self.client.smembers(key)
        return self._retry_with_backoff(_smembers)

    def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        """Add scored members to a sorted set"""
        def _zadd():
            return self.client.zadd(key, mapping)
        return self._retry_with_backoff(_zadd)

    def zcard(self, key: str) -> int:
        """Get number of members in a sorted set"""
        def _zcard():
            return self.client.zcard(key)
        return self._retry_with_backoff(_zcard)

    def zrevrange(self, key: str, start: int, end: int) -> List[str]:
        """Get a slice of a sorted set, highest score first"""
        def _zrevrange():
            return self.client.zrevrange(key, start, end)
        return self._retry_with_backoff(_zrevrange)

    def eval(self, script: str, num_keys: int, *keys_and_args) -> Any:
        """Execute Lua script"""
        def _eval():
            return self.client.eval(script, num_keys, *keys_and_args)
        return self._retry_with_backoff(_eval)

    def multi_exec(self, build: Callable[[Any], None]) -> list:
        """
        Queue commands on a MULTI/EXEC pipeline and execute them atomically.

        Args:
            build: Callback that queues commands on the pipeline it receives

        Returns:
            List of command results, in queue order
        """
        def _multi_exec():
            pipe = self.client.pipeline(transaction=True)
            build(pipe)
            return pipe.execute()
        return self._retry_with_backoff(_multi_exec)

    def transaction(self, func: Callable[[Any], Any], *watches: str) -> Any:
        """
        Run an optimistic WATCH/MULTI/EXEC transaction, retried on conflict.

        The callable receives the pipeline in immediate mode; it must call
        pipe.multi() before queueing writes. Its return value is returned.
        """
        def _transaction():
            return self.client.transaction(func, *watches, value_from_callable=True)
        return self._retry_with_backoff(_transaction)

    def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return self.client.ping()
        except RedisError:
            return False


# Global Redis client instance
_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """Get or create Redis client instance (singleton)"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
