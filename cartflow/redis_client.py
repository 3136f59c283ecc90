"""
Redis client wrapper with connection pooling, retry logic, and error handling.
"""
import redis
import time
import random
import logging
from typing import Optional, Any, Callable, Dict, List, Sequence
from redis.client import Pipeline
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    RedisError,
    AuthenticationError,
    WatchError
)

from cartflow.config import Config
from cartflow.exceptions import StorageError, ConcurrencyConflictError

logger = logging.getLogger(__name__)


class RedisClient:
    """Redis client with connection pooling and retry logic"""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.pool: Optional[redis.ConnectionPool] = None
        self.client: Optional[redis.Redis] = client
        if client is None:
            self._connect()

    def _connect(self):
        """Initialize Redis connection pool"""
        try:
            self.pool = redis.ConnectionPool.from_url(
                Config.redis_url(),
                max_connections=Config.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=Config.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=Config.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=Config.REDIS_RETRY_ON_TIMEOUT,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            # Test connection
            self.client.ping()

        except (ConnectionError, AuthenticationError) as e:
            raise StorageError(f"Failed to connect to Redis: {e}")

    def key(self, *parts: str) -> str:
        """Build a namespaced key"""
        return Config.KEY_PREFIX + ":".join(str(p) for p in parts)

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
            StorageError: If all retries fail
        """
        backoff = initial_backoff

        for attempt in range(max_retries):
            try:
                return func()
            except (ConnectionError, TimeoutError) as e:
                if attempt == max_retries - 1:
                    raise StorageError(f"Redis operation failed after {max_retries} retries: {e}")

                # Exponential backoff with jitter
                jitter = random.uniform(0, backoff * 0.1)
                time.sleep(backoff + jitter)
                backoff = min(backoff * 2, max_backoff)
                logger.warning(f"Retrying Redis operation (attempt {attempt + 2}/{max_retries}): {e}")

            except RedisError as e:
                # Non-retryable errors
                raise StorageError(f"Redis error: {e}")

    def transaction(self, func: Callable[[Pipeline], Any], *watch_keys: str) -> Any:
        """
        Run ``func`` as an optimistic WATCH/MULTI/EXEC unit on ``watch_keys``.

        ``func`` receives a pipeline already watching the keys. It reads with
        the pipeline in immediate mode, calls ``pipe.multi()`` and queues its
        writes. If a watched key changes before EXEC the whole function is
        re-run against fresh data. Exceptions raised by ``func`` abort the unit
        without writing anything.

        Connection errors while watching and reading are retried with backoff.
        A connection error on EXEC is not: the server may have committed, so
        re-running ``func`` could apply the writes twice.

        Returns:
            Whatever ``func`` returned on the attempt that committed

        Raises:
            ConcurrencyConflictError: If every attempt lost to another writer
            StorageError: If Redis failed, including an EXEC with unknown outcome
        """
        with self.client.pipeline() as pipe:
            def _prepare():
                pipe.reset()
                pipe.watch(*watch_keys)
                return func(pipe)

            for attempt in range(Config.MAX_TRANSACTION_RETRIES):
                result = self._retry_with_backoff(_prepare)
                try:
                    pipe.execute()
                    return result
                except WatchError:
                    logger.info(f"Transaction conflict on {len(watch_keys)} key(s), attempt {attempt + 1}")
                    continue
                except RedisError as e:
                    raise StorageError(f"Redis transaction outcome unknown: {e}")

        raise ConcurrencyConflictError(
            f"Gave up after {Config.MAX_TRANSACTION_RETRIES} conflicting writes"
        )

    def get(self, key: str) -> Optional[str]:
        """Get value from Redis"""
        def _get():
            return self.client.get(key)
        return self._retry_with_backoff(_get)

    def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Get several values in one round trip"""
        if not keys:
            return []

        def _mget():
            return self.client.mget(keys)
        return self._retry_with_backoff(_mget)

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        """Set value in Redis with optional TTL"""
        def _set():
            return self.client.set(key, value, ex=ex)
        return self._retry_with_backoff(_set)

    def delete(self, *keys: str) -> int:
        """Delete one or more keys"""
        def _delete():
            return self.client.delete(*keys)
        return self._retry_with_backoff(_delete)

    def exists(self, *keys: str) -> int:
        """Check if keys exist"""
        def _exists():
            return self.client.exists(*keys)
        return self._retry_with_backoff(_exists)

    def hgetall(self, key: str) -> Dict[str, str]:
        """Get all fields from hash"""
        def _hgetall():
            return self.client.hgetall(key)
        return self._retry_with_backoff(_hgetall)

    def zrevrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        """Members of a sorted set, highest score first"""
        def _zrevrange():
            return self.client.zrevrange(key, start, end)
        return self._retry_with_backoff(_zrevrange)

    def ping(self) -> bool:
        """Test Redis connection"""
        try:
            return bool(self.client.ping())
        except RedisError:
            return False

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.disconnect()


# Global Redis client instance
_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """Get or create Redis client instance (singleton)"""
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
