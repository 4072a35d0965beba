"""
Redis Connection Management
Shared client factory with a capped linear reconnect policy, connection
test and graceful close
"""

import logging
import time
from typing import Optional

import redis
from redis.backoff import AbstractBackoff
from redis.retry import Retry

from config import (
    REDIS_URL,
    REDIS_CONFIGURED,
    REDIS_MAX_RECONNECT_ATTEMPTS,
    REDIS_RECONNECT_STEP_MS,
    REDIS_RECONNECT_CAP_MS,
)

logger = logging.getLogger(__name__)

ERROR_THROTTLE_SECONDS = 5.0


class LinearCappedBackoff(AbstractBackoff):
    """Wait attempt * step milliseconds, never more than cap"""

    def __init__(self, step_ms: int = REDIS_RECONNECT_STEP_MS, cap_ms: int = REDIS_RECONNECT_CAP_MS):
        self._step = step_ms / 1000.0
        self._cap = cap_ms / 1000.0

    def reset(self):
        pass

    def compute(self, failures: int) -> float:
        return min(failures * self._step, self._cap)


def create_redis_client(url: Optional[str] = None,
                        max_retries: int = REDIS_MAX_RECONNECT_ATTEMPTS,
                        decode_responses: bool = True) -> redis.Redis:
    """Build a Redis client; nothing is sent over the wire until first use"""
    retry = Retry(LinearCappedBackoff(), max_retries)
    return redis.Redis.from_url(
        url or REDIS_URL,
        decode_responses=decode_responses,
        retry=retry,
        retry_on_error=[redis.exceptions.ConnectionError, redis.exceptions.TimeoutError],
        health_check_interval=30,
        socket_connect_timeout=5,
    )


_client: Optional[redis.Redis] = None
_last_error_at = 0.0


def get_redis() -> Optional[redis.Redis]:
    """Process-wide client, or None when Redis is not configured"""
    global _client
    if _client is not None:
        return _client
    if not REDIS_CONFIGURED:
        return None
    _client = create_redis_client()
    return _client


def set_redis(client: Optional[redis.Redis]):
    """Swap the process-wide client (used by worker processes and tests)"""
    global _client
    _client = client


def _log_error(message: str, error: Exception):
    global _last_error_at
    now = time.monotonic()
    if now - _last_error_at < ERROR_THROTTLE_SECONDS:
        return
    _last_error_at = now
    logger.error(f"{message}: {error}")
    if isinstance(error, redis.exceptions.ConnectionError):
        logger.error("Redis server is not running or not accessible. Check REDIS_URL / REDIS_HOST")
    elif isinstance(error, redis.exceptions.TimeoutError):
        logger.error("Redis connection timeout. Check network/firewall")


def test_connection(client: Optional[redis.Redis] = None) -> bool:
    client = client if client is not None else get_redis()
    if client is None:
        return False
    try:
        client.ping()
        logger.info("Redis connection test successful")
        return True
    except redis.exceptions.RedisError as e:
        _log_error("Redis connection test failed", e)
        return False


def close_connection(client: Optional[redis.Redis] = None):
    client = client if client is not None else _client
    if client is None:
        return
    try:
        client.close()
        logger.info("Redis connection closed gracefully")
    except redis.exceptions.RedisError as e:
        logger.error(f"Error closing Redis connection: {e}")
