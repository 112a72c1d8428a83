"""
Redis L1 cache for normalized thread content.

Sits in front of the thread_content_cache table. Keys embed the thread's
content_version, so a new message makes the old entry unreachable and it
simply expires. Falls back to DB-only when Redis is disabled or unavailable.
"""
import logging
from typing import Optional

import redis

from ..config import settings

logger = logging.getLogger(__name__)

_redis_client = None
_redis_unavailable = False  # Track if Redis connection failed


def get_redis_client():
    """
    Get or create Redis client.
    Returns None if the content cache is disabled or Redis is unavailable.
    """
    global _redis_client, _redis_unavailable

    if not settings.redis_content_cache or _redis_unavailable:
        return None

    if _redis_client is not None:
        return _redis_client

    try:
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        client.ping()
        logger.debug("Redis content cache connected")
        _redis_client = client
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis unavailable: {e}. Using DB-only content cache.")
        _redis_unavailable = True
        return None


def reset_redis_client() -> None:
    """Forget the client and the unavailable flag (tests, config reload)."""
    global _redis_client, _redis_unavailable
    _redis_client = None
    _redis_unavailable = False


def content_cache_key(user_id: int, thread_id: str, content_version: str) -> str:
    return f"thread_content:{user_id}:{thread_id}:{content_version}"


def get_cached_thread_content(user_id: int, thread_id: str, content_version: Optional[str]) -> Optional[str]:
    """Cached normalized text for this exact content version, or None on miss/error."""
    if not content_version:
        return None
    client = get_redis_client()
    if not client:
        return None
    try:
        return client.get(content_cache_key(user_id, thread_id, content_version))
    except redis.RedisError as e:
        logger.debug(f"Redis get error: {e}")
        return None


def set_cached_thread_content(
    user_id: int,
    thread_id: str,
    content_version: Optional[str],
    content_text: str,
    ttl_hours: Optional[int] = None,
) -> bool:
    if not content_version:
        return False
    client = get_redis_client()
    if not client:
        return False
    ttl = settings.content_cache_ttl_hours if ttl_hours is None else ttl_hours
    try:
        client.setex(content_cache_key(user_id, thread_id, content_version), max(1, ttl) * 3600, content_text)
        return True
    except redis.RedisError as e:
        logger.debug(f"Redis set error: {e}")
        return False


def get_cache_stats() -> dict:
    client = get_redis_client()
    if not client:
        return {"status": "unavailable"}
    try:
        info = client.info("memory")
        return {
            "status": "connected",
            "keys": client.dbsize(),
            "used_memory_human": info.get("used_memory_human", "unknown"),
        }
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}
