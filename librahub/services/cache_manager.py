"""
Cache for external lookups.
Uses Redis when REDIS_URL is configured and reachable, otherwise an in-memory TTL cache.
"""

import hashlib
import inspect
import json
import logging
import pickle
import threading
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Optional

import redis

from librahub.config import settings

logger = logging.getLogger(__name__)


class CacheManager:
    """Redis-backed cache with an in-memory fallback."""

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_client = None
        self.memory_cache = {}
        self.memory_cache_lock = threading.RLock()
        self.cache_stats = {
            'hits': 0,
            'misses': 0,
            'redis_hits': 0,
            'memory_hits': 0
        }

        self._init_redis(redis_url or settings.redis_url)

    def _init_redis(self, redis_url: Optional[str]):
        if not redis_url:
            logger.debug("REDIS_URL not set, using the in-memory cache only")
            return

        try:
            self.redis_client = redis.from_url(
                redis_url,
                decode_responses=False,  # values are encoded by _serialize_value
                socket_connect_timeout=1,
                socket_timeout=1,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.redis_client.ping()
            logger.info("Redis cache initialized")
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable: {e}. Using the in-memory cache only.")
            self.redis_client = None

    def _make_key(self, key: str) -> str:
        return f"librahub_cache:{key}"

    def _serialize_value(self, value: Any) -> bytes:
        try:
            json_str = json.dumps(value, ensure_ascii=False)
            return b'j:' + json_str.encode('utf-8')
        except (TypeError, ValueError):
            return b'p:' + pickle.dumps(value)

    def _deserialize_value(self, data: bytes) -> Any:
        if data.startswith(b'p:'):
            return pickle.loads(data[2:])
        if data.startswith(b'j:'):
            data = data[2:]
        return json.loads(data.decode('utf-8'))

    def get(self, key: str) -> Optional[Any]:
        cache_key = self._make_key(key)

        if self.redis_client:
            try:
                data = self.redis_client.get(cache_key)
                if data is not None:
                    self.cache_stats['hits'] += 1
                    self.cache_stats['redis_hits'] += 1
                    return self._deserialize_value(data)
            except redis.RedisError as e:
                logger.warning(f"Redis get failed: {e}")

        with self.memory_cache_lock:
            cache_entry = self.memory_cache.get(key)
            if cache_entry:
                value, expires_at = cache_entry
                if datetime.now() < expires_at:
                    self.cache_stats['hits'] += 1
                    self.cache_stats['memory_hits'] += 1
                    return value
                del self.memory_cache[key]

        self.cache_stats['misses'] += 1
        return None

    def set(self, key: str, value: Any, ttl_seconds: int = 300) -> bool:
        """Store a value. Returns True when Redis accepted it as well."""
        cache_key = self._make_key(key)

        redis_success = False
        if self.redis_client:
            try:
                self.redis_client.setex(cache_key, ttl_seconds, self._serialize_value(value))
                redis_success = True
            except redis.RedisError as e:
                logger.warning(f"Redis set failed: {e}")

        with self.memory_cache_lock:
            expires_at = datetime.now() + timedelta(seconds=ttl_seconds)
            self.memory_cache[key] = (value, expires_at)

            # Keep at most 1000 entries; drop the 100 closest to expiry.
            if len(self.memory_cache) > 1000:
                sorted_items = sorted(
                    self.memory_cache.items(),
                    key=lambda x: x[1][1]
                )
                for k, _ in sorted_items[:100]:
                    self.memory_cache.pop(k, None)

        return redis_success

    def delete(self, key: str) -> bool:
        cache_key = self._make_key(key)

        redis_deleted = False
        if self.redis_client:
            try:
                redis_deleted = bool(self.redis_client.delete(cache_key))
            except redis.RedisError as e:
                logger.warning(f"Redis delete failed: {e}")

        with self.memory_cache_lock:
            memory_deleted = key in self.memory_cache
            self.memory_cache.pop(key, None)

        return redis_deleted or memory_deleted

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key matching a glob pattern (memory cache: prefix match)."""
        count = 0

        if self.redis_client:
            try:
                keys = self.redis_client.keys(self._make_key(pattern))
                if keys:
                    count += self.redis_client.delete(*keys)
            except redis.RedisError as e:
                logger.warning(f"Redis pattern invalidation failed: {e}")

        with self.memory_cache_lock:
            prefix = pattern.replace('*', '')
            keys_to_remove = [key for key in self.memory_cache if key.startswith(prefix)]
            for key in keys_to_remove:
                self.memory_cache.pop(key, None)
                count += 1

        return count

    def clear(self) -> None:
        if self.redis_client:
            try:
                keys = self.redis_client.keys(self._make_key("*"))
                if keys:
                    self.redis_client.delete(*keys)
            except redis.RedisError as e:
                logger.warning(f"Redis clear failed: {e}")

        with self.memory_cache_lock:
            self.memory_cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.cache_stats.copy()
        stats['redis_available'] = self.redis_client is not None
        stats['memory_cache_size'] = len(self.memory_cache)

        if stats['hits'] + stats['misses'] > 0:
            stats['hit_ratio'] = stats['hits'] / (stats['hits'] + stats['misses'])
        else:
            stats['hit_ratio'] = 0.0

        return stats


# Global cache manager instance
cache_manager = CacheManager()


def _cache_key(func, key_prefix: str, args, kwargs) -> str:
    func_name = f"{key_prefix}:{func.__name__}" if key_prefix else func.__name__
    args_str = str(args) + str(sorted(kwargs.items()))
    args_hash = hashlib.md5(args_str.encode('utf-8')).hexdigest()
    return f"{func_name}:{args_hash}"


def cached(ttl_seconds: int = 300, key_prefix: str = "", skip_args: int = 0):
    """Cache a function's result; works for plain and coroutine functions.

    ``skip_args`` leaves leading positional arguments (e.g. ``self``) out of the key.
    Results equal to None are not cached.
    """
    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def wrapper(*args, **kwargs):
                cache_key = _cache_key(func, key_prefix, args[skip_args:], kwargs)
                result = cache_manager.get(cache_key)
                if result is not None:
                    return result
                result = await func(*args, **kwargs)
                if result is not None:
                    cache_manager.set(cache_key, result, ttl_seconds)
                return result
        else:
            @wraps(func)
            def wrapper(*args, **kwargs):
                cache_key = _cache_key(func, key_prefix, args[skip_args:], kwargs)
                result = cache_manager.get(cache_key)
                if result is not None:
                    return result
                result = func(*args, **kwargs)
                if result is not None:
                    cache_manager.set(cache_key, result, ttl_seconds)
                return result

        wrapper.clear_cache = lambda: cache_manager.invalidate_pattern(
            f"{key_prefix}:{func.__name__}:*" if key_prefix else f"{func.__name__}:*"
        )
        wrapper.cache_info = lambda: cache_manager.get_stats()

        return wrapper
    return decorator
