import os
import redis
import json
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class CacheService:
    """Redis-backed holding area for quizzes in progress and AI rate limits.

    When Redis is unreachable every method degrades: nothing is cached and
    rate limits are not enforced.
    """

    def __init__(self, host: str = 'localhost', port: int = 6379, db: int = 0,
                 client: Optional[redis.Redis] = None):
        if client is not None:
            self.redis_client = client
            return

        try:
            self.redis_client = redis.Redis(
                host=host,
                port=port,
                db=db,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.redis_client.ping()
            logger.info(f"Redis cache connected successfully to {host}:{port}")
        except redis.ConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self.redis_client = None
        except Exception as e:
            logger.error(f"Redis initialization error: {e}")
            self.redis_client = None

    @property
    def is_connected(self) -> bool:
        return self.redis_client is not None

    def cache_active_quiz(self, quiz_id: str, quiz_data: Dict[str, Any], ttl: int = 3600) -> bool:
        """Keep a generated quiz until it is submitted (default 1 hour)"""
        if not self.redis_client:
            return False

        try:
            key = f"active_quiz:{quiz_id}"
            value = json.dumps(quiz_data, default=str)
            self.redis_client.setex(key, ttl, value)
            logger.info(f"Cached active quiz {quiz_id} with TTL {ttl}s")
            return True
        except Exception as e:
            logger.error(f"Failed to cache active quiz {quiz_id}: {e}")
            return False

    def get_active_quiz(self, quiz_id: str) -> Optional[Dict[str, Any]]:
        """Retrieve a quiz in progress"""
        if not self.redis_client:
            return None

        try:
            key = f"active_quiz:{quiz_id}"
            cached = self.redis_client.get(key)
            if cached:
                logger.info(f"Cache hit for active quiz {quiz_id}")
                return json.loads(cached)
            logger.info(f"Cache miss for active quiz {quiz_id}")
            return None
        except Exception as e:
            logger.error(f"Failed to retrieve active quiz {quiz_id}: {e}")
            return None

    def clear_active_quiz(self, quiz_id: str) -> bool:
        """Drop a quiz once its result has been recorded"""
        if not self.redis_client:
            return False

        try:
            self.redis_client.delete(f"active_quiz:{quiz_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to clear active quiz {quiz_id}: {e}")
            return False

    def increment_rate_limit(self, identifier: str, limit: int = 20, window: int = 3600) -> bool:
        """Count one quiz generation; False once the window's limit is exceeded"""
        if not self.redis_client:
            return True

        try:
            key = f"rate_limit:{identifier}"
            current = self.redis_client.incr(key)
            if current == 1:
                self.redis_client.expire(key, window)

            if current > limit:
                logger.warning(f"Rate limit exceeded for {identifier}: {current}/{limit}")
                return False

            logger.info(f"Rate limit check passed for {identifier}: {current}/{limit}")
            return True
        except Exception as e:
            logger.error(f"Rate limit check failed for {identifier}: {e}")
            return True

    def get_rate_limit_status(self, identifier: str, limit: int = 20, window: int = 3600) -> Dict[str, Any]:
        """Get current rate limit status"""
        if not self.redis_client:
            return {"allowed": True, "current": 0, "limit": limit, "remaining": limit, "resets_in": 0}

        try:
            key = f"rate_limit:{identifier}"
            current = int(self.redis_client.get(key) or 0)
            ttl = self.redis_client.ttl(key)

            return {
                "allowed": current <= limit,
                "current": current,
                "limit": limit,
                "remaining": max(0, limit - current),
                "resets_in": ttl if ttl > 0 else window
            }
        except Exception as e:
            logger.error(f"Failed to get rate limit status for {identifier}: {e}")
            return {"allowed": True, "current": 0, "limit": limit, "remaining": limit, "resets_in": 0}

    def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""
        if not self.redis_client:
            return {"status": "disconnected", "stats": {}}

        try:
            info = self.redis_client.info()
            return {
                "status": "connected",
                "stats": {
                    "total_keys": self.redis_client.dbsize(),
                    "used_memory": info.get("used_memory_human", "N/A"),
                    "connected_clients": info.get("connected_clients", 0),
                }
            }
        except Exception as e:
            logger.error(f"Failed to get cache stats: {e}")
            return {"status": "error", "stats": {}}


cache_service = None


def get_cache_service() -> CacheService:
    """Get or create the global cache service instance"""
    global cache_service
    if cache_service is None:
        cache_service = CacheService(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
        )
    return cache_service
