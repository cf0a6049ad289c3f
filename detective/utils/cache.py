"""
Redis cache utility - persisted tier behind the in-memory case caches
"""
import redis
import json
import logging
from typing import Optional, Any
from detective.config import settings

logger = logging.getLogger(__name__)


class CacheService:
    """Redis-backed JSON cache; disabled when Redis is unreachable"""
    
    def __init__(self, redis_url: Optional[str] = None, default_ttl: Optional[int] = None):
        self.default_ttl = default_ttl or settings.CASE_CACHE_TTL
        self.redis_client = None
        if not redis_url:
            logger.info("No Redis URL configured. Persisted cache disabled.")
            return
        try:
            self.redis_client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5
            )
            # Test connection
            self.redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning(f"Redis connection failed: {str(e)}. Caching disabled.")
            self.redis_client = None
    
    @property
    def enabled(self) -> bool:
        return self.redis_client is not None
    
    def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache
        
        Args:
            key: Cache key
            
        Returns:
            Cached value or None
        """
        if not self.redis_client:
            return None
        
        try:
            value = self.redis_client.get(key)
            if value:
                logger.debug(f"Cache hit: {key}")
                return json.loads(value)
            logger.debug(f"Cache miss: {key}")
            return None
        except Exception as e:
            logger.warning(f"Cache read failed ({key}): {str(e)}")
            return None
    
    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set value in cache (must be JSON serializable)
        
        Returns:
            Success status
        """
        if not self.redis_client:
            return False
        
        try:
            ttl = ttl or self.default_ttl
            self.redis_client.setex(key, ttl, json.dumps(value))
            logger.debug(f"Cache set: {key} (TTL: {ttl}s)")
            return True
        except Exception as e:
            logger.warning(f"Cache write failed ({key}): {str(e)}")
            return False
    
    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        if not self.redis_client:
            return False
        
        try:
            self.redis_client.delete(key)
            logger.debug(f"Cache delete: {key}")
            return True
        except Exception as e:
            logger.warning(f"Cache delete failed ({key}): {str(e)}")
            return False
