import hashlib
import json
import logging
from typing import Dict, Optional

import redis

from werkverdeling.config.settings import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class PlanCache:
    """
    Plan results cached in Redis, keyed by a hash of the planning request.

    The cache is an optimization only: a Redis failure is logged and the
    request is planned as if the entry were missing.
    """

    def __init__(self, redis_url: str = settings.redis_url, ttl_seconds: int = settings.cache_ttl_seconds):
        self.redis_client = redis.from_url(redis_url, decode_responses=True)
        self.ttl_seconds = ttl_seconds

    def get(self, request_hash: str) -> Optional[Dict]:
        """Retrieve a cached plan by request hash."""
        try:
            cached = self.redis_client.get(f"plan:{request_hash}")
        except redis.exceptions.RedisError as e:
            logger.warning(f"Plan cache read failed: {e}")
            return None
        if cached:
            return json.loads(cached)
        return None

    def set(self, request_hash: str, plan: Dict, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.redis_client.setex(
                f"plan:{request_hash}",
                ttl_seconds or self.ttl_seconds,
                json.dumps(plan, default=str),
            )
        except redis.exceptions.RedisError as e:
            logger.warning(f"Plan cache write failed: {e}")

    def delete(self, request_hash: str) -> None:
        try:
            self.redis_client.delete(f"plan:{request_hash}")
        except redis.exceptions.RedisError as e:
            logger.warning(f"Plan cache delete failed: {e}")

    @staticmethod
    def hash_request(payload: Dict) -> str:
        """Stable hash of a planning request (tasks, workers, ledger, settings)."""
        data = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(data.encode()).hexdigest()[:16]

    def health_check(self) -> bool:
        """Check Redis connection."""
        try:
            self.redis_client.ping()
            return True
        except redis.exceptions.RedisError:
            return False
