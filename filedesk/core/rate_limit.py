from __future__ import annotations

import logging
import threading
from time import monotonic, time
from typing import Dict, Tuple

import redis

from filedesk.config import REDIS_URL

logger = logging.getLogger("filedesk.rate_limit")


class RateLimiter:
    """Fixed window rate limiter with Redis or in-memory storage per client."""

    def __init__(self, limit: int, window_seconds: int = 60, redis_url: str = REDIS_URL) -> None:
        self.limit = max(limit, 1)
        self.window_seconds = window_seconds
        self._clients: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = monotonic() + window_seconds
        self._redis_client = self._connect(redis_url)
        self.use_redis = self._redis_client is not None

    @staticmethod
    def _connect(redis_url: str):
        if not redis_url:
            return None
        try:
            client = redis.from_url(redis_url)
            client.ping()
        except (redis.RedisError, ValueError) as exc:
            logger.warning("event=rate_limit_redis_unavailable error=%s", exc)
            return None
        return client

    def hit(self, key: str) -> Tuple[bool, int]:
        """
        Register a hit for the given key.
        Returns (allowed, retry_after_seconds).
        """
        if self.use_redis:
            return self._hit_redis(key)
        return self._hit_memory(key)

    def _hit_redis(self, key: str) -> Tuple[bool, int]:
        now = time()
        redis_key = f"rate_limit:{key}"

        try:
            pipe = self._redis_client.pipeline()
            pipe.get(f"{redis_key}:count")
            pipe.get(f"{redis_key}:reset")
            current_count_str, reset_time_str = pipe.execute()

            if current_count_str is None or reset_time_str is None or now > float(reset_time_str):
                current_count = 1
                reset_time = now + self.window_seconds
            else:
                current_count = int(current_count_str) + 1
                reset_time = float(reset_time_str)

            retry_after = max(0, int(reset_time - now))
            if current_count > self.limit:
                return False, retry_after or 1

            ttl = max(1, int(reset_time - now) + 1)
            pipe = self._redis_client.pipeline()
            pipe.setex(f"{redis_key}:count", ttl, str(current_count))
            pipe.setex(f"{redis_key}:reset", ttl, str(reset_time))
            pipe.execute()
            return True, retry_after
        except redis.RedisError:
            # Fall back to memory if Redis fails mid-flight
            return self._hit_memory(key)

    def _hit_memory(self, key: str) -> Tuple[bool, int]:
        now = monotonic()
        with self._lock:
            if now >= self._next_sweep:
                self._clients = {k: v for k, v in self._clients.items() if v[1] > now}
                self._next_sweep = now + self.window_seconds
            count, reset_at = self._clients.get(key, (0, now + self.window_seconds))
            if now > reset_at:
                count = 0
                reset_at = now + self.window_seconds
            if count >= self.limit:
                retry_after = max(0, int(reset_at - now))
                return False, retry_after or 1

            self._clients[key] = (count + 1, reset_at)
            retry_after = max(0, int(reset_at - now))
            return True, retry_after
