"""Optional Redis side channel: queue-update publishing and rate limiting.

Redis is only used when ``REDIS_URL`` is set.  Both features are best
effort: a Redis failure is logged and the queue operation goes ahead.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

import redis

import config
from models import Visit

logger = logging.getLogger(__name__)

UPDATES_CHANNEL = "clinic:updates"

_redis_client: Optional[redis.Redis] = None


def get_redis(url: Optional[str] = None) -> Optional[redis.Redis]:
    """Get the shared Redis client, or None when Redis is not configured."""
    global _redis_client
    url = url or config.REDIS_URL
    if not url:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(url, decode_responses=True)
            client.ping()
            _redis_client = client
            logger.info("Connected to Redis")
        except redis.RedisError as exc:
            logger.warning("Redis connection failed: %s", exc)
            return None

    return _redis_client


class QueueEvents:
    """Publishes queue changes and counts registrations per contact."""

    def __init__(self, client: Optional[redis.Redis] = None) -> None:
        self.client = client

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def publish(self, event_type: str, visit: Visit) -> None:
        if self.client is None:
            return
        payload = {
            "type": event_type,
            "visit_id": visit.id,
            "serial_number": visit.serial_number,
            "status": visit.status.value,
            "service_day": visit.service_day.isoformat(),
            "timestamp": datetime.now().isoformat(),
        }
        try:
            self.client.publish(UPDATES_CHANNEL, json.dumps(payload))
        except redis.RedisError as exc:
            logger.warning("Redis publish of %s for serial #%d failed: %s", event_type, visit.serial_number, exc)

    def _rate_key(self, contact: str) -> str:
        return f"rate_limit:register:{contact}"

    def allow_registration(self, contact: str, limit: int = config.REGISTRATION_RATE_LIMIT) -> bool:
        """True if ``contact`` has made fewer than ``limit`` registrations in the current window."""
        if self.client is None:
            return True

        try:
            return int(self.client.get(self._rate_key(contact)) or 0) < limit
        except redis.RedisError as exc:
            logger.warning("Redis rate limit check failed: %s", exc)
            return True

    def record_registration(self, contact: str, window: int = config.REGISTRATION_RATE_WINDOW) -> None:
        """Count a stored registration against ``contact``; the window starts at the first one."""
        if self.client is None:
            return

        key = self._rate_key(contact)
        try:
            if self.client.incr(key) == 1:
                self.client.expire(key, window)
        except redis.RedisError as exc:
            logger.warning("Redis rate limit update failed: %s", exc)
