"""Redis-backed TTL cache for the public availability calendar.

Entries are keyed by the car's calendar revision, which every booking and
blackout-date write bumps, so a write makes older entries unreachable and the
TTL cleans them up. Booking writes never read from here.
"""
import json
import logging
from datetime import date
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import redis

logger = logging.getLogger(__name__)


def redis_url_with_tls_defaults(url: str) -> str:
    """rediss:// URLs (e.g. Upstash TLS) need ssl_cert_reqs for redis-py."""
    if not url or not url.strip().lower().startswith("rediss://"):
        return url
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    if "ssl_cert_reqs" not in qs:
        qs["ssl_cert_reqs"] = ["none"]
        return urlunparse(parsed._replace(query=urlencode(qs, doseq=True)))
    return url


class AvailabilityCache:
    def __init__(self, client: Optional[redis.Redis], ttl_seconds: int = 300, prefix: str = "calendar"):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 300) -> "AvailabilityCache":
        if not url:
            logger.info("REDIS_URL not set; availability calendar cache disabled")
            return cls(None, ttl_seconds)
        client = redis.Redis.from_url(redis_url_with_tls_defaults(url), decode_responses=True, socket_timeout=2)
        return cls(client, ttl_seconds)

    def _key(self, car_id: str, rev: int, start: date, end: date) -> str:
        return f"{self.prefix}:{car_id}:{rev}:{start.isoformat()}:{end.isoformat()}"

    def get(self, car_id: str, rev: int, start: date, end: date) -> Optional[dict]:
        if self.client is None:
            return None
        try:
            raw = self.client.get(self._key(car_id, rev, start, end))
        except redis.RedisError as e:
            logger.warning("calendar cache read failed for %s: %s", car_id, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("corrupt calendar cache entry for %s", car_id)
            return None

    def set(self, car_id: str, rev: int, start: date, end: date, value: dict) -> None:
        if self.client is None:
            return
        try:
            self.client.setex(self._key(car_id, rev, start, end), self.ttl_seconds, json.dumps(value))
        except redis.RedisError as e:
            logger.warning("calendar cache write failed for %s: %s", car_id, e)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
