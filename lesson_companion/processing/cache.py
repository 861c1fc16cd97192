from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from redis import Redis

logger = logging.getLogger(__name__)


def dashboard_keys(child_id: str, parent_id: Optional[str]) -> List[str]:
    keys = [f"dashboard:child:{child_id}", f"progress:child:{child_id}", f"lessons:child:{child_id}"]
    if parent_id:
        keys.append(f"dashboard:parent:{parent_id}")
    return keys


class DashboardCache(Protocol):
    def invalidate(self, child_id: str, parent_id: Optional[str]) -> None:
        ...


class NoopDashboardCache:
    """Default cache stub for deployments without Redis."""

    def invalidate(self, child_id: str, parent_id: Optional[str]) -> None:
        return None


class RedisDashboardCache:
    """
    Deletes cached aggregate views that depend on a child's lesson count.
    """

    def __init__(self, redis: Redis):
        self.redis = redis

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisDashboardCache":
        return cls(Redis.from_url(redis_url))

    def invalidate(self, child_id: str, parent_id: Optional[str]) -> None:
        keys = dashboard_keys(child_id, parent_id)
        removed = self.redis.delete(*keys)
        logger.debug("Invalidated %s dashboard keys for child %s", removed, child_id)
