"""
Search snapshots.

A search result is stored under ``search:{id}`` with a TTL so the client
can re-open it with ``GET /search/{id}`` until it goes stale.  Snapshots are
a convenience: a Redis outage is logged and the search still succeeds.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class SearchStore:
    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 3600):
        self.redis = client
        self.ttl = ttl_seconds

    @staticmethod
    def _key(search_id: str) -> str:
        return f"search:{search_id}"

    async def save(self, search_id: str, snapshot: dict) -> bool:
        try:
            await self.redis.set(
                self._key(search_id), json.dumps(snapshot), ex=self.ttl
            )
        except RedisError:
            logger.warning("Could not store search snapshot %s", search_id, exc_info=True)
            return False
        return True

    async def load(self, search_id: str) -> Optional[dict]:
        try:
            raw = await self.redis.get(self._key(search_id))
        except RedisError:
            logger.warning("Could not read search snapshot %s", search_id, exc_info=True)
            return None
        return json.loads(raw) if raw else None
