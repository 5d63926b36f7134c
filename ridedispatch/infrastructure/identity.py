"""
Identity service adapter.

The auth service stores each issued session token as a Redis hash
``auth:token:<token>`` with ``user_id`` and ``role`` fields.  Unknown
tokens and unknown roles resolve to ``None``.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis

from ridedispatch.domain.entities import Actor
from ridedispatch.domain.enums import Role

logger = logging.getLogger(__name__)

TOKEN_KEY_PREFIX = "auth:token"


class RedisTokenResolver:
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def resolve(self, credential: str) -> Optional[Actor]:
        data = await self.redis.hgetall(f"{TOKEN_KEY_PREFIX}:{credential}")
        if not data or "user_id" not in data:
            return None
        try:
            role = Role(data.get("role", ""))
        except ValueError:
            logger.warning("Token for %s carries unknown role %r", data["user_id"], data.get("role"))
            return None
        return Actor(role=role, user_id=data["user_id"])
