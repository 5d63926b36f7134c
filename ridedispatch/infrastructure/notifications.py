"""
Notification / audit sinks.

``RedisNotificationSink`` publishes each dispatch event as JSON on
``notifications:<user_id>``; the push/e-mail delivery services subscribe
there.  Every event is also written to the ``ridedispatch.audit`` logger
before publishing, so the audit trail survives a Redis outage.
"""

from __future__ import annotations

import json
import logging

import redis.asyncio as aioredis

from ridedispatch.domain.ports import DispatchEvent

audit_logger = logging.getLogger("ridedispatch.audit")

CHANNEL_PREFIX = "notifications"


def channel_for(user_id: str) -> str:
    return f"{CHANNEL_PREFIX}:{user_id}"


class LoggingNotificationSink:
    """Audit log only (no fan-out)."""

    async def notify(self, user_id: str, event: DispatchEvent) -> None:
        audit_logger.info(
            "%s booking=%s status=%s user=%s",
            event.event,
            event.booking_id,
            event.status.value,
            user_id,
        )


class RedisNotificationSink(LoggingNotificationSink):
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def notify(self, user_id: str, event: DispatchEvent) -> None:
        await super().notify(user_id, event)
        payload = {"user_id": user_id, **event.as_dict()}
        await self.redis.publish(channel_for(user_id), json.dumps(payload))
