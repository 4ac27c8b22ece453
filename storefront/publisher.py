"""
Storefront — イベント発行 (Redis Pub/Sub)

ローカルのコミットが済んだ後に呼ばれる通知。
Redis が落ちていてもリクエスト自体は成功させ、失敗はログに残す。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class EventPublisher:
    def __init__(self, redis: aioredis.Redis, channel: str = ORDER_EVENTS_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        event_type = type(event).__name__
        message = json.dumps(
            {"event_type": event_type, "data": event.model_dump(mode="json")},
            default=str,
        )
        try:
            await self.redis.publish(self.channel, message)
        except RedisError:
            logger.exception("Failed to publish %s", event_type)
