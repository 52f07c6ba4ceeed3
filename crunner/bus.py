"""
Event bus for run lifecycle events, backed by Redis.
"""
import json
from typing import Final
import redis.asyncio as redis
from crunner.events import RunEvent

CHANNEL_RUNNER_EVENTS: Final[str] = "runner_events"


class EventBus:
    def __init__(self, redis_client: redis.Redis):
        self.redis_client = redis_client

    async def publish(self, event: RunEvent) -> None:
        await self.redis_client.publish(CHANNEL_RUNNER_EVENTS, json.dumps(event))
