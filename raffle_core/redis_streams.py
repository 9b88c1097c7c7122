import json
import logging
from typing import Optional

import redis.asyncio as redis

from . import metrics
from .clock import utcnow

logger = logging.getLogger(__name__)

# Stream names as constants
STREAM_PURCHASES_COMPLETED = "purchases:completed"
STREAM_RAFFLE_STATUS = "raffles:status"
STREAM_WINNERS_SELECTED = "winners:selected"


class RedisStreamClient:
    """Publishes raffle domain events to Redis Streams."""

    def __init__(self, redis_url: str, maxlen: int = 100_000):
        self.redis_url = redis_url
        self.maxlen = maxlen
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        self.redis = redis.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        if self.redis:
            await self.redis.aclose()

    async def ping(self) -> bool:
        return bool(self.redis) and await self.redis.ping()

    async def publish(self, stream: str, data: dict) -> str:
        """Publish a message to a stream. Returns message ID."""
        payload = dict(data, _timestamp=utcnow().isoformat())
        msg_id = await self.redis.xadd(
            stream, {"payload": json.dumps(payload, default=str)},
            maxlen=self.maxlen, approximate=True,
        )
        metrics.STREAM_MESSAGES_PUBLISHED.labels(stream=stream).inc()
        logger.info(f"Published to {stream}", extra={"stream": stream, "msg_id": msg_id})
        return msg_id


async def publish_quietly(events: Optional[RedisStreamClient], stream: str, data: dict):
    """Publish an event after a commit. Failures are logged, never raised."""
    if events is None:
        return
    try:
        await events.publish(stream, data)
    except Exception as e:
        logger.warning(f"Failed to publish to {stream}: {e}", extra={"stream": stream})
