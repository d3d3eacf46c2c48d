"""
Redis Relay

Fans broadcast envelopes out to every API process. Publishers push JSON
envelopes to one channel; each process runs `listen()` and hands every
envelope to its local broadcaster.
"""
import asyncio
import json
import logging
from typing import Callable

import redis
import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

BROADCAST_CHANNEL = "festival:broadcast"


class RedisRelay:
    def __init__(self, redis_url: str, channel: str = BROADCAST_CHANNEL):
        self.redis_url = redis_url
        self.channel = channel
        self._client: redis.Redis | None = None

    def get_client(self) -> redis.Redis | None:
        if self._client is None:
            try:
                client = redis.from_url(self.redis_url)
                client.ping()
                self._client = client
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable at {self.redis_url}: {e}")
                return None
        return self._client

    def publish(self, envelope: dict) -> bool:
        """False when Redis cannot take the message; the caller delivers locally."""
        client = self.get_client()
        if client is None:
            return False
        try:
            client.publish(self.channel, json.dumps(envelope))
        except redis.RedisError as e:
            logger.warning(f"Redis publish failed: {e}")
            # Reconnect on next publish
            self._client = None
            return False
        return True

    async def listen(self, deliver: Callable[[dict], int]) -> None:
        """Subscribe and deliver envelopes until cancelled. Reconnects every 5 seconds."""
        while True:
            try:
                r = aioredis.from_url(self.redis_url)
                pubsub = r.pubsub()
                await pubsub.subscribe(self.channel)
                logger.info(f"Subscribed to Redis channel {self.channel}")

                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    try:
                        envelope = json.loads(message["data"])
                    except (TypeError, ValueError) as e:
                        logger.warning(f"Dropping malformed relay message: {e}")
                        continue
                    deliver(envelope)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Redis connection error: {e}", exc_info=True)
                await asyncio.sleep(5)
