"""
Notification Bus — Redis Pub/Sub for job wake-ups and completion events.

Delivery is best-effort. A lost job notification never loses the job
itself: the worker's periodic poll picks up anything still pending.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]


class NotificationBus:
    """Publish/subscribe over a redis.asyncio client.

    One listener task reads the shared pubsub connection and dispatches
    each message to the handler registered for its channel.
    """

    def __init__(self, client=None, redis_url: Optional[str] = None):
        self._redis = client
        self._redis_url = redis_url
        self._owns_client = client is None
        self._pubsub = None
        self._handlers: dict[str, MessageHandler] = {}
        self._listen_task: Optional[asyncio.Task] = None
        self._running = False

    async def _client(self):
        if self._redis is None and self._redis_url:
            import redis.asyncio as redis

            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def publish(self, channel: str, payload: dict[str, Any]) -> bool:
        """Publish JSON to a channel. Returns False instead of raising."""
        try:
            client = await self._client()
            if client is None:
                return False
            await client.publish(channel, json.dumps(payload, default=str))
            logger.debug("notification_published", channel=channel, type=payload.get("type"))
            return True
        except Exception as e:
            logger.warning("notification_publish_failed", channel=channel, error=str(e))
            return False

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        """Register ``handler`` for ``channel`` and ensure the listener runs."""
        client = await self._client()
        if client is None:
            logger.warning("notification_subscribe_skipped", channel=channel, reason="no redis")
            return
        if self._pubsub is None:
            self._pubsub = client.pubsub()
        await self._pubsub.subscribe(channel)
        self._handlers[channel] = handler

        if self._listen_task is None:
            self._running = True
            self._listen_task = asyncio.create_task(self._listen())
        logger.info("notification_subscribed", channel=channel)

    async def _listen(self) -> None:
        while self._running:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if not message or message["type"] != "message":
                    continue
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                handler = self._handlers.get(channel)
                if handler is None:
                    continue
                await handler(json.loads(message["data"]))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("notification_listen_error", error=str(e))
                await asyncio.sleep(1)

    async def close(self) -> None:
        self._running = False
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None

        if self._pubsub is not None:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
        self._handlers.clear()
        logger.info("notification_bus_closed")
