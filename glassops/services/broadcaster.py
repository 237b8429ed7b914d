"""
Live notification fan-out.

NotificationBroadcaster keeps a registry of connected observers keyed by
connection handle and pushes JSON frames to them in publish order.
RedisNotificationBridge carries frames from worker processes to the API
process, which owns the observer connections.
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Hashable

import redis.asyncio as redis

from glassops.config import settings
from glassops.logging_config import get_logger

log = get_logger(component="broadcaster")

NOTIFICATION_CHANNEL = "glassops:notifications"

SendFn = Callable[[dict], Awaitable[Any]]


def notification_frame(notification: dict) -> dict:
    return {"type": "notification", "notification": notification}


def notification_update_frame(notification_id: str, updates: dict) -> dict:
    return {"type": "notification_update", "notificationId": notification_id, "updates": updates}


class NotificationBroadcaster:
    """
    Registry of live observers.

    Broadcasts are serialized so frames leave in the order they were
    published. A connection is dropped only when a send to it fails or does
    not finish within send_timeout seconds.
    """

    def __init__(self, send_timeout: float | None = None):
        self._connections: dict[Hashable, SendFn] = {}
        self._lock = asyncio.Lock()
        self.send_timeout = settings.OBSERVER_SEND_TIMEOUT_SECONDS if send_timeout is None else send_timeout

    def register(self, handle: Hashable, send: SendFn) -> Hashable:
        """Add an observer. send receives each frame as a dict."""
        self._connections[handle] = send
        log.info("observer_registered", observers=len(self._connections))
        return handle

    def unregister(self, handle: Hashable) -> None:
        if self._connections.pop(handle, None) is not None:
            log.info("observer_unregistered", observers=len(self._connections))

    @property
    def observer_count(self) -> int:
        return len(self._connections)

    async def broadcast(self, frame: dict) -> int:
        """
        Send a frame to every registered observer.

        Returns:
            Number of observers the frame was delivered to
        """
        delivered = 0
        async with self._lock:
            for handle, send in list(self._connections.items()):
                try:
                    await asyncio.wait_for(send(frame), self.send_timeout)
                    delivered += 1
                except Exception as exc:
                    self._connections.pop(handle, None)
                    log.info(
                        "observer_pruned",
                        error=str(exc) or exc.__class__.__name__,
                        observers=len(self._connections),
                    )
        return delivered

    async def publish(self, frame: dict) -> None:
        await self.broadcast(frame)


class RedisNotificationBridge:
    """Publishes frames to Redis pub/sub and relays them into a broadcaster."""

    def __init__(self, redis_url: str | None = None, channel: str = NOTIFICATION_CHANNEL):
        self.redis_url = redis_url or settings.REDIS_URL
        self.channel = channel
        self._redis = None

    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def publish(self, frame: dict) -> None:
        """Publish a frame. Redis being down never fails the caller."""
        try:
            r = await self.get_redis()
            await r.publish(self.channel, json.dumps(frame, default=str))
        except redis.RedisError as exc:
            log.warning("notification_publish_failed", channel=self.channel, error=str(exc))

    async def relay(self, broadcaster: NotificationBroadcaster, reconnect_delay: float = 5.0) -> None:
        """
        Forward every frame published on the channel to the broadcaster.

        Runs until cancelled; reconnects after Redis errors.
        """
        while True:
            client = redis.from_url(self.redis_url)
            pubsub = client.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                log.info("notification_relay_started", channel=self.channel)
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        frame = json.loads(message["data"])
                    except (TypeError, ValueError):
                        log.warning("notification_relay_bad_frame")
                        continue
                    await broadcaster.broadcast(frame)
            except redis.RedisError as exc:
                log.warning("notification_relay_disconnected", error=str(exc))
                await asyncio.sleep(reconnect_delay)
            finally:
                await pubsub.aclose()
                await client.aclose()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Singleton instance owned by the API process
broadcaster = NotificationBroadcaster()
