"""
Notification gateway: fans job events out to connected websocket clients.

Events arrive two ways: from the broker subscription (any worker publishing
to the channel) and as frames sent by a worker over its own websocket
connection when the broker is unavailable to it. Connected clients get live
events only; nothing is replayed.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

import redis.asyncio as aioredis
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from tenacity import RetryError

from .broadcast import reconnect_policy
from .models import parse_event, serialize_event

logger = logging.getLogger(__name__)

class NotificationGateway:
    """Tracks open client connections and broadcasts to all of them."""

    def __init__(self):
        self._connections: Set[Any] = set()
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def register(self, ws: Any) -> None:
        async with self._lock:
            self._connections.add(ws)
        logger.info(f"WebSocket client connected. Total: {self.connection_count}")

    async def unregister(self, ws: Any) -> None:
        async with self._lock:
            self._connections.discard(ws)
        logger.info(f"WebSocket client disconnected. Total: {self.connection_count}")

    async def broadcast(self, event: BaseModel, exclude: Any = None) -> int:
        """Send ``event`` to every open connection. Returns how many received it."""
        data = serialize_event(event)
        async with self._lock:
            targets = [ws for ws in self._connections if ws is not exclude]

        delivered = 0
        dead = []
        for ws in targets:
            try:
                await ws.send_text(data)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping websocket client after send error: {e}")
                dead.append(ws)

        if dead:
            async with self._lock:
                for ws in dead:
                    self._connections.discard(ws)
        return delivered

    async def relay_raw(self, raw: Any, source: Any = None) -> int:
        """Parse an inbound frame and rebroadcast it. Malformed frames are logged and ignored."""
        try:
            event = parse_event(raw)
        except ValueError as e:
            logger.error(f"Ignoring malformed notification frame: {e}")
            return 0
        return await self.broadcast(event, exclude=source)

    async def handle_connection(self, ws: WebSocket) -> None:
        await ws.accept()
        await self.register(ws)
        try:
            while True:
                raw = await ws.receive_text()
                await self.relay_raw(raw, source=ws)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            await self.unregister(ws)

    async def close(self) -> None:
        async with self._lock:
            connections, self._connections = list(self._connections), set()
        for ws in connections:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing websocket client: {e}")

async def relay_from_broker(gateway: NotificationGateway, url: Optional[str], channel: str = "job-updates", *,
                            max_retries: int = 10, retry_step: float = 0.5, retry_max_delay: float = 5.0,
                            client_factory: Optional[Callable[[str], Any]] = None,
                            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
    """
    Subscribe to the broker channel and rebroadcast every message to the gateway's clients.

    Lost subscriptions are re-established with the bounded backoff policy; once
    retries are exhausted the relay stops and only direct worker frames reach clients.
    """
    if not url:
        logger.warning("Redis not available - pub/sub relay disabled")
        return
    if url.startswith(("http://", "https://")):
        logger.error("REDIS_URL appears to be a REST URL. Pub/sub relay disabled")
        return

    factory = client_factory or (lambda u: aioredis.from_url(u, decode_responses=True))

    async def _subscribe_and_pump() -> None:
        client = factory(url)
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.info(f"Subscribed to broker channel: {channel}")
            # A drop after a successful subscribe starts a fresh retry budget
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await gateway.relay_raw(message.get("data"))
            except Exception as e:
                logger.warning(f"Broker subscription lost: {e}")
        finally:
            try:
                await pubsub.aclose()
                await client.aclose()
            except Exception as e:
                logger.debug(f"Error closing broker subscription: {e}")

    while True:
        try:
            async for attempt in reconnect_policy(max_retries, retry_step, retry_max_delay, sleep):
                with attempt:
                    await _subscribe_and_pump()
        except RetryError as e:
            logger.error(
                f"Broker subscription failed after {max_retries} attempts ({e.last_attempt.exception()}); "
                "real-time updates will only arrive via direct worker connections"
            )
            return
        await sleep(retry_step)
