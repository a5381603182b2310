"""
Broadcast channel for job notifications.

Events go to the Redis pub/sub channel when the broker connection is up and
otherwise straight to the notification gateway over a persistent websocket.
Delivery failures are logged and counted, never raised.
"""
from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
import websockets
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryError, before_sleep_log, stop_after_attempt, wait_incrementing

from .config import Settings
from .models import serialize_event
from .observability import record_broadcast

logger = logging.getLogger(__name__)

class BroadcastError(Exception):
    """A single delivery path could not send an event."""
    pass

def reconnect_policy(max_attempts: int, step: float, max_delay: float,
                     sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> AsyncRetrying:
    """Bounded linear backoff: step, 2*step, ... capped at max_delay."""
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_incrementing(start=step, increment=step, max=max_delay),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        sleep=sleep,
    )

class EventTransport(ABC):
    """One way of getting a serialized event out of this process."""

    name: str = "transport"

    @property
    @abstractmethod
    def available(self) -> bool:
        ...

    async def start(self) -> None:
        pass

    @abstractmethod
    async def send(self, data: str) -> None:
        """Send one frame. Raises BroadcastError on failure."""
        ...

    async def close(self) -> None:
        pass

class RedisTransport(EventTransport):
    """Single shared publish connection to the broker."""

    name = "broker"

    def __init__(self, url: Optional[str], channel: str = "job-updates", *, max_retries: int = 10,
                 retry_step: float = 0.5, retry_max_delay: float = 5.0,
                 client_factory: Optional[Callable[[str], Any]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.url = url
        self.channel = channel
        self.max_retries = max_retries
        self.retry_step = retry_step
        self.retry_max_delay = retry_max_delay
        self._client_factory = client_factory or (lambda u: aioredis.from_url(u, decode_responses=True))
        self._sleep = sleep
        self._client = None
        self._connected = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self.disabled = False

    @property
    def available(self) -> bool:
        return self._connected and not self.disabled

    async def start(self) -> None:
        if not self.url:
            logger.warning("REDIS_URL not set - events will use the direct gateway connection")
            self.disabled = True
            return
        if self.url.startswith(("http://", "https://")):
            logger.error("REDIS_URL appears to be a REST URL. Pub/sub needs a redis:// or rediss:// URL")
            self.disabled = True
            return
        # Backoff runs in the background; events use the next path until it connects
        self._schedule_reconnect()

    async def _connect_once(self) -> None:
        if self._client is None:
            self._client = self._client_factory(self.url)
        await self._client.ping()

    async def connect(self) -> bool:
        """Probe the broker with bounded retries. Disables the transport when they run out."""
        if self.disabled:
            return False
        try:
            async for attempt in reconnect_policy(self.max_retries, self.retry_step, self.retry_max_delay, self._sleep):
                with attempt:
                    await self._connect_once()
        except RetryError as e:
            self.disabled = True
            self._connected = False
            logger.error(
                f"Broker unreachable after {self.max_retries} attempts ({e.last_attempt.exception()}); "
                "publishing via the gateway connection until restart"
            )
            await self._close_client()
            return False
        self._connected = True
        logger.info(f"Connected to broker, publishing on channel '{self.channel}'")
        return True

    def _schedule_reconnect(self) -> None:
        if self.disabled or (self._reconnect_task is not None and not self._reconnect_task.done()):
            return
        self._reconnect_task = asyncio.create_task(self.connect())

    async def send(self, data: str) -> None:
        if not self.available:
            raise BroadcastError("broker not connected")
        try:
            await self._client.publish(self.channel, data)
        except Exception as e:
            self._connected = False
            self._schedule_reconnect()
            raise BroadcastError(f"Broker publish failed: {e}") from e

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except Exception as e:
            logger.debug(f"Error closing broker client: {e}")

    async def close(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._connected = False
        await self._close_client()

class GatewayTransport(EventTransport):
    """Persistent websocket connection to the notification gateway, reconnected on close."""

    name = "direct"

    def __init__(self, url: str, reconnect_delay: float = 3.0, connect: Optional[Callable[[str], Awaitable[Any]]] = None):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self._connect = connect or websockets.connect
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def available(self) -> bool:
        return self._ws is not None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self._closing:
            try:
                logger.info(f"Connecting to notification gateway at {self.url}...")
                ws = await self._connect(self.url)
                self._ws = ws
                logger.info("Connected to notification gateway - ready to send updates")
                # Drain relayed frames so the gateway never blocks on this socket
                async for _ in ws:
                    pass
                logger.warning(f"Gateway connection closed, reconnecting in {self.reconnect_delay} seconds...")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Gateway connection error: {e}, reconnecting in {self.reconnect_delay} seconds...")
            finally:
                self._ws = None
            if not self._closing:
                await asyncio.sleep(self.reconnect_delay)

    async def send(self, data: str) -> None:
        ws = self._ws
        if ws is None:
            raise BroadcastError("gateway connection not open")
        try:
            await ws.send(data)
        except Exception as e:
            raise BroadcastError(f"Gateway send failed: {e}") from e

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing gateway connection: {e}")
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

class BroadcastChannel:
    """Publishes notification events, broker first, gateway socket second."""

    def __init__(self, primary: Optional[EventTransport] = None, fallback: Optional[EventTransport] = None):
        self.primary = primary
        self.fallback = fallback

    @property
    def transports(self) -> list[EventTransport]:
        return [t for t in (self.primary, self.fallback) if t is not None]

    async def start(self) -> None:
        """Start every transport, fallback first. Never waits on broker backoff."""
        for transport in reversed(self.transports):
            try:
                await transport.start()
            except Exception as e:
                logger.error(f"Failed to start {transport.name} transport: {e}")

    async def publish(self, event: BaseModel) -> Optional[str]:
        """Deliver ``event`` on the first path that accepts it. Returns the path name, or None if dropped."""
        event_type = getattr(event, "type", "unknown")
        job_id = getattr(event, "jobId", None)
        try:
            data = serialize_event(event)
        except Exception as e:
            logger.error(f"Could not serialize {event_type} for job {job_id}: {e}")
            record_broadcast("dropped")
            return None

        for transport in self.transports:
            if not transport.available:
                continue
            try:
                await transport.send(data)
            except Exception as e:
                logger.warning(f"{transport.name} delivery failed for {event_type} ({e}), trying next path")
                continue
            logger.debug(f"Broadcast via {transport.name}: {event_type} for job {job_id}")
            record_broadcast(transport.name)
            return transport.name

        logger.warning(f"Cannot broadcast {event_type} for job {job_id}: no delivery path available")
        record_broadcast("dropped")
        return None

    async def close(self) -> None:
        for transport in self.transports:
            try:
                await transport.close()
            except Exception as e:
                logger.error(f"Failed to close {transport.name} transport: {e}")

def build_channel(settings: Settings) -> BroadcastChannel:
    primary = None
    if settings.REDIS_URL:
        primary = RedisTransport(
            settings.REDIS_URL,
            settings.BROKER_CHANNEL,
            max_retries=settings.BROKER_MAX_RETRIES,
            retry_step=settings.BROKER_RETRY_STEP_S,
            retry_max_delay=settings.BROKER_RETRY_MAX_DELAY_S,
        )
    else:
        logger.warning("REDIS_URL not set - worker will publish through the gateway connection only")
    fallback = GatewayTransport(settings.WS_URL, reconnect_delay=settings.WS_RECONNECT_DELAY_S)
    return BroadcastChannel(primary=primary, fallback=fallback)
