"""
Change-feed subscriptions over Redis pub/sub.

A subscription listens on `<resource>:<parent-id>` and hands each decoded
ChangeEvent to its callback in delivery order. Dropped connections are
retried with exponential backoff:

    CONNECTING -> CONNECTED -> DISCONNECTED -> RECONNECTING -> CONNECTED

and CLOSED once unsubscribed. No callback fires after unsubscribe().
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from .metrics import ACTIVE_SUBSCRIPTIONS, FEED_EVENTS, FEED_INVALID, FEED_RECONNECTS
from .models import ChangeEvent, ResourceSpec, decode_event, encode_event, get_resource

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
StateCallback = Callable[["FeedState"], None]


class FeedState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class FeedError(Exception):
    """The change feed could not be (re)established."""

    def __init__(self, message: str, channel: Optional[str] = None):
        super().__init__(message)
        self.channel = channel


class Subscription:
    def __init__(
        self,
        feed: "ChangeFeed",
        spec: ResourceSpec,
        parent_id: str,
        callback: EventCallback,
        on_state: Optional[StateCallback] = None,
    ):
        self.feed = feed
        self.spec = spec
        self.parent_id = parent_id
        self.channel = spec.channel(parent_id)
        self.callback = callback
        self.on_state = on_state
        self.state = FeedState.CONNECTING
        self.error: Optional[FeedError] = None
        self._pubsub: Any = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._counted = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _set_state(self, state: FeedState) -> None:
        if state == self.state:
            return
        logger.debug(f"Feed {self.channel}: {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state:
            try:
                self.on_state(state)
            except Exception:
                logger.exception(f"State listener failed for {self.channel}")

    async def _open(self) -> None:
        pubsub = self.feed.redis.pubsub()
        try:
            await pubsub.subscribe(self.channel)
        except (RedisError, OSError):
            await self._close_quietly(pubsub)
            raise
        self._pubsub = pubsub

    def _before_sleep(self, retry_state) -> None:
        FEED_RECONNECTS.labels(self.spec.name).inc()
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(f"Feed {self.channel} connect attempt {retry_state.attempt_number} failed: {exc}")

    async def _connect(self) -> None:
        retrying = AsyncRetrying(
            reraise=False,
            stop=stop_after_attempt(self.feed.reconnect_attempts),
            wait=wait_exponential(multiplier=self.feed.backoff_base, min=self.feed.backoff_base, max=self.feed.backoff_max),
            retry=retry_if_exception_type((RedisError, OSError)),
            before_sleep=self._before_sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._open()
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise FeedError(f"Could not subscribe to {self.channel}: {cause}", self.channel) from cause

    async def start(self) -> "Subscription":
        try:
            await self._connect()
        except FeedError as e:
            self.error = e
            self._set_state(FeedState.DISCONNECTED)
            raise
        self._set_state(FeedState.CONNECTED)
        ACTIVE_SUBSCRIPTIONS.inc()
        self._counted = True
        self._task = asyncio.create_task(self._listen())
        logger.info(f"Subscribed to {self.channel}")
        return self

    async def _listen(self) -> None:
        try:
            while not self._closed:
                try:
                    async for message in self._pubsub.listen():
                        if self._closed:
                            break
                        if message.get("type") != "message":
                            continue
                        await self._dispatch(message.get("data"))
                    break
                except (RedisError, OSError) as e:
                    if self._closed:
                        break
                    logger.warning(f"Feed {self.channel} disconnected: {e}")
                    self._set_state(FeedState.DISCONNECTED)
                    await self._close_pubsub()
                    self._set_state(FeedState.RECONNECTING)
                    try:
                        await self._connect()
                    except FeedError as fe:
                        logger.error(str(fe))
                        self.error = fe
                        self._set_state(FeedState.DISCONNECTED)
                        return
                    if self._closed:
                        break
                    self.error = None
                    self._set_state(FeedState.CONNECTED)
        finally:
            if self._closed:
                await self._close_pubsub()

    async def _dispatch(self, raw: Any) -> None:
        try:
            event = decode_event(self.spec, raw)
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            FEED_INVALID.labels(self.spec.name).inc()
            logger.warning(f"Dropping malformed event on {self.channel}: {e}")
            return
        if self._closed:
            return
        FEED_EVENTS.labels(self.spec.name, event.operation.value).inc()
        try:
            result = self.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Feed callback failed on {self.channel} for {event.row_id}")

    @staticmethod
    async def _close_quietly(pubsub: Any) -> None:
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Ignoring error while closing pubsub: {e}")

    async def _close_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            await self._close_quietly(pubsub)

    async def unsubscribe(self) -> None:
        """Stop delivery. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        self._set_state(FeedState.CLOSED)
        if self._counted:
            ACTIVE_SUBSCRIPTIONS.dec()
            self._counted = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if task is None or task is not asyncio.current_task():
            await self._close_pubsub()
        logger.info(f"Unsubscribed from {self.channel}")


class ChangeFeed:
    def __init__(
        self,
        redis_client: redis.Redis,
        reconnect_attempts: int = 6,
        backoff_base: float = 0.5,
        backoff_max: float = 15.0,
    ):
        self.redis = redis_client
        self.reconnect_attempts = reconnect_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    async def subscribe(
        self,
        resource: Union[str, ResourceSpec],
        parent_id: str,
        callback: EventCallback,
        on_state: Optional[StateCallback] = None,
    ) -> Subscription:
        spec = resource if isinstance(resource, ResourceSpec) else get_resource(resource)
        if not parent_id:
            raise ValueError("parent_id is required to subscribe")
        subscription = Subscription(self, spec, parent_id, callback, on_state)
        return await subscription.start()

    async def publish(self, event: ChangeEvent, parent_id: str) -> int:
        spec = get_resource(event.resource)
        return await self.redis.publish(spec.channel(parent_id), encode_event(event))
