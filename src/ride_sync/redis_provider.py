"""Redis pub/sub transport for table-change channels."""

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ride_sync.channels import (
    DEFAULT_SCHEMA,
    ChangeEvent,
    ChangeType,
    ChannelHandle,
    EventFilter,
    LifecycleState,
)
from ride_sync.exceptions import ConnectionFailure
from ride_sync.provider import EventCallback, LifecycleCallback

if TYPE_CHECKING:
    from ride_sync.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_PREFIX = "realtime"
DEFAULT_SUBSCRIBE_TIMEOUT = 10.0


def table_channel(prefix: str, schema: str, table: str) -> str:
    """Redis channel carrying change documents for one table."""
    return f"{prefix}:{schema}:{table}"


@dataclass(eq=False)
class _Subscription:
    handle: ChannelHandle
    event_callbacks: list[EventCallback] = field(default_factory=list)
    lifecycle_callbacks: list[LifecycleCallback] = field(default_factory=list)
    task: asyncio.Task[None] | None = None
    pubsub: Any = None


class RedisChannelProvider:
    """Channel provider backed by one Redis pub/sub connection per handle.

    A change-data publisher writes JSON change documents to
    ``{prefix}:{schema}:{table}``; each handle listens on its table's
    channel and forwards the documents its filter accepts. A failed
    subscription is reported once through the lifecycle callbacks and is
    not retried.
    """

    def __init__(
        self,
        redis_client: "redis.Redis",
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
        subscribe_timeout: float = DEFAULT_SUBSCRIBE_TIMEOUT,
    ) -> None:
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix
        self.subscribe_timeout = subscribe_timeout
        self._subscriptions: dict[int, _Subscription] = {}

    @classmethod
    def from_settings(cls, redis_client: "redis.Redis", settings: "Settings") -> "RedisChannelProvider":
        return cls(
            redis_client,
            channel_prefix=settings.realtime.channel_prefix,
            subscribe_timeout=settings.realtime.subscribe_timeout_seconds,
        )

    @property
    def active_handles(self) -> list[ChannelHandle]:
        return [sub.handle for sub in self._subscriptions.values()]

    def subscribe(
        self, channel_name: str, event_filter: EventFilter, token: int | None = None
    ) -> ChannelHandle:
        handle = ChannelHandle(channel_name=channel_name, event_filter=event_filter, token=token)
        subscription = _Subscription(handle=handle)
        self._subscriptions[id(handle)] = subscription
        # The task first runs on the next loop iteration, after the caller
        # has registered its callbacks.
        subscription.task = asyncio.create_task(
            self._listen(subscription), name=f"ride-sync:{channel_name}"
        )
        return handle

    def on_event(self, handle: ChannelHandle, callback: EventCallback) -> None:
        subscription = self._subscriptions.get(id(handle))
        if subscription is not None:
            subscription.event_callbacks.append(callback)

    def on_lifecycle(self, handle: ChannelHandle, callback: LifecycleCallback) -> None:
        subscription = self._subscriptions.get(id(handle))
        if subscription is not None:
            subscription.lifecycle_callbacks.append(callback)

    async def unsubscribe(self, handle: ChannelHandle) -> None:
        subscription = self._subscriptions.pop(id(handle), None)
        handle.closed = True
        if subscription is None:
            return

        if subscription.task is not None:
            subscription.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await subscription.task

        await self._close_pubsub(subscription)
        self._emit_lifecycle(subscription, LifecycleState.CLOSED)
        logger.debug(f"Unsubscribed from {handle.channel_name}")

    async def close(self) -> None:
        """Unsubscribe every open handle."""
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription.handle)

    async def _listen(self, subscription: _Subscription) -> None:
        handle = subscription.handle
        event_filter = handle.event_filter
        redis_channel = table_channel(self.channel_prefix, event_filter.schema, event_filter.table)

        try:
            await self._subscribe(subscription, redis_channel)
        except ConnectionFailure as e:
            logger.error(f"Subscription to {handle.channel_name} failed: {e.message}")
            self._emit_lifecycle(subscription, LifecycleState(e.reason))
            await self._close_pubsub(subscription)
            return

        self._emit_lifecycle(subscription, LifecycleState.SUBSCRIBED)
        logger.info(f"Subscribed {handle.channel_name} to Redis channel {redis_channel}")

        try:
            async for message in subscription.pubsub.listen():
                if message.get("type") != "message":
                    continue
                self._dispatch(subscription, message.get("data"))
        except RedisError as e:
            logger.error(f"Redis disconnected while listening on {handle.channel_name}: {e}")
            self._emit_lifecycle(subscription, LifecycleState.CHANNEL_ERROR)

    async def _subscribe(self, subscription: _Subscription, redis_channel: str) -> None:
        channel_name = subscription.handle.channel_name
        try:
            subscription.pubsub = self.redis_client.pubsub()
            await asyncio.wait_for(
                subscription.pubsub.subscribe(redis_channel), timeout=self.subscribe_timeout
            )
        except TimeoutError as e:
            raise ConnectionFailure(
                f"Timed out after {self.subscribe_timeout}s subscribing to {redis_channel}",
                channel_name=channel_name,
                reason=LifecycleState.TIMED_OUT.value,
            ) from e
        except RedisError as e:
            raise ConnectionFailure(
                f"Redis error subscribing to {redis_channel}: {e}",
                channel_name=channel_name,
                reason=LifecycleState.CHANNEL_ERROR.value,
            ) from e

    def _dispatch(self, subscription: _Subscription, data: Any) -> None:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            event = ChangeEvent.from_document(json.loads(data))
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Invalid JSON from Redis: {data!r}")
            return
        except ValidationError as e:
            logger.warning(f"Invalid change document from Redis: {e.error_count()} errors")
            return

        if not subscription.handle.event_filter.accepts(event):
            return

        for callback in list(subscription.event_callbacks):
            try:
                callback(subscription.handle, event)
            except Exception as e:
                logger.warning(f"Error handling change on {subscription.handle.channel_name}: {e}")

    def _emit_lifecycle(self, subscription: _Subscription, state: LifecycleState) -> None:
        for callback in list(subscription.lifecycle_callbacks):
            try:
                callback(subscription.handle, state)
            except Exception as e:
                logger.warning(
                    f"Error handling {state.value} on {subscription.handle.channel_name}: {e}"
                )

    async def _close_pubsub(self, subscription: _Subscription) -> None:
        pubsub = subscription.pubsub
        subscription.pubsub = None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
        except RedisError as e:
            logger.warning(f"Error closing pub/sub for {subscription.handle.channel_name}: {e}")


class RedisChangePublisher:
    """Publishes table change documents for RedisChannelProvider listeners."""

    def __init__(
        self, redis_client: "redis.Redis", channel_prefix: str = DEFAULT_CHANNEL_PREFIX
    ) -> None:
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix

    async def publish_change(
        self,
        table: str,
        event: ChangeType,
        record: dict[str, Any],
        old_record: dict[str, Any] | None = None,
        schema: str = DEFAULT_SCHEMA,
    ) -> int:
        """Publish one change; returns the number of Redis subscribers reached."""
        change = ChangeEvent(event=event, table=table, schema=schema, new=record, old=old_record)
        channel = table_channel(self.channel_prefix, schema, table)
        receivers: int = await self.redis_client.publish(
            channel, json.dumps(change.to_document(), default=str)
        )
        return receivers
