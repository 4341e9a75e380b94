"""User-facing notification plumbing.

``ToastQueue`` is the in-process notification sink: a global cap on visible
alerts where each new alert takes the visible slot while older ones stay
addressable by id until dismissed or aged out. ``NotificationFeed`` mirrors a
user's notifications table into a sink in real time.
"""

import asyncio
import itertools
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from ride_sync.channels import (
    TABLE_NOTIFICATIONS,
    ChangeEvent,
    ChangeType,
    ChannelHandle,
    EventFilter,
    LifecycleState,
    RowPredicate,
    notification_channel_name,
)
from ride_sync.exceptions import PayloadValidationError
from ride_sync.lifecycle import CancellationToken, SubscriptionGroup
from ride_sync.models import UserNotification
from ride_sync.provider import ChannelProvider
from ride_sync.utils.async_helpers import run_coroutine_safe

logger = logging.getLogger(__name__)

Variant = Literal["default", "destructive"]

DEFAULT_TOAST_LIMIT = 1
DEFAULT_TOAST_RETENTION = 20


class NotificationSink(Protocol):
    """Fire-and-forget destination for user-facing alerts."""

    def notify(self, title: str, description: str = "", variant: Variant = "default") -> str: ...


class Notification(BaseModel):
    """A single alert issued through a ToastQueue."""

    id: str
    title: str
    description: str = ""
    variant: Variant = "default"
    open: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


ToastListener = Callable[[list[Notification]], None]


class ToastQueue:
    """Notification sink with a global cap on visible alerts."""

    def __init__(
        self, limit: int = DEFAULT_TOAST_LIMIT, retention: int = DEFAULT_TOAST_RETENTION
    ) -> None:
        if limit < 1:
            raise ValueError(f"Toast limit must be at least 1, got {limit}")
        if retention < limit:
            raise ValueError(f"Toast retention must be at least {limit}, got {retention}")
        self.limit = limit
        self.retention = retention
        self._ids = itertools.count(1)
        self._issued: dict[str, Notification] = {}
        self._visible: list[str] = []
        self._listeners: list[ToastListener] = []

    @property
    def visible(self) -> list[Notification]:
        return [self._issued[toast_id] for toast_id in self._visible]

    def get(self, toast_id: str) -> Notification | None:
        return self._issued.get(toast_id)

    def notify(self, title: str, description: str = "", variant: Variant = "default") -> str:
        toast_id = str(next(self._ids))
        self._issued[toast_id] = Notification(
            id=toast_id, title=title, description=description, variant=variant
        )
        self._visible = [toast_id, *self._visible][: self.limit]
        self._prune()
        self._emit()
        return toast_id

    def update(
        self,
        toast_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        variant: Variant | None = None,
    ) -> bool:
        toast = self._issued.get(toast_id)
        if toast is None:
            return False
        changes = {
            key: value
            for key, value in (("title", title), ("description", description), ("variant", variant))
            if value is not None
        }
        self._issued[toast_id] = toast.model_copy(update=changes)
        self._emit()
        return True

    def dismiss(self, toast_id: str | None = None) -> None:
        """Close one toast, or every toast when no id is given."""
        targets = [toast_id] if toast_id is not None else list(self._issued)
        for target in targets:
            toast = self._issued.get(target)
            if toast is not None and toast.open:
                self._issued[target] = toast.model_copy(update={"open": False})
        self._prune()
        self._emit()

    def remove(self, toast_id: str | None = None) -> None:
        if toast_id is None:
            self._issued.clear()
            self._visible = []
        else:
            self._issued.pop(toast_id, None)
            self._visible = [t for t in self._visible if t != toast_id]
        self._emit()

    def subscribe(self, listener: ToastListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _prune(self) -> None:
        """Forget dismissed toasts once hidden, and the oldest hidden ones past retention."""
        hidden = [t for t in self._issued if t not in self._visible]
        for toast_id in hidden:
            if not self._issued[toast_id].open:
                del self._issued[toast_id]
        hidden = [t for t in self._issued if t not in self._visible]
        for toast_id in hidden[: max(len(self._issued) - self.retention, 0)]:
            del self._issued[toast_id]

    def _emit(self) -> None:
        visible = self.visible
        for listener in list(self._listeners):
            try:
                listener(visible)
            except Exception as e:
                logger.warning(f"Toast listener failed: {e}")


class NotificationFeed:
    """Live mirror of one user's unread notifications.

    Follows the same teardown rules as ``RideSyncSession``: ``close`` never
    blocks and never raises, and releases are scheduled on the loop that was
    running when the feed was opened.
    """

    def __init__(self, provider: ChannelProvider, sink: NotificationSink) -> None:
        self._provider = provider
        self._sink = sink
        self._group: SubscriptionGroup | None = None
        self._user_id: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending_releases: set[asyncio.Future[object]] = set()
        self.unread: list[UserNotification] = []

    @property
    def active(self) -> bool:
        return self._group is not None

    def open(
        self,
        user_id: str | None,
        unread: Iterable[UserNotification] = (),
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        """Start mirroring ``user_id``'s notifications, seeded with ``unread``.

        Returns False when there is no user or the provider refuses the
        subscription.
        """
        if not user_id:
            return False

        self.close()
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        group = SubscriptionGroup(cancel_token=cancel_token or CancellationToken())
        self._group = group
        self._user_id = user_id
        self.unread = sorted(
            unread,
            key=lambda n: n.created_at or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )

        try:
            handle = group.add(
                self._provider.subscribe(
                    notification_channel_name(user_id),
                    EventFilter(
                        event=ChangeType.INSERT,
                        table=TABLE_NOTIFICATIONS,
                        predicate=RowPredicate("user_id", user_id),
                    ),
                    token=group.token,
                )
            )
            self._provider.on_event(handle, self._on_event)
            self._provider.on_lifecycle(handle, self._on_lifecycle)
        except Exception as e:
            logger.warning(f"Failed to open notification feed for user {user_id}: {e}")
            self.close()
            return False

        logger.debug(f"Notification feed opened for user {user_id} (generation {group.token})")
        return True

    def close(self) -> None:
        group = self._group
        if group is None:
            return
        group.cancel()
        self._group = None
        release = run_coroutine_safe(group.release(self._provider), self._loop, fallback_sync=True)
        if isinstance(release, asyncio.Future):
            self._pending_releases.add(release)
            release.add_done_callback(self._pending_releases.discard)
        logger.debug(f"Notification feed closed for user {self._user_id}")

    async def aclose(self) -> None:
        """Close and wait until the provider has processed the unsubscription."""
        self.close()
        await self.wait_released()

    async def wait_released(self) -> None:
        pending = list(self._pending_releases)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def mark_read(self, notification_id: str) -> None:
        self.unread = [n for n in self.unread if n.id != notification_id]

    def _on_event(self, handle: ChannelHandle, event: ChangeEvent) -> None:
        group = self._group
        if group is None or not group.is_current(handle):
            return

        try:
            notification = UserNotification.from_row(event.new)
        except PayloadValidationError as e:
            logger.warning(f"Dropping invalid notification payload: {e.details}")
            return

        self.unread = [notification, *self.unread]
        try:
            self._sink.notify(
                notification.title,
                notification.message,
                variant="destructive" if notification.type == "error" else "default",
            )
        except Exception as e:
            logger.warning(f"Notification sink rejected {notification.title!r}: {e}")

    def _on_lifecycle(self, handle: ChannelHandle, state: LifecycleState) -> None:
        group = self._group
        if group is None or not group.is_current(handle):
            return
        if state.is_failure:
            logger.warning(f"Notification channel {handle.channel_name} failed: {state.value}")
