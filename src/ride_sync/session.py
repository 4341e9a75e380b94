"""Live synchronization of one ride's authoritative state for a single consumer.

A ``RideSyncSession`` belongs to one consumer view (a driver or parent UI).
Each ``open`` binds it to a ride and a user through two subscriptions: ride
row updates and inserted ride messages. Both are tagged with a fresh
generation token, so events still in flight from a superseded ride never
touch the state of the current one.

Nothing raises out of the callbacks. Subscription failures degrade
``status``; teardown failures are logged; stale and malformed events are
dropped.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from ride_sync.channels import (
    TABLE_MESSAGES,
    TABLE_RIDES,
    ChangeEvent,
    ChangeType,
    ChannelHandle,
    EventFilter,
    LifecycleState,
    RowPredicate,
    message_channel_name,
    ride_channel_name,
)
from ride_sync.exceptions import PayloadValidationError
from ride_sync.lifecycle import CancellationToken, SubscriptionGroup
from ride_sync.models import Message, RideSnapshot
from ride_sync.notifications import NotificationSink
from ride_sync.provider import ChannelProvider
from ride_sync.sync_logging import log_ride_context
from ride_sync.utils.async_helpers import run_coroutine_safe

logger = logging.getLogger(__name__)

STATUS_UPDATED_TITLE = "Ride Status Updated"
NEW_MESSAGE_TITLE = "New Message"
NEW_MESSAGE_DESCRIPTION = "You have received a new message"


class ConnectionStatus(str, Enum):
    """Connection state of a session, as shown to the consumer."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    ConnectionStatus.CONNECTED: "Live",
    ConnectionStatus.CONNECTING: "Connecting",
    ConnectionStatus.DISCONNECTED: "Offline",
}


@dataclass(eq=False)
class ActiveSession:
    """One open/close lifecycle binding a ride and a user to two subscriptions."""

    ride_id: str
    user_id: str
    group: SubscriptionGroup
    ride_handle: ChannelHandle | None = None
    message_handle: ChannelHandle | None = None
    failed: bool = False
    closed: bool = False

    @property
    def token(self) -> int:
        return self.group.token

    def accepts(self, handle: ChannelHandle) -> bool:
        return not self.closed and self.group.is_current(handle)


RefreshListener = Callable[[], None]
StatusListener = Callable[[ConnectionStatus], None]
UpdateListener = Callable[[datetime], None]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RideSyncSession:
    """Keeps a consumer's view of one ride consistent with the ride store."""

    def __init__(
        self,
        provider: ChannelProvider,
        sink: NotificationSink,
        clock: Clock = _utcnow,
    ) -> None:
        self._provider = provider
        self._sink = sink
        self._clock = clock
        self._current: ActiveSession | None = None
        self._status = ConnectionStatus.DISCONNECTED
        self._last_update: datetime | None = None
        self._refresh_count = 0
        self._refresh_listeners: list[RefreshListener] = []
        self._status_listeners: list[StatusListener] = []
        self._update_listeners: list[UpdateListener] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending_releases: set[asyncio.Future[object]] = set()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def last_update(self) -> datetime | None:
        return self._last_update

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    @property
    def active(self) -> ActiveSession | None:
        return self._current

    def add_refresh_listener(self, listener: RefreshListener) -> None:
        self._refresh_listeners.append(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_update_listener(self, listener: UpdateListener) -> None:
        self._update_listeners.append(listener)

    def open(
        self,
        ride_id: str | None,
        user_id: str | None,
        cancel_token: CancellationToken | None = None,
    ) -> ActiveSession | None:
        """Subscribe to a ride's row changes and messages.

        Returns None without touching any state when either id is missing.
        Any session this consumer already has open is closed first. If the
        provider raises while subscribing, the new session is closed again and
        status ends at disconnected.
        """
        if not ride_id or not user_id:
            return None

        self.close()
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        session = ActiveSession(
            ride_id=ride_id,
            user_id=user_id,
            group=SubscriptionGroup(cancel_token=cancel_token or CancellationToken()),
        )
        self._current = session
        self._set_status(ConnectionStatus.CONNECTING)

        with log_ride_context(ride_id, user_id=user_id, session_token=session.token):
            try:
                self._subscribe_channels(session)
            except Exception as e:
                logger.warning(f"Failed to open ride channels for generation {session.token}: {e}")
                session.failed = True
                self.close(session)
                return session

            logger.info(f"Opened ride session generation {session.token}")
        return session

    def _subscribe_channels(self, session: ActiveSession) -> None:
        ride_id = session.ride_id
        session.ride_handle = session.group.add(
            self._provider.subscribe(
                ride_channel_name(ride_id),
                EventFilter(
                    event=ChangeType.UPDATE,
                    table=TABLE_RIDES,
                    predicate=RowPredicate("id", ride_id),
                ),
                token=session.token,
            )
        )
        self._provider.on_event(session.ride_handle, self._on_ride_event)
        self._provider.on_lifecycle(session.ride_handle, self._on_ride_lifecycle)

        session.message_handle = session.group.add(
            self._provider.subscribe(
                message_channel_name(ride_id),
                EventFilter(
                    event=ChangeType.INSERT,
                    table=TABLE_MESSAGES,
                    predicate=RowPredicate("ride_id", ride_id),
                ),
                token=session.token,
            )
        )
        self._provider.on_event(session.message_handle, self._on_message_event)
        self._provider.on_lifecycle(session.message_handle, self._on_message_lifecycle)

    def close(self, session: ActiveSession | None = None) -> None:
        """Tear down a session without waiting for the provider.

        Safe to call from synchronous teardown paths and any number of times.
        Unsubscription is scheduled best-effort; its failures are only logged.
        """
        target = session or self._current
        if target is None or target.closed:
            return

        target.closed = True
        target.group.cancel()
        release = run_coroutine_safe(
            target.group.release(self._provider), self._loop, fallback_sync=True
        )
        if isinstance(release, asyncio.Future):
            self._pending_releases.add(release)
            release.add_done_callback(self._pending_releases.discard)

        logger.info(f"Closed ride session generation {target.token} for ride {target.ride_id}")
        if target is self._current:
            self._current = None
            self._set_status(ConnectionStatus.DISCONNECTED)

    async def aclose(self, session: ActiveSession | None = None) -> None:
        """Close and wait until the provider has processed the unsubscriptions."""
        self.close(session)
        await self.wait_released()

    async def wait_released(self) -> None:
        pending = list(self._pending_releases)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def on_ride_changed(self, old: RideSnapshot, new: RideSnapshot) -> None:
        """Apply one ride update: status changes notify and refresh, moves only touch the clock."""
        if old.status_changed(new):
            self._notify(
                STATUS_UPDATED_TITLE,
                f"Ride status changed from {old.status.value} to {new.status.value}",
            )
            self._request_refresh()

        if old.location_changed(new):
            self._touch()

    def on_message_received(self, message: Message) -> None:
        session = self._current
        if session is None or message.sender_id == session.user_id:
            return

        self._notify(NEW_MESSAGE_TITLE, NEW_MESSAGE_DESCRIPTION)
        self._touch()

    def _on_ride_event(self, handle: ChannelHandle, event: ChangeEvent) -> None:
        if not self._accepts(handle):
            return

        try:
            old = RideSnapshot.from_row(event.old)
            new = RideSnapshot.from_row(event.new)
        except PayloadValidationError as e:
            logger.warning(f"Dropping invalid ride update on {handle.channel_name}: {e.details}")
            return

        self.on_ride_changed(old, new)

    def _on_message_event(self, handle: ChannelHandle, event: ChangeEvent) -> None:
        if not self._accepts(handle):
            return

        try:
            message = Message.from_row(event.new)
        except PayloadValidationError as e:
            logger.warning(f"Dropping invalid message on {handle.channel_name}: {e.details}")
            return

        self.on_message_received(message)

    def _on_ride_lifecycle(self, handle: ChannelHandle, state: LifecycleState) -> None:
        if not self._accepts(handle):
            return
        session = self._current
        if session is None or session.failed:
            return

        if state == LifecycleState.SUBSCRIBED:
            self._set_status(ConnectionStatus.CONNECTED)
            logger.info(f"Connected to ride updates on {handle.channel_name}")
        elif state.is_failure:
            session.failed = True
            self._set_status(ConnectionStatus.DISCONNECTED)
            logger.warning(f"Ride channel {handle.channel_name} failed: {state.value}")

    def _on_message_lifecycle(self, handle: ChannelHandle, state: LifecycleState) -> None:
        if not self._accepts(handle):
            return
        if state.is_failure:
            logger.warning(f"Message channel {handle.channel_name} failed: {state.value}")

    def _accepts(self, handle: ChannelHandle) -> bool:
        session = self._current
        if session is None or not session.accepts(handle):
            logger.debug(
                f"Discarding stale event from {handle.channel_name} (generation {handle.token})"
            )
            return False
        return True

    def _touch(self) -> None:
        now = self._clock()
        # Clamp so consumers never see the timestamp move backwards.
        if self._last_update is not None and now < self._last_update:
            return
        self._last_update = now
        self._notify_listeners(self._update_listeners, "Update", now)

    def _notify(self, title: str, description: str) -> None:
        try:
            self._sink.notify(title, description)
        except Exception as e:
            logger.warning(f"Notification sink rejected {title!r}: {e}")

    def _request_refresh(self) -> None:
        self._refresh_count += 1
        self._notify_listeners(self._refresh_listeners, "Refresh")

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        self._notify_listeners(self._status_listeners, "Status", status)

    @staticmethod
    def _notify_listeners(listeners: list[Callable[..., None]], kind: str, *args: object) -> None:
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception as e:
                logger.warning(f"{kind} listener failed: {e}")
