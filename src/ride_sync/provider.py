"""Channel provider contract consumed by sessions."""

from collections.abc import Callable
from typing import Protocol

from ride_sync.channels import ChangeEvent, ChannelHandle, EventFilter, LifecycleState

EventCallback = Callable[[ChannelHandle, ChangeEvent], None]
LifecycleCallback = Callable[[ChannelHandle, LifecycleState], None]


class ChannelProvider(Protocol):
    """Subscribe/unsubscribe primitives over filtered table-change channels.

    Implementations must not invoke any callback before the caller of
    ``subscribe`` yields to the event loop, so callbacks registered right
    after ``subscribe`` returns observe every event and lifecycle signal.
    """

    def subscribe(
        self, channel_name: str, event_filter: EventFilter, token: int | None = None
    ) -> ChannelHandle: ...

    def on_event(self, handle: ChannelHandle, callback: EventCallback) -> None: ...

    def on_lifecycle(self, handle: ChannelHandle, callback: LifecycleCallback) -> None: ...

    async def unsubscribe(self, handle: ChannelHandle) -> None: ...
