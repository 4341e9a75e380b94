"""Generation tokens, cancellation and teardown for channel subscriptions."""

import itertools
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

from ride_sync.channels import ChannelHandle
from ride_sync.exceptions import TeardownFailure
from ride_sync.provider import ChannelProvider

logger = logging.getLogger(__name__)

_generations: Iterator[int] = itertools.count(1)


def next_generation() -> int:
    """Return a process-wide, strictly increasing session generation."""
    return next(_generations)


class CancellationToken:
    """One-way flag checked by every callback before it mutates state."""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"


@dataclass(eq=False)
class SubscriptionGroup:
    """Handles opened by one open/close lifecycle, tagged with its generation."""

    token: int = field(default_factory=next_generation)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    handles: list[ChannelHandle] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def add(self, handle: ChannelHandle) -> ChannelHandle:
        self.handles.append(handle)
        return handle

    def is_current(self, handle: ChannelHandle) -> bool:
        """True while the handle belongs to this group and teardown has not begun."""
        return not self.cancel_token.cancelled and handle.token == self.token

    def cancel(self) -> None:
        self.cancel_token.cancel()

    async def release(self, provider: ChannelProvider) -> list[TeardownFailure]:
        """Unsubscribe every handle, logging and collecting failures.

        Never raises: the group is being discarded regardless of whether the
        provider acknowledges the unsubscription.
        """
        failures: list[TeardownFailure] = []
        handles, self.handles = self.handles, []
        for handle in handles:
            try:
                await provider.unsubscribe(handle)
            except Exception as e:
                failure = TeardownFailure(
                    f"Failed to unsubscribe {handle.channel_name}",
                    details={"channel": handle.channel_name, "error": str(e)},
                )
                logger.warning(
                    "Error unsubscribing channel %s (generation %s): %s",
                    handle.channel_name,
                    self.token,
                    e,
                )
                failures.append(failure)
        return failures
