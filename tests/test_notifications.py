import asyncio
import logging

import pytest

from ride_sync.channels import TABLE_NOTIFICATIONS, ChangeType, LifecycleState
from ride_sync.lifecycle import CancellationToken
from ride_sync.models import UserNotification
from ride_sync.notifications import NotificationFeed, ToastQueue
from tests.factories import (
    FakeChannelProvider,
    RefusingChannelProvider,
    notification_insert,
    notification_row,
)


@pytest.mark.unit
class TestToastQueue:
    def test_default_limit_is_one(self):
        assert ToastQueue().limit == 1

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            ToastQueue(limit=0)

    def test_new_toast_takes_the_visible_slot(self):
        queue = ToastQueue()

        first = queue.notify("Ride Status Updated", "Ride status changed from scheduled to accepted")
        second = queue.notify("New Message", "You have received a new message")

        assert [t.id for t in queue.visible] == [second]
        assert queue.get(first) is not None

    def test_visible_newest_first_up_to_limit(self):
        queue = ToastQueue(limit=2)

        ids = [queue.notify(f"toast {i}") for i in range(3)]

        assert [t.id for t in queue.visible] == [ids[2], ids[1]]

    def test_ids_are_sequential(self):
        queue = ToastQueue()
        assert [queue.notify("a"), queue.notify("b")] == ["1", "2"]

    def test_update_displaced_toast(self):
        queue = ToastQueue()
        first = queue.notify("Ride Status Updated")
        queue.notify("New Message")

        assert queue.update(first, description="Ride status changed from accepted to cancelled")
        assert queue.get(first).description == "Ride status changed from accepted to cancelled"
        assert queue.get(first).title == "Ride Status Updated"

    def test_update_unknown_toast(self):
        assert ToastQueue().update("99", title="x") is False

    def test_dismiss_one(self):
        queue = ToastQueue()
        toast_id = queue.notify("New Message")

        queue.dismiss(toast_id)

        assert queue.get(toast_id).open is False
        assert [t.id for t in queue.visible] == [toast_id]

    def test_dismiss_all(self):
        queue = ToastQueue(limit=3)
        ids = [queue.notify(str(i)) for i in range(3)]

        queue.dismiss()

        assert all(queue.get(i).open is False for i in ids)

    def test_remove(self):
        queue = ToastQueue(limit=2)
        first = queue.notify("a")
        second = queue.notify("b")

        queue.remove(second)
        assert [t.id for t in queue.visible] == [first]

        queue.remove()
        assert queue.visible == []
        assert queue.get(first) is None

    def test_variant(self):
        queue = ToastQueue()
        toast_id = queue.notify("Payment failed", variant="destructive")
        assert queue.get(toast_id).variant == "destructive"

    def test_listeners(self):
        queue = ToastQueue()
        snapshots = []
        unsubscribe = queue.subscribe(snapshots.append)

        queue.notify("a")
        unsubscribe()
        queue.notify("b")
        unsubscribe()

        assert len(snapshots) == 1
        assert snapshots[0][0].title == "a"

    def test_rejects_retention_below_limit(self):
        with pytest.raises(ValueError):
            ToastQueue(limit=3, retention=2)

    def test_dismissed_hidden_toast_is_forgotten(self):
        queue = ToastQueue()
        first = queue.notify("Ride Status Updated")
        second = queue.notify("New Message")

        queue.dismiss(first)

        assert queue.get(first) is None
        assert [t.id for t in queue.visible] == [second]

    def test_dismissed_toast_is_forgotten_once_displaced(self):
        queue = ToastQueue()
        first = queue.notify("Ride Status Updated")
        queue.dismiss(first)

        queue.notify("New Message")

        assert queue.get(first) is None

    def test_retention_caps_hidden_toasts(self):
        queue = ToastQueue(limit=1, retention=3)

        ids = [queue.notify(f"toast {i}") for i in range(5)]

        assert [queue.get(i) is not None for i in ids] == [False, False, True, True, True]
        assert [t.id for t in queue.visible] == [ids[-1]]

    def test_failing_listener_is_logged(self, caplog):
        queue = ToastQueue()

        def broken(_):
            raise RuntimeError("render failed")

        queue.subscribe(broken)
        with caplog.at_level(logging.WARNING):
            toast_id = queue.notify("a")

        assert queue.get(toast_id) is not None
        assert "Toast listener failed: render failed" in caplog.text


@pytest.fixture
def feed(provider, sink) -> NotificationFeed:
    return NotificationFeed(provider, sink)


def seed(notification_id: str, created_at: str) -> UserNotification:
    return UserNotification.from_row(notification_row(id=notification_id, created_at=created_at))


@pytest.mark.unit
class TestNotificationFeed:
    def test_open_without_user_is_noop(self, feed, provider):
        assert feed.open(None) is False
        assert provider.handles == []
        assert not feed.active

    def test_open_subscribes_user_notifications(self, feed, provider):
        assert feed.open("user-9") is True

        handle = provider.handle_for("notifications:user-9")
        assert handle.event_filter.event == ChangeType.INSERT
        assert handle.event_filter.table == TABLE_NOTIFICATIONS
        assert str(handle.event_filter.predicate) == "user_id=eq.user-9"
        assert feed.active

    def test_seeds_unread_newest_first(self, feed):
        feed.open(
            "user-9",
            unread=[
                seed("n-1", "2025-03-10T07:00:00+00:00"),
                seed("n-2", "2025-03-10T08:00:00+00:00"),
            ],
        )

        assert [n.id for n in feed.unread] == ["n-2", "n-1"]

    def test_insert_prepends_and_notifies(self, feed, provider, sink):
        feed.open("user-9", unread=[seed("n-1", "2025-03-10T07:00:00+00:00")])

        provider.emit_event(
            provider.handle_for("notifications:user-9"),
            notification_insert(notification_row(id="n-2")),
        )

        assert [n.id for n in feed.unread] == ["n-2", "n-1"]
        assert sink.notifications == [("Ride accepted", "Your driver is on the way", "default")]

    def test_error_notification_is_destructive(self, feed, provider, sink):
        feed.open("user-9")

        provider.emit_event(
            provider.handle_for("notifications:user-9"),
            notification_insert(notification_row(type="error", title="Payment failed")),
        )

        assert sink.notifications[0][2] == "destructive"

    def test_invalid_payload_is_dropped(self, feed, provider, sink, caplog):
        feed.open("user-9")

        with caplog.at_level(logging.WARNING):
            provider.emit_event(
                provider.handle_for("notifications:user-9"),
                notification_insert({"user_id": "user-9"}),
            )

        assert sink.notifications == []
        assert "Dropping invalid notification payload" in caplog.text

    def test_mark_read(self, feed):
        feed.open("user-9", unread=[seed("n-1", "2025-03-10T07:00:00+00:00")])

        feed.mark_read("n-1")

        assert feed.unread == []

    def test_close_releases_and_ignores_late_events(self, feed, provider, sink):
        feed.open("user-9")
        handle = provider.handle_for("notifications:user-9")

        feed.close()
        feed.close()
        provider.emit_event(handle, notification_insert(notification_row()))

        assert provider.unsubscribed == [handle]
        assert sink.notifications == []
        assert not feed.active

    def test_reopen_ignores_previous_user(self, feed, provider, sink):
        feed.open("user-9")
        old_handle = provider.handle_for("notifications:user-9")
        feed.open("user-10")

        provider.emit_event(old_handle, notification_insert(notification_row()))

        assert provider.unsubscribed == [old_handle]
        assert sink.notifications == []

    def test_cancel_token(self, feed, provider, sink):
        token = CancellationToken()
        feed.open("user-9", cancel_token=token)

        token.cancel()
        provider.emit_event(
            provider.handle_for("notifications:user-9"),
            notification_insert(notification_row()),
        )

        assert sink.notifications == []

    def test_lifecycle_failure_is_logged(self, feed, provider, caplog):
        feed.open("user-9")

        with caplog.at_level(logging.WARNING):
            provider.emit_lifecycle(
                provider.handle_for("notifications:user-9"), LifecycleState.TIMED_OUT
            )

        assert "Notification channel notifications:user-9 failed: TIMED_OUT" in caplog.text

    @pytest.mark.asyncio
    async def test_close_under_running_loop(self, sink):
        provider = FakeChannelProvider()
        feed = NotificationFeed(provider, sink)
        feed.open("user-9")

        feed.close()
        await asyncio.sleep(0)

        assert len(provider.unsubscribed) == 1

    @pytest.mark.asyncio
    async def test_close_does_not_wait_for_provider(self, sink):
        provider = FakeChannelProvider()
        feed = NotificationFeed(provider, sink)
        feed.open("user-9")

        feed.close()

        assert provider.unsubscribed == []
        await feed.wait_released()
        assert len(provider.unsubscribed) == 1

    @pytest.mark.asyncio
    async def test_aclose_waits_for_release(self, sink, caplog):
        provider = FakeChannelProvider(fail_unsubscribe=True)
        feed = NotificationFeed(provider, sink)
        feed.open("user-9")

        with caplog.at_level(logging.WARNING):
            await feed.aclose()

        assert len(provider.unsubscribed) == 1
        assert not feed.active
        assert "Error unsubscribing channel notifications:user-9" in caplog.text

    @pytest.mark.asyncio
    async def test_close_from_worker_thread_runs_on_feed_loop(self, sink):
        provider = LoopRecordingProvider()
        feed = NotificationFeed(provider, sink)
        feed.open("user-9")
        loop = asyncio.get_running_loop()

        await loop.run_in_executor(None, feed.close)
        for _ in range(50):
            if provider.release_loops:
                break
            await asyncio.sleep(0.01)

        assert provider.release_loops == [loop]

    def test_sink_failure_is_logged(self, provider, caplog):
        class BrokenSink:
            def notify(self, title, description="", variant="default"):
                raise RuntimeError("toast overflow")

        feed = NotificationFeed(provider, BrokenSink())
        feed.open("user-9")

        with caplog.at_level(logging.WARNING):
            provider.emit_event(
                provider.handle_for("notifications:user-9"),
                notification_insert(notification_row(id="n-2")),
            )

        assert [n.id for n in feed.unread] == ["n-2"]
        assert "Notification sink rejected 'Ride accepted'" in caplog.text

    def test_subscribe_failure_returns_false(self, sink, caplog):
        provider = RefusingChannelProvider(refuse_prefix="notifications:")
        feed = NotificationFeed(provider, sink)

        with caplog.at_level(logging.WARNING):
            assert feed.open("user-9") is False

        assert not feed.active
        assert "Failed to open notification feed for user user-9" in caplog.text


class LoopRecordingProvider(FakeChannelProvider):
    """Records the event loop each unsubscribe runs on."""

    def __init__(self) -> None:
        super().__init__()
        self.release_loops: list[asyncio.AbstractEventLoop] = []

    async def unsubscribe(self, handle):
        self.release_loops.append(asyncio.get_running_loop())
        await super().unsubscribe(handle)
