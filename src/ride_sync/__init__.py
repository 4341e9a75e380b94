"""Real-time ride lifecycle synchronization for school transport consumers."""

from ride_sync.channels import ChangeEvent, ChangeType, ChannelHandle, EventFilter, LifecycleState
from ride_sync.lifecycle import CancellationToken
from ride_sync.models import Message, RideSnapshot, RideStatus, UserNotification
from ride_sync.notifications import Notification, NotificationFeed, NotificationSink, ToastQueue
from ride_sync.session import ActiveSession, ConnectionStatus, RideSyncSession

__all__ = [
    "ActiveSession",
    "CancellationToken",
    "ChangeEvent",
    "ChangeType",
    "ChannelHandle",
    "ConnectionStatus",
    "EventFilter",
    "LifecycleState",
    "Message",
    "Notification",
    "NotificationFeed",
    "NotificationSink",
    "RideSnapshot",
    "RideStatus",
    "RideSyncSession",
    "ToastQueue",
    "UserNotification",
]
