"""Channel definitions and change-event envelopes for table subscriptions."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Tables
TABLE_RIDES = "rides"
TABLE_MESSAGES = "messages"
TABLE_NOTIFICATIONS = "notifications"

DEFAULT_SCHEMA = "public"


def ride_channel_name(ride_id: str) -> str:
    return f"ride:{ride_id}"


def message_channel_name(ride_id: str) -> str:
    return f"messages:{ride_id}"


def notification_channel_name(user_id: str) -> str:
    return f"notifications:{user_id}"


class ChangeType(str, Enum):
    """Row change kinds a channel can listen for."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"


class LifecycleState(str, Enum):
    """Subscription lifecycle signals reported by a provider."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"

    @property
    def is_failure(self) -> bool:
        return self in {LifecycleState.CHANNEL_ERROR, LifecycleState.TIMED_OUT}


@dataclass(frozen=True)
class RowPredicate:
    """Equality filter on one column, rendered as ``column=eq.value``."""

    column: str
    value: str

    @classmethod
    def parse(cls, expression: str) -> "RowPredicate":
        column, sep, value = expression.partition("=eq.")
        if not sep or not column or not value:
            raise ValueError(f"Unsupported row predicate: {expression!r}")
        return cls(column=column, value=value)

    def matches(self, row: dict[str, Any] | None) -> bool:
        if not row or self.column not in row:
            return False
        cell = row[self.column]
        return cell is not None and str(cell) == self.value

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"


@dataclass(frozen=True)
class EventFilter:
    """Which row changes a channel delivers."""

    event: ChangeType
    table: str
    predicate: RowPredicate
    schema: str = DEFAULT_SCHEMA

    def accepts(self, event: "ChangeEvent") -> bool:
        return (
            event.event == self.event
            and event.table == self.table
            and event.schema_name == self.schema
            and self.predicate.matches(event.new)
        )


class ChangeEvent(BaseModel):
    """Raw change payload as delivered by the provider.

    ``new`` is the row after the change; ``old`` the row before it, absent
    for inserts.
    """

    event: ChangeType
    table: str
    schema_name: str = Field(default=DEFAULT_SCHEMA, alias="schema")
    new: dict[str, Any] = Field(default_factory=dict, alias="record")
    old: dict[str, Any] | None = Field(default=None, alias="old_record")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "ChangeEvent":
        """Parse a wire document ``{"type", "schema", "table", "record", "old_record"}``."""
        return cls.model_validate({**document, "event": document.get("type")})

    def to_document(self) -> dict[str, Any]:
        return {
            "type": self.event.value,
            "schema": self.schema_name,
            "table": self.table,
            "record": self.new,
            "old_record": self.old,
        }


@dataclass(eq=False)
class ChannelHandle:
    """Opaque subscription handle.

    ``token`` is the generation of the session that opened the subscription;
    providers hand the handle back to every callback so stale deliveries can
    be recognised.
    """

    channel_name: str
    event_filter: EventFilter
    token: int | None = None
    closed: bool = field(default=False)
