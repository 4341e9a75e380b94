"""Typed row images for rides, ride messages and user notifications.

Change payloads arrive as untyped dicts from the channel provider. They are
parsed here, at the boundary, so session logic only ever sees validated
models.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ride_sync.exceptions import PayloadValidationError

RowModel = TypeVar("RowModel", bound="RowImage")


class RideStatus(str, Enum):
    """Ride lifecycle states."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {RideStatus.COMPLETED, RideStatus.CANCELLED}


class RowImage(BaseModel):
    """Immutable image of a table row at one point in time."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    @classmethod
    def from_row(cls: type[RowModel], row: dict[str, Any] | None) -> RowModel:
        """Parse a raw row dict, raising PayloadValidationError on bad data."""
        if row is None:
            raise PayloadValidationError(f"{cls.__name__} payload is missing")
        try:
            return cls.model_validate(row)
        except PydanticValidationError as e:
            raise PayloadValidationError(
                f"Invalid {cls.__name__} payload",
                details={"errors": e.errors(include_url=False)},
            ) from e


class RideSnapshot(RowImage):
    """Ride row as delivered in a change event (old or new image)."""

    id: str = Field(min_length=1)
    status: RideStatus
    current_location_lat: float | None = None
    current_location_lng: float | None = None
    cancelled_by: str | None = None
    cancelled_by_type: Literal["parent", "driver"] | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def location(self) -> tuple[float, float] | None:
        if self.current_location_lat is None or self.current_location_lng is None:
            return None
        return (self.current_location_lat, self.current_location_lng)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def status_changed(self, other: "RideSnapshot") -> bool:
        return self.status != other.status

    def location_changed(self, other: "RideSnapshot") -> bool:
        # Compared field by field so a coordinate appearing or vanishing counts.
        return (
            self.current_location_lat != other.current_location_lat
            or self.current_location_lng != other.current_location_lng
        )


class Message(RowImage):
    """Chat message attached to a ride."""

    id: str | None = None
    ride_id: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    content: str = ""
    created_at: datetime | None = None


class UserNotification(RowImage):
    """Row of the per-user notifications table."""

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    title: str
    message: str = ""
    type: str = "info"
    read: bool = False
    created_at: datetime | None = None
