"""Live tracking event definitions."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types pushed to shipment observers."""

    LOCATION_UPDATE = "location_update"
    STATUS_UPDATE = "status_update"
    ADVISORY = "advisory"
    DELIVERED = "delivered"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalize aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TrackingEvent(BaseModel):
    """Event fanned out to every observer of a shipment."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    shipment_id: UUID
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
    origin_node: Optional[str] = None  # node that accepted the publish

    def to_frame(self) -> Dict[str, Any]:
        """Wire frame sent to subscribed connections."""
        return {
            "type": self.event_type.value,
            "shipmentId": str(self.shipment_id),
            "payload": self.payload,
        }


def deserialize_event(event_data: Dict[str, Any]) -> TrackingEvent:
    """Deserialize event from dictionary."""
    return TrackingEvent.model_validate(event_data)
