"""
Pydantic schemas for hub device lifecycle events.

The hub publishes one event per device creation or deletion, delivered
in batches as a JSON array.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

DEVICE_CREATED = "devicecreated"
DEVICE_DELETED = "devicedeleted"


class DeviceTwin(BaseModel):
    """Twin snapshot carried by an event (tags only are used)."""

    model_config = ConfigDict(extra="allow")

    tags: dict[str, Any] = Field(default_factory=dict)


class DeviceLifecycleData(BaseModel):
    """Payload of a lifecycle event."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    device_id: str = Field(..., alias="deviceId", min_length=1)
    hub_name: Optional[str] = Field(default=None, alias="hubName")
    op_type: str = Field(..., alias="opType")
    twin: Optional[DeviceTwin] = None

    @property
    def operation(self) -> str:
        return self.op_type.lower()

    @property
    def tags(self) -> dict[str, str]:
        if self.twin is None:
            return {}
        return {key: str(value) for key, value in self.twin.tags.items() if value is not None}


class DeviceLifecycleEvent(BaseModel):
    """One hub lifecycle event."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    event_type: Optional[str] = Field(default=None, alias="eventType")
    subject: Optional[str] = None
    data: DeviceLifecycleData

    def required_tags(self, required: list[str]) -> dict[str, str]:
        """Required tags from the event twin, or {} unless all are present."""
        tags = self.data.tags
        if not required or any(name not in tags for name in required):
            return {}
        return {name: tags[name] for name in required}


_EVENT_LIST = TypeAdapter(list[DeviceLifecycleEvent])


def parse_events(payload: str | bytes | list[dict[str, Any]]) -> list[DeviceLifecycleEvent]:
    """Parse a JSON array (text or already decoded) into events.

    Raises:
        pydantic.ValidationError: If the payload is not a list of events.
    """
    if isinstance(payload, (str, bytes)):
        return _EVENT_LIST.validate_json(payload)
    return _EVENT_LIST.validate_python(payload)
