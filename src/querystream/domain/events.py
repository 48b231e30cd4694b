"""
Stream events emitted by the chat and deep-analysis orchestrators.

Wire format (Server-Sent Events):

    event: <name>
    data: <json payload>

"""

import json
from typing import Any, Dict

from pydantic import BaseModel, Field

from .base_enums import StreamEventType
from .errors import QueryStreamException

TERMINAL_EVENTS = frozenset({StreamEventType.COMPLETE, StreamEventType.ERROR})


class StreamEvent(BaseModel):
    """One named event with a JSON payload."""

    event: StreamEventType = Field(..., description="Event name")
    data: Dict[str, Any] = Field(default_factory=dict, description="JSON payload with camelCase keys")

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def to_sse(self) -> str:
        payload = json.dumps(self.data, ensure_ascii=True, default=str)
        return f"event: {self.event.value}\ndata: {payload}\n\n"

    @classmethod
    def of(cls, event: StreamEventType, **data: Any) -> "StreamEvent":
        return cls(event=event, data=data)

    @classmethod
    def status(cls, stage: str, message: str) -> "StreamEvent":
        return cls(event=StreamEventType.STATUS, data={"stage": stage, "message": message})

    @classmethod
    def error(cls, exc: QueryStreamException) -> "StreamEvent":
        return cls(event=StreamEventType.ERROR, data=exc.to_event_payload())
