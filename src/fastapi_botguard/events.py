"""Client-side interaction events.

Collectors in the browser post batches of these to the collection endpoint.
Timestamps are client milliseconds (``Date.now()``/``performance.now()``);
they are only ever compared with each other, never with server time.
"""

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventType(str, Enum):
    """Kinds of interaction events."""
    TIMING = "timing"
    POINTER_MOVE = "pointer_move"
    SCROLL = "scroll"
    KEYSTROKE = "keystroke"


class BaseEvent(BaseModel):
    """Common fields; events are immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(ge=0.0, description="Client timestamp in milliseconds")


class TimingEvent(BaseEvent):
    """A named point in time, e.g. page load or form submit."""
    type: Literal["timing"] = "timing"
    label: str = "mark"
    elapsed_ms: Optional[float] = Field(default=None, ge=0.0)


class PointerMoveEvent(BaseEvent):
    type: Literal["pointer_move"] = "pointer_move"
    x: float
    y: float


class ScrollEvent(BaseEvent):
    type: Literal["scroll"] = "scroll"
    offset: float


class KeystrokeEvent(BaseEvent):
    """Key press; only the interval to the previous key is kept, never the key."""
    type: Literal["keystroke"] = "keystroke"
    interval_ms: float = Field(ge=0.0)


Event = Annotated[
    Union[TimingEvent, PointerMoveEvent, ScrollEvent, KeystrokeEvent],
    Field(discriminator="type"),
]

_event_list_adapter = TypeAdapter(List[Event])


class EventBatch(BaseModel):
    """Request body of the collection endpoint."""
    events: List[Event] = Field(default_factory=list, max_length=1000)


def parse_events(raw: list) -> List[BaseEvent]:
    """Validate a list of raw event dicts into typed events."""
    return _event_list_adapter.validate_python(raw)
