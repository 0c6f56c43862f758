"""Feature extraction from per-session interaction events.

The extractor turns the raw event buffer of one session into a fixed-size
``FeatureVector``. A field is ``None`` when its signal has too few events;
the risk scorer treats ``None`` as "unknown" and skips the rules that depend
on it.
"""

import math
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from fastapi_botguard.events import (
    BaseEvent,
    EventType,
    KeystrokeEvent,
    PointerMoveEvent,
    ScrollEvent,
    TimingEvent,
)


class FeatureConfig(BaseModel):
    """Minimum event counts and tolerances for feature extraction."""

    min_events_for_duration: int = Field(default=2, ge=2)
    min_pointer_events: int = Field(default=2, ge=2)
    # a single segment has no spread to measure
    min_pointer_angles_for_stddev: int = Field(default=2, ge=1)
    min_scroll_events: int = Field(default=3, ge=3)
    min_keystroke_events: int = Field(default=2, ge=1)
    # Relative speed change below which two consecutive scroll speeds count as
    # equal. Illustrative default, tune per site.
    scroll_constancy_tolerance: float = Field(default=0.01, ge=0.0)


class FeatureVector(BaseModel):
    """Read-only numeric summary of a session's events."""

    model_config = ConfigDict(frozen=True)

    interaction_duration_ms: Optional[float] = None
    pointer_angle_mean: Optional[float] = None
    pointer_angle_stddev: Optional[float] = None
    scroll_speed_deltas: Optional[Tuple[float, ...]] = None
    scroll_speed_constant: Optional[bool] = None
    keystroke_interval_mean: Optional[float] = None
    keystroke_interval_stddev: Optional[float] = None
    event_counts: Dict[EventType, int] = Field(default_factory=dict)

    def is_unknown(self, name: str) -> bool:
        return getattr(self, name) is None

    def known_fields(self) -> List[str]:
        return [
            name for name in type(self).model_fields
            if name != "event_counts" and getattr(self, name) is not None
        ]


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def population_stddev(values: Sequence[float]) -> float:
    """Standard deviation dividing by N, not N-1."""
    mu = mean(values)
    return math.sqrt(sum((v - mu) ** 2 for v in values) / len(values))


class FeatureExtractor:
    """Pure, deterministic reduction of an event buffer to a FeatureVector."""

    def __init__(self, config: Optional[FeatureConfig] = None):
        self.config = config or FeatureConfig()

    def extract(self, events: Sequence[BaseEvent]) -> FeatureVector:
        """Compute the feature vector for an ordered sequence of events.

        Args:
            events: Events of one session, oldest first

        Returns:
            FeatureVector with ``None`` for every signal lacking data
        """
        pointer = [e for e in events if isinstance(e, PointerMoveEvent)]
        scroll = [e for e in events if isinstance(e, ScrollEvent)]
        keys = [e for e in events if isinstance(e, KeystrokeEvent)]
        timing = [e for e in events if isinstance(e, TimingEvent)]

        angle_mean, angle_stddev = self._pointer_angles(pointer)
        deltas, constant = self._scroll_pattern(scroll)
        key_mean, key_stddev = self._keystroke_intervals(keys)

        return FeatureVector(
            interaction_duration_ms=self._duration(events),
            pointer_angle_mean=angle_mean,
            pointer_angle_stddev=angle_stddev,
            scroll_speed_deltas=deltas,
            scroll_speed_constant=constant,
            keystroke_interval_mean=key_mean,
            keystroke_interval_stddev=key_stddev,
            event_counts={
                EventType.TIMING: len(timing),
                EventType.POINTER_MOVE: len(pointer),
                EventType.SCROLL: len(scroll),
                EventType.KEYSTROKE: len(keys),
            },
        )

    def _duration(self, events: Sequence[BaseEvent]) -> Optional[float]:
        if len(events) < self.config.min_events_for_duration:
            return None
        timestamps = [e.timestamp for e in events]
        return max(timestamps) - min(timestamps)

    def _pointer_angles(
        self, pointer: Sequence[PointerMoveEvent]
    ) -> Tuple[Optional[float], Optional[float]]:
        if len(pointer) < self.config.min_pointer_events:
            return None, None
        angles = [
            math.atan2(cur.y - prev.y, cur.x - prev.x)
            for prev, cur in zip(pointer, pointer[1:])
        ]
        if len(angles) < self.config.min_pointer_angles_for_stddev:
            return mean(angles), None
        return mean(angles), population_stddev(angles)

    def _scroll_pattern(
        self, scroll: Sequence[ScrollEvent]
    ) -> Tuple[Optional[Tuple[float, ...]], Optional[bool]]:
        if len(scroll) < self.config.min_scroll_events:
            return None, None

        speeds = []
        for prev, cur in zip(scroll, scroll[1:]):
            dt = cur.timestamp - prev.timestamp
            if dt <= 0:
                continue
            speeds.append(abs(cur.offset - prev.offset) / dt)

        if len(speeds) < 2:
            return None, None

        deltas = tuple(cur - prev for prev, cur in zip(speeds, speeds[1:]))
        tolerance = self.config.scroll_constancy_tolerance
        constant = all(
            abs(cur - prev) / max(prev, 1e-9) <= tolerance
            for prev, cur in zip(speeds, speeds[1:])
        )
        return deltas, constant

    def _keystroke_intervals(
        self, keys: Sequence[KeystrokeEvent]
    ) -> Tuple[Optional[float], Optional[float]]:
        if len(keys) < self.config.min_keystroke_events:
            return None, None
        intervals = [k.interval_ms for k in keys]
        return mean(intervals), population_stddev(intervals)
