"""Outcome log and direction helpers.

OutcomeSequence is bounded and append-only. The backing collection is an
immutable tuple that is replaced on every append, so readers holding a
snapshot never observe a half-applied eviction.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import validation_error


class Direction(Enum):
    A = "A"
    B = "B"

    @property
    def opposite(self) -> "Direction":
        return Direction.B if self is Direction.A else Direction.A


def parse_direction(value: Any, field_name: str = "direction") -> Direction:
    """Coerce 'A'/'B' (any case) or a Direction; anything else is a ValidationError."""
    if isinstance(value, Direction):
        return value
    if isinstance(value, str):
        v = value.strip().upper()
        if v in ("A", "B"):
            return Direction(v)
    raise validation_error(f"{field_name} must be 'A' or 'B'", field=field_name, value=repr(value))


def parse_optional_direction(value: Any, field_name: str = "direction") -> Optional[Direction]:
    if value is None:
        return None
    return parse_direction(value, field_name)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class OutcomeEvent:
    value: Direction
    predicted_value: Optional[Direction]
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value.value,
            "predicted_value": self.predicted_value.value if self.predicted_value else None,
            "timestamp_ms": self.timestamp_ms,
        }


class OutcomeSequence:
    """Append-only, capacity-bounded log of resolved rounds (oldest evicted)."""

    def __init__(self, capacity: int = 40):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = int(capacity)
        self._lock = threading.Lock()
        self._events: Tuple[OutcomeEvent, ...] = ()

    def append(self, event: OutcomeEvent) -> None:
        with self._lock:
            events = self._events + (event,)
            if len(events) > self.capacity:
                events = events[-self.capacity:]
            self._events = events

    def snapshot(self) -> Tuple[OutcomeEvent, ...]:
        # Tuple reference swap is atomic; no lock needed for readers.
        return self._events

    def values(self) -> Tuple[Direction, ...]:
        return tuple(e.value for e in self._events)

    def clear(self) -> None:
        with self._lock:
            self._events = ()

    def __len__(self) -> int:
        return len(self._events)


def values_of(events: Tuple[OutcomeEvent, ...]) -> str:
    """Render events as an 'ABBA...' string."""
    return "".join(e.value.value for e in events)
