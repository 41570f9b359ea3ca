"""
Door state models.

DoorState is the authoritative, per-cold-cell record of the door position.
Its day counters are tagged with the local date they were computed for;
rollover rules live in ``coldchain.engine.rollover``.

Models:
    DoorPosition: OPEN / CLOSED
    DoorDayCounters: Opens, closes and seconds open for one local day
    DoorState: Current position, last change and today's counters
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class DoorPosition(str, Enum):
    """Door contact position."""

    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def from_flag(cls, door_open: bool) -> "DoorPosition":
        """Map a reading's boolean door flag to a position."""
        return cls.OPEN if door_open else cls.CLOSED


class DoorDayCounters(BaseModel):
    """Door activity counters for one local calendar day."""

    model_config = {"frozen": True, "extra": "forbid"}

    day: date = Field(..., description="Local date the counters belong to")
    opens: int = Field(default=0, ge=0, description="Door openings")
    closes: int = Field(default=0, ge=0, description="Door closings")
    total_open_seconds: int = Field(default=0, ge=0, description="Seconds the door was open")

    def to_message(self) -> Dict[str, int]:
        """Counters in the shape pushed to clients."""
        return {
            "opens": self.opens,
            "closes": self.closes,
            "totalOpenSeconds": self.total_open_seconds,
        }


class DoorState(BaseModel):
    """
    Current door state of a cold cell.

    Attributes:
        cold_cell_id: The cold cell this state belongs to.
        position: Last known position, None before the first door reading.
        last_changed_at: When the position last changed.
        counters: Day bucket, possibly stale (see rollover).
        version: Optimistic concurrency version.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    cold_cell_id: str = Field(..., min_length=1, description="Cold cell identifier")
    position: Optional[DoorPosition] = Field(default=None, description="Door position")
    last_changed_at: Optional[datetime] = Field(default=None, description="Last transition")
    counters: Optional[DoorDayCounters] = Field(default=None, description="Day counters")
    version: int = Field(default=0, ge=0, description="Optimistic concurrency version")

    @property
    def is_open(self) -> bool:
        """Whether the door is currently open."""
        return self.position == DoorPosition.OPEN

    def open_since(self) -> Optional[datetime]:
        """When the current open period started, or None if closed."""
        if self.is_open:
            return self.last_changed_at
        return None

    def summary(self) -> Dict[str, Any]:
        """Position and last change for logs."""
        return {
            "position": self.position.value if self.position else None,
            "last_changed_at": self.last_changed_at.isoformat() if self.last_changed_at else None,
        }
