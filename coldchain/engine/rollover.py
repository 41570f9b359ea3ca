"""
Lazy, timezone-aware rollover of door day counters.

Counters are tagged with the local date they were computed for. There is
no midnight job: readers call ``effective_counters`` which reports zeros for
a stale bucket, and writers call ``apply_transition`` which re-initializes
the bucket for the event's local day before counting.

Example:
    >>> state = apply_transition(state, DoorPosition.OPEN, opened_at, zone)
    >>> effective_counters(state, zone, now).opens
    1
"""

from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

from coldchain.models.door import DoorDayCounters, DoorPosition, DoorState


def local_day(moment: datetime, zone: ZoneInfo) -> date:
    """Calendar date of ``moment`` in ``zone``."""
    return moment.astimezone(zone).date()


def local_midnight(day: date, zone: ZoneInfo) -> datetime:
    """Aware instant of the start of ``day`` in ``zone``."""
    return datetime.combine(day, time(0, 0), tzinfo=zone)


def effective_counters(state: DoorState, zone: ZoneInfo, now: datetime) -> DoorDayCounters:
    """
    Counters valid for today in ``zone``.

    Args:
        state: Stored door state, possibly with a stale bucket.
        zone: Customer timezone.
        now: Current instant.

    Returns:
        DoorDayCounters: The stored bucket if it is today's, zeros otherwise.
    """
    today = local_day(now, zone)
    if state.counters is None or state.counters.day != today:
        return DoorDayCounters(day=today)
    return state.counters


def _bucket_for(state: DoorState, day: date) -> DoorDayCounters:
    if state.counters is None or state.counters.day != day:
        return DoorDayCounters(day=day)
    return state.counters


def _open_seconds(opened_at: Optional[datetime], closed_at: datetime, zone: ZoneInfo) -> int:
    """Seconds the door was open on the closing day."""
    if opened_at is None:
        return 0
    start = max(opened_at, local_midnight(local_day(closed_at, zone), zone))
    return max(0, int((closed_at - start).total_seconds()))


def apply_transition(
    state: DoorState,
    position: DoorPosition,
    at: datetime,
    zone: ZoneInfo,
) -> DoorState:
    """
    Apply a door event to a door state.

    A repeated position is not a transition and returns ``state`` unchanged.
    An opening increments ``opens``; a closing increments ``closes`` and adds
    the seconds open since ``max(opened_at, local midnight)``.

    Args:
        state: Current door state.
        position: Position reported by the event.
        at: Event time.
        zone: Customer timezone.

    Returns:
        DoorState: New state with a bumped version, or ``state`` itself.
    """
    if state.position == position:
        return state

    if state.position is None and position == DoorPosition.CLOSED:
        # First report from a closed door: nothing to count yet.
        return state.model_copy(
            update={"position": position, "last_changed_at": at, "version": state.version + 1}
        )

    bucket = _bucket_for(state, local_day(at, zone))
    if position == DoorPosition.OPEN:
        bucket = bucket.model_copy(update={"opens": bucket.opens + 1})
    else:
        opened_at = state.last_changed_at if state.is_open else None
        bucket = bucket.model_copy(
            update={
                "closes": bucket.closes + 1,
                "total_open_seconds": bucket.total_open_seconds
                + _open_seconds(opened_at, at, zone),
            }
        )

    return state.model_copy(
        update={
            "position": position,
            "last_changed_at": at,
            "counters": bucket,
            "version": state.version + 1,
        }
    )
