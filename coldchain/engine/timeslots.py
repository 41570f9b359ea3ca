"""
Time-slot resolution in the customer's timezone.

A customer's day is split by three local times:

    OPEN        = [opening_time, closing_time)
    AFTER_CLOSE = [closing_time, night_start)
    NIGHT       = [night_start, opening_time)   (wraps past midnight)

The slot is recomputed from the wall clock every time it is needed; it is
never cached, so DST changes and configuration updates apply immediately.

Example:
    >>> slot = resolve_time_slot(config, datetime.now(timezone.utc))
    >>> initial_layer_for_slot(slot)
    <AlertLayer.LAYER_1: 1>
"""

from datetime import datetime

from coldchain.models.alerts import AlertLayer, TimeSlot
from coldchain.models.assets import MINUTES_PER_DAY, EscalationConfig, minute_of_day


_ENTRY_LAYERS = {
    TimeSlot.OPEN: AlertLayer.LAYER_1,
    TimeSlot.AFTER_CLOSE: AlertLayer.LAYER_2,
    TimeSlot.NIGHT: AlertLayer.LAYER_3,
}


def _in_window(minute: int, start: int, end: int) -> bool:
    """Whether ``minute`` lies in the half-open cyclic window [start, end)."""
    return (minute - start) % MINUTES_PER_DAY < (end - start) % MINUTES_PER_DAY


def resolve_time_slot(config: EscalationConfig, moment: datetime) -> TimeSlot:
    """
    Resolve the slot active at ``moment`` for a customer.

    Args:
        config: The customer's escalation configuration.
        moment: Timezone-aware instant.

    Returns:
        TimeSlot: OPEN, AFTER_CLOSE or NIGHT.
    """
    local = config.local_time(moment)
    minute = local.hour * 60 + local.minute
    opening = minute_of_day(config.opening_time)
    closing = minute_of_day(config.closing_time)
    night = minute_of_day(config.night_start)

    if _in_window(minute, opening, closing):
        return TimeSlot.OPEN
    if _in_window(minute, closing, night):
        return TimeSlot.AFTER_CLOSE
    return TimeSlot.NIGHT


def initial_layer_for_slot(slot: TimeSlot) -> AlertLayer:
    """Entry layer of an alert triggered during ``slot``."""
    return _ENTRY_LAYERS[slot]


def promotes_over_time(slot: TimeSlot) -> bool:
    """Only alerts born during opening hours climb the ladder by elapsed time."""
    return slot == TimeSlot.OPEN
