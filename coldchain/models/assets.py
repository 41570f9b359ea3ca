"""
Asset models: cold cells, devices, customers' escalation configuration.

Assets are owned by an external CRUD service; the engine only reads them
and updates the few fields it is responsible for (device liveness,
per-cell thresholds, operating windows).

Models:
    DeviceStatus: Online/offline liveness of a logger
    Contact: A person that can be notified
    EscalationConfig: Per-customer operating windows, timezone and contacts
    ColdCell: A monitored refrigeration unit and its thresholds
    Device: A telemetry logger installed in a cold cell
"""

from datetime import datetime, time
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


MINUTES_PER_DAY = 24 * 60

DEFAULT_DOOR_ALARM_DELAY_SECONDS = 300
MIN_DOOR_ALARM_DELAY_SECONDS = 1
MAX_DOOR_ALARM_DELAY_SECONDS = 3600


def minute_of_day(value: time) -> int:
    """Convert a wall-clock time to minutes since local midnight."""
    return value.hour * 60 + value.minute


class DeviceStatus(str, Enum):
    """Liveness of a telemetry logger."""

    ONLINE = "online"
    OFFLINE = "offline"


class Contact(BaseModel):
    """
    A person that can receive notifications.

    Each channel picks the address it needs; a contact lacking that address
    is skipped by the channel rather than failing the dispatch.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    name: str = Field(..., min_length=1, description="Display name")
    email: Optional[str] = Field(default=None, description="E-mail address")
    phone: Optional[str] = Field(default=None, description="Phone number in E.164 form")
    push_token: Optional[str] = Field(default=None, description="Mobile push token")


class EscalationConfig(BaseModel):
    """
    Per-customer escalation configuration.

    The three local times split the day into OPEN = [opening, closing),
    AFTER_CLOSE = [closing, night_start) and NIGHT = [night_start, opening),
    wrapping past midnight. They must be distinct and in that cyclic order.

    Attributes:
        customer_id: Owning customer.
        opening_time: Local opening time.
        closing_time: Local closing time.
        night_start: Local start of the night window.
        timezone: IANA timezone name used for every local computation.
        primary_contact: First person notified at every layer.
        backup_contacts: Ordered backup contacts used from layer 2.
        technician_contact: Linked service technician, if any.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    customer_id: str = Field(..., min_length=1, description="Owning customer identifier")
    opening_time: time = Field(default=time(7, 0), description="Local opening time")
    closing_time: time = Field(default=time(17, 0), description="Local closing time")
    night_start: time = Field(default=time(23, 0), description="Local start of night window")
    timezone: str = Field(default="Europe/Brussels", description="IANA timezone name")
    primary_contact: Contact = Field(..., description="Primary customer contact")
    backup_contacts: List[Contact] = Field(
        default_factory=list,
        description="Ordered backup contacts",
    )
    technician_contact: Optional[Contact] = Field(
        default=None,
        description="Linked technician contact",
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the timezone name resolves."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_window_order(self) -> "EscalationConfig":
        """Ensure opening -> closing -> night_start are distinct and cyclic."""
        opening = minute_of_day(self.opening_time)
        closing = minute_of_day(self.closing_time)
        night = minute_of_day(self.night_start)
        if len({opening, closing, night}) != 3:
            raise ValueError("opening_time, closing_time and night_start must be distinct")
        span = (
            (closing - opening) % MINUTES_PER_DAY
            + (night - closing) % MINUTES_PER_DAY
            + (opening - night) % MINUTES_PER_DAY
        )
        if span != MINUTES_PER_DAY:
            raise ValueError(
                "operating windows must follow opening_time -> closing_time -> night_start"
            )
        return self

    @property
    def zone(self) -> ZoneInfo:
        """Resolved timezone object."""
        return ZoneInfo(self.timezone)

    def local_time(self, moment: datetime) -> datetime:
        """Convert an aware instant to the customer's wall clock."""
        return moment.astimezone(self.zone)


class ColdCell(BaseModel):
    """
    A monitored refrigeration or freezer unit.

    Attributes:
        cold_cell_id: Unique identifier.
        customer_id: Owning customer, used for timezone/config lookup.
        name: Display name used in notifications.
        temperature_min: Lower bound of the allowed range (Celsius).
        temperature_max: Upper bound of the allowed range (Celsius).
        door_alarm_delay_seconds: Grace period before an open door alerts.
        require_resolution_reason: Whether resolving needs a reason.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    cold_cell_id: str = Field(..., min_length=1, description="Cold cell identifier")
    customer_id: str = Field(..., min_length=1, description="Owning customer identifier")
    name: str = Field(default="", description="Display name")
    temperature_min: float = Field(..., description="Minimum allowed temperature")
    temperature_max: float = Field(..., description="Maximum allowed temperature")
    door_alarm_delay_seconds: int = Field(
        default=DEFAULT_DOOR_ALARM_DELAY_SECONDS,
        ge=MIN_DOOR_ALARM_DELAY_SECONDS,
        le=MAX_DOOR_ALARM_DELAY_SECONDS,
        description="Seconds a door may stay open before alerting",
    )
    require_resolution_reason: bool = Field(
        default=True,
        description="Whether a resolution reason is mandatory",
    )

    @model_validator(mode="after")
    def validate_range(self) -> "ColdCell":
        """Ensure min < max."""
        if self.temperature_min >= self.temperature_max:
            raise ValueError(
                f"temperature_min ({self.temperature_min}) must be below "
                f"temperature_max ({self.temperature_max})"
            )
        return self

    @property
    def display_name(self) -> str:
        """Name for humans, falling back to the identifier."""
        return self.name or self.cold_cell_id


class Device(BaseModel):
    """
    A telemetry logger.

    ``version`` increases on every stored mutation so that concurrent writers
    can detect lost updates.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    serial: str = Field(..., min_length=1, description="Device serial number")
    cold_cell_id: str = Field(..., min_length=1, description="Cold cell the device monitors")
    status: DeviceStatus = Field(default=DeviceStatus.OFFLINE, description="Liveness")
    last_seen_at: Optional[datetime] = Field(default=None, description="Last contact")
    last_reading_at: Optional[datetime] = Field(
        default=None,
        description="recorded_at of the newest applied reading",
    )
    malformed_since: Optional[datetime] = Field(
        default=None,
        description="Start of the current run of malformed readings",
    )
    version: int = Field(default=0, ge=0, description="Optimistic concurrency version")

    @property
    def is_online(self) -> bool:
        """Whether the device is currently considered online."""
        return self.status == DeviceStatus.ONLINE

    def is_newer(self, recorded_at: datetime) -> bool:
        """Whether a reading recorded at ``recorded_at`` is newer than the applied one."""
        return self.last_reading_at is None or recorded_at > self.last_reading_at

    def bump(self, **changes: object) -> "Device":
        """Return a copy with ``changes`` applied and the version incremented."""
        return self.model_copy(update={**changes, "version": self.version + 1})
