"""
Telemetry reading models.

A SensorReading is one sample submitted by a logger. Readings are
append-only and ordered by ``recorded_at``. Numeric and boolean fields are
strict: ``"5"`` is rejected for a temperature and ``"yes"`` for a door flag.

Models:
    SensorReading: One validated telemetry sample
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


TEMPERATURE_MIN = -50.0
TEMPERATURE_MAX = 50.0


class SensorReading(BaseModel):
    """
    One telemetry sample from a device.

    Attributes:
        device_serial: Serial of the submitting device.
        temperature: Measured temperature in Celsius.
        humidity: Relative humidity percentage, if measured.
        door_open: Door contact state, if the logger has one.
        power_on: Mains power presence, if reported.
        battery_level: Battery charge percentage, if reported.
        recorded_at: Measurement time (timezone aware, UTC if naive).

    Example:
        >>> reading = SensorReading(
        ...     device_serial="CT-0001",
        ...     temperature=4.2,
        ...     door_open=False,
        ...     recorded_at=datetime.now(timezone.utc),
        ... )
    """

    model_config = {"frozen": True, "extra": "forbid"}

    device_serial: str = Field(..., min_length=1, description="Device serial")
    temperature: float = Field(
        ...,
        strict=True,
        ge=TEMPERATURE_MIN,
        le=TEMPERATURE_MAX,
        description="Temperature in Celsius",
    )
    humidity: Optional[float] = Field(
        default=None,
        strict=True,
        ge=0,
        le=100,
        description="Relative humidity (%)",
    )
    door_open: Optional[bool] = Field(default=None, strict=True, description="Door contact")
    power_on: Optional[bool] = Field(default=None, strict=True, description="Mains power")
    battery_level: Optional[float] = Field(
        default=None,
        strict=True,
        ge=0,
        le=100,
        description="Battery charge (%)",
    )
    recorded_at: datetime = Field(..., description="Measurement timestamp")

    @field_validator("recorded_at")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v
