"""
Settings updates for cold cells and customer escalation configuration.

Updates are partial: only the fields passed are changed, and the merged
result is re-validated with the same pydantic models the store holds, so
``min < max``, the door delay bounds, the window order and the timezone are
checked in one place.

Example:
    >>> service = SettingsService(store)
    >>> await service.update_cold_cell_settings("dupont-walkin", temperature_max=6.0)
    >>> await service.update_escalation_config("bakery-dupont", closing_time=time(18, 0))
"""

from typing import Any, Dict, Optional

import pydantic
import structlog

from coldchain.errors import NotFoundError, ValidationError
from coldchain.interfaces.state_store import StateStore
from coldchain.models.assets import ColdCell, EscalationConfig

logger = structlog.get_logger(__name__)


COLD_CELL_SETTINGS = frozenset(
    {"temperature_min", "temperature_max", "door_alarm_delay_seconds", "require_resolution_reason"}
)

ESCALATION_SETTINGS = frozenset(
    {
        "opening_time",
        "closing_time",
        "night_start",
        "timezone",
        "primary_contact",
        "backup_contacts",
        "technician_contact",
    }
)


def _reject_unknown(changes: Dict[str, Any], allowed: frozenset) -> None:
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise ValidationError(f"Unknown settings: {unknown}", details={"unknown": unknown})


def _as_validation_error(message: str, error: pydantic.ValidationError) -> ValidationError:
    return ValidationError(
        message,
        details={
            "errors": [
                {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                for err in error.errors()
            ]
        },
    )


class SettingsService:
    """
    Validated partial updates of engine-owned asset settings.

    Attributes:
        store: Live state store.
    """

    def __init__(self, store: StateStore) -> None:
        self.store = store

    async def update_cold_cell_settings(self, cold_cell_id: str, **changes: Any) -> ColdCell:
        """
        Update thresholds, door delay or the resolution-reason rule of a cell.

        Args:
            cold_cell_id: Cold cell identifier.
            **changes: Any of temperature_min, temperature_max,
                door_alarm_delay_seconds, require_resolution_reason.

        Returns:
            ColdCell: The stored cell.

        Raises:
            NotFoundError: Unknown cold cell.
            ValidationError: Unknown field, min >= max, or delay outside 1..3600.
        """
        _reject_unknown(changes, COLD_CELL_SETTINGS)
        cell = await self.store.get_cold_cell(cold_cell_id)
        if cell is None:
            raise NotFoundError("cold cell", cold_cell_id)

        try:
            updated = ColdCell.model_validate({**cell.model_dump(), **changes})
        except pydantic.ValidationError as e:
            raise _as_validation_error("Invalid cold cell settings", e) from e

        await self.store.save_cold_cell(updated)
        logger.info("cold_cell_settings_updated", cold_cell_id=cold_cell_id, fields=sorted(changes))
        return updated

    async def update_escalation_config(
        self,
        customer_id: str,
        **changes: Any,
    ) -> EscalationConfig:
        """
        Update a customer's operating windows, timezone or contacts.

        A customer without a configuration gets one when ``primary_contact``
        is among the changes.

        Args:
            customer_id: Customer identifier.
            **changes: Any of opening_time, closing_time, night_start,
                timezone, primary_contact, backup_contacts, technician_contact.

        Returns:
            EscalationConfig: The stored configuration.

        Raises:
            NotFoundError: Unknown customer without a primary contact to create one.
            ValidationError: Unknown field, windows out of order, bad timezone.
        """
        _reject_unknown(changes, ESCALATION_SETTINGS)
        current: Optional[EscalationConfig] = await self.store.get_escalation_config(customer_id)
        if current is None and "primary_contact" not in changes:
            raise NotFoundError("customer", customer_id)

        base: Dict[str, Any] = current.model_dump() if current is not None else {}
        try:
            updated = EscalationConfig.model_validate(
                {**base, **changes, "customer_id": customer_id}
            )
        except pydantic.ValidationError as e:
            raise _as_validation_error("Invalid escalation configuration", e) from e

        await self.store.save_escalation_config(updated)
        logger.info(
            "escalation_config_updated",
            customer_id=customer_id,
            fields=sorted(changes),
            created=current is None,
        )
        return updated
