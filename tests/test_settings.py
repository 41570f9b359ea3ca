"""
Unit tests for cold cell and escalation settings updates.
"""

from datetime import time

import pytest

from coldchain.engine.settings import SettingsService
from coldchain.errors import NotFoundError, ValidationError
from coldchain.models.assets import Contact
from tests.conftest import CELL_ID, CUSTOMER_ID


@pytest.fixture
def settings(store) -> SettingsService:
    return SettingsService(store)


class TestColdCellSettings:
    """Threshold and door delay updates."""

    async def test_partial_update(self, settings, store):
        """Only the given fields change."""
        updated = await settings.update_cold_cell_settings(CELL_ID, temperature_max=6.0)

        assert updated.temperature_max == 6.0
        assert updated.temperature_min == 0.0
        assert (await store.get_cold_cell(CELL_ID)).temperature_max == 6.0

    async def test_min_must_stay_below_max(self, settings, store):
        """min >= max is rejected and nothing is stored."""
        with pytest.raises(ValidationError):
            await settings.update_cold_cell_settings(CELL_ID, temperature_min=7.0)

        assert (await store.get_cold_cell(CELL_ID)).temperature_min == 0.0

    async def test_door_delay_bounds(self, settings):
        """The door delay must stay within 1..3600 seconds."""
        with pytest.raises(ValidationError):
            await settings.update_cold_cell_settings(CELL_ID, door_alarm_delay_seconds=0)
        with pytest.raises(ValidationError):
            await settings.update_cold_cell_settings(CELL_ID, door_alarm_delay_seconds=3601)

        updated = await settings.update_cold_cell_settings(CELL_ID, door_alarm_delay_seconds=3600)
        assert updated.door_alarm_delay_seconds == 3600

    async def test_unknown_field(self, settings):
        """Fields outside the editable set are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            await settings.update_cold_cell_settings(CELL_ID, customer_id="someone-else")

        assert exc_info.value.details["unknown"] == ["customer_id"]

    async def test_unknown_cell(self, settings):
        """Updating a missing cell raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await settings.update_cold_cell_settings("ghost", temperature_max=5.0)


class TestEscalationSettings:
    """Operating window and contact updates."""

    async def test_update_windows(self, settings):
        """Windows are updated and revalidated."""
        updated = await settings.update_escalation_config(CUSTOMER_ID, closing_time=time(18, 0))

        assert updated.closing_time == time(18, 0)
        assert updated.primary_contact.name == "Marie"

    async def test_windows_out_of_order(self, settings):
        """A closing time after night start is rejected."""
        with pytest.raises(ValidationError):
            await settings.update_escalation_config(CUSTOMER_ID, closing_time=time(23, 30))

    async def test_bad_timezone(self, settings):
        """Unknown timezone names are rejected."""
        with pytest.raises(ValidationError):
            await settings.update_escalation_config(CUSTOMER_ID, timezone="Nowhere/Town")

    async def test_new_customer_needs_primary_contact(self, settings, store):
        """A customer without configuration is created only with a primary contact."""
        with pytest.raises(NotFoundError):
            await settings.update_escalation_config("new-customer", timezone="Europe/Paris")

        created = await settings.update_escalation_config(
            "new-customer",
            primary_contact=Contact(name="Owner", email="owner@example.com"),
        )

        assert created.customer_id == "new-customer"
        assert await store.get_escalation_config("new-customer") is not None
