"""
Notification delivery results.

These models describe what happened when an alert layer was dispatched:
one DeliveryOutcome per (channel, contact) pair, gathered in a
DispatchReport. The report is also the unit written to the escalation log.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from coldchain.models.alerts import AlertLayer
from coldchain.models.assets import Contact


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChannelKind(str, Enum):
    """Notification channel kinds."""

    PUSH = "push"
    EMAIL = "email"
    SMS = "sms"
    VOICE = "voice"

    def address_of(self, contact: Contact) -> Optional[str]:
        """The contact's address for this channel, if it has one."""
        if self == ChannelKind.PUSH:
            return contact.push_token
        if self == ChannelKind.EMAIL:
            return contact.email
        return contact.phone


class DeliveryStatus(str, Enum):
    """Outcome of one channel send."""

    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"


class DeliveryOutcome(BaseModel):
    """Result of sending one message to one contact over one channel."""

    model_config = {"frozen": True, "extra": "forbid"}

    channel: ChannelKind = Field(..., description="Channel used")
    contact: str = Field(..., description="Contact name")
    status: DeliveryStatus = Field(..., description="Delivery status")
    detail: Optional[str] = Field(default=None, description="Provider reference or error")
    sent_at: datetime = Field(default_factory=_utc_now, description="When the send finished")

    @classmethod
    def delivered(cls, channel: ChannelKind, contact: Contact, detail: Optional[str] = None) -> "DeliveryOutcome":
        return cls(channel=channel, contact=contact.name, status=DeliveryStatus.DELIVERED, detail=detail)

    @classmethod
    def skipped(cls, channel: ChannelKind, contact: Contact, detail: str) -> "DeliveryOutcome":
        return cls(channel=channel, contact=contact.name, status=DeliveryStatus.SKIPPED, detail=detail)

    @classmethod
    def failed(cls, channel: ChannelKind, contact: Contact, detail: str) -> "DeliveryOutcome":
        return cls(channel=channel, contact=contact.name, status=DeliveryStatus.FAILED, detail=detail)


class DispatchReport(BaseModel):
    """Aggregated outcomes of one layer dispatch."""

    model_config = {"frozen": True, "extra": "forbid"}

    alert_id: str = Field(..., description="Alert identifier")
    layer: AlertLayer = Field(..., description="Layer dispatched")
    outcomes: List[DeliveryOutcome] = Field(default_factory=list, description="Per-send outcomes")
    dispatched_at: datetime = Field(default_factory=_utc_now, description="Dispatch start")

    @property
    def all_delivered(self) -> bool:
        """True when no send failed (skips do not count as failures)."""
        return not any(o.status == DeliveryStatus.FAILED for o in self.outcomes)

    @property
    def delivered_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == DeliveryStatus.DELIVERED)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == DeliveryStatus.FAILED)
