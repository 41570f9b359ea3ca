"""
Request dependencies: the wired engine and the caller identity.

Authentication happens upstream. The gateway trusts two headers set by the
authenticating proxy:

    X-Customer-Id: customer the caller belongs to
    X-Role: customer | technician | admin (default: customer)

Customers only reach their own cold cells and alerts. Technicians and
admins reach every customer.
"""

from enum import Enum
from typing import Optional

from fastapi import Header, HTTPException
from pydantic import BaseModel, Field

from coldchain.engine.factory import EngineComponents
from coldchain.errors import AccessDeniedError
from coldchain.models.alerts import Alert
from coldchain.models.assets import ColdCell


class Role(str, Enum):
    """Caller roles."""

    CUSTOMER = "customer"
    TECHNICIAN = "technician"
    ADMIN = "admin"


class Identity(BaseModel):
    """Identity context of one request."""

    model_config = {"frozen": True}

    role: Role = Field(default=Role.CUSTOMER, description="Caller role")
    customer_id: Optional[str] = Field(default=None, description="Caller customer")
    user: Optional[str] = Field(default=None, description="Caller user name, for audit")

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.TECHNICIAN, Role.ADMIN)

    @property
    def actor(self) -> str:
        """Name recorded on acknowledgments and resolutions."""
        return self.user or self.customer_id or self.role.value

    def can_access_customer(self, customer_id: str) -> bool:
        return self.is_staff or self.customer_id == customer_id

    def ensure_customer(self, customer_id: str) -> None:
        """
        Raises:
            AccessDeniedError: The caller may not touch this customer.
        """
        if not self.can_access_customer(customer_id):
            raise AccessDeniedError(
                "Access denied to customer resources",
                details={"customer_id": customer_id},
            )

    def ensure_cell(self, cell: ColdCell) -> None:
        self.ensure_customer(cell.customer_id)

    def ensure_alert(self, alert: Alert) -> None:
        self.ensure_customer(alert.customer_id)


def build_identity(
    role: Optional[str],
    customer_id: Optional[str],
    user: Optional[str] = None,
) -> Identity:
    """
    Build an identity from raw header or query values.

    Raises:
        AccessDeniedError: Unknown role, or a customer without a customer id.
    """
    try:
        parsed = Role((role or Role.CUSTOMER.value).lower())
    except ValueError:
        raise AccessDeniedError(f"Unknown role: {role}")

    if parsed == Role.CUSTOMER and not customer_id:
        raise AccessDeniedError("Missing X-Customer-Id header")

    return Identity(role=parsed, customer_id=customer_id or None, user=user or None)


async def get_identity(
    x_customer_id: Optional[str] = Header(default=None),
    x_role: Optional[str] = Header(default=None),
    x_user: Optional[str] = Header(default=None),
) -> Identity:
    """FastAPI dependency reading the identity headers."""
    return build_identity(x_role, x_customer_id, x_user)


def get_engine() -> EngineComponents:
    """
    FastAPI dependency returning the wired engine.

    Raises:
        HTTPException: 503 before startup completed.
    """
    from services.gateway.app import app_state

    if app_state.components is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return app_state.components
