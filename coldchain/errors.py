"""
Domain errors raised by the alert engine.

Every error carries a short machine-readable ``code`` so that outer layers
(the HTTP gateway, the service runners) can map it without inspecting
message text.

Hierarchy:
    ColdChainError
    ├── ValidationError         - rejected input, never coerced
    ├── NotFoundError           - unknown cold cell, device, customer or alert
    ├── ConflictError           - operation not allowed in the current state
    ├── AccessDeniedError       - caller does not own the resource
    ├── TransientDeliveryError  - notification provider failure
    └── ConnectivityError       - live subscription dropped

Example:
    >>> from coldchain.errors import NotFoundError
    >>> raise NotFoundError("alert", "a1b2")
"""

from typing import Any, Dict, Optional


class ColdChainError(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human readable description.
        code: Stable error code used by API responses.
        details: Extra context for logs and API responses.
    """

    code = "coldchain_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for an API response body."""
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ColdChainError):
    """Raised when input is rejected (bad thresholds, missing reason, malformed reading)."""

    code = "validation_error"


class NotFoundError(ColdChainError):
    """Raised when a referenced entity does not exist."""

    code = "not_found"

    def __init__(self, entity: str, identifier: str):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity} not found: {identifier}",
            details={"entity": entity, "id": identifier},
        )


class ConflictError(ColdChainError):
    """Raised when an operation conflicts with the current entity state."""

    code = "conflict"


class AccessDeniedError(ColdChainError):
    """Raised when the calling identity may not touch a resource."""

    code = "access_denied"


class TransientDeliveryError(ColdChainError):
    """
    Raised by notification channels when a provider fails.

    Never propagates into the alert state machine; the dispatcher logs it
    and the scheduler retries on its next tick.
    """

    code = "delivery_failed"

    def __init__(self, channel: str, message: str, retryable: bool = True):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message, details={"channel": channel})


class ConnectivityError(ColdChainError):
    """Raised when a live-state subscription is dropped."""

    code = "connectivity_error"
