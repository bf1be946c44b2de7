"""
Billing exceptions.

Every error raised by the membership billing services derives from
BillingError so the blueprints can render one JSON shape for all of them.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for all billing-related errors."""

    status_code = 500
    default_code = "BILLING_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        payload = {"success": False, "message": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class ValidationError(BillingError):
    """Bad input: invalid/expired coupon, inactive plan, malformed payload."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class ConflictError(ValidationError):
    """
    Request conflicts with current state (exhausted coupon, archiving an
    active membership without confirmation). Still a client error; callers
    inspect `details` for the machine-readable flag.
    """

    default_code = "CONFLICT"


class NotFoundError(BillingError):
    status_code = 404
    default_code = "NOT_FOUND"


class SignatureError(BillingError):
    """Webhook payload could not be verified. No state may be touched."""

    status_code = 400
    default_code = "INVALID_SIGNATURE"


class ProviderError(BillingError):
    """A call to the payment provider failed."""

    status_code = 502
    default_code = "PROVIDER_ERROR"


class ConfigurationError(BillingError):
    status_code = 500
    default_code = "CONFIGURATION_ERROR"
