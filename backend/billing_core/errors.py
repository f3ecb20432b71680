"""
Structured error classes for the billing core.

Processing errors (MalformedInputError, UnknownReferenceError) fail one
inbound event and leave it FAILED for the retry sweep. Unique-key races are
recovered inside the inbox and the ledger and never surface here.
"""

from typing import Optional


class BillingCoreError(Exception):
    """Base exception for billing core errors."""

    code = "billing_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {"error": self.code, "message": self.message}


class MalformedInputError(BillingCoreError):
    """Payload is missing required fields or has the wrong shape."""

    code = "malformed_input"


class UnknownReferenceError(BillingCoreError):
    """A tenant, subscription or plan referenced by the caller does not exist."""

    code = "unknown_reference"


class TenantNotFoundError(UnknownReferenceError):
    code = "tenant_not_found"

    def __init__(self, tenant_id: Optional[str]):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant not found: {tenant_id}")


class SubscriptionNotFoundError(UnknownReferenceError):
    code = "subscription_not_found"

    def __init__(self, tenant_id: str, detail: str = "No active subscription"):
        self.tenant_id = tenant_id
        super().__init__(f"{detail} for tenant: {tenant_id}")


class PlanNotFoundError(UnknownReferenceError):
    code = "plan_not_found"

    def __init__(self, plan_code: Optional[str]):
        self.plan_code = plan_code
        super().__init__(f"Unknown plan code: {plan_code}")


class DeliveryError(BillingCoreError):
    """An outbox delivery sink could not deliver an event."""

    code = "delivery_failed"


class WebhookSignatureError(BillingCoreError):
    """Webhook signature missing, malformed or not matching the payload."""

    code = "invalid_signature"


class UnknownProviderError(BillingCoreError):
    code = "unknown_provider"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Webhook provider not configured: {provider}")


class SeatLimitExceededError(BillingCoreError):
    code = "seat_limit_exceeded"

    def __init__(self, current_seats: int, max_seats: int):
        self.current_seats = current_seats
        self.max_seats = max_seats
        super().__init__(
            f"Seat limit exceeded. Current seats: {current_seats}, "
            f"Maximum allowed: {max_seats}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"current_seats": self.current_seats, "max_seats": self.max_seats})
        return data


class ConcurrentUpdateError(BillingCoreError):
    """Compare-and-swap retries on a subscription row were exhausted."""

    code = "concurrent_update"
