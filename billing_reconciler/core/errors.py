from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for reconciliation failures."""


class AuthenticationError(BillingError):
    """The delivery did not come from the processor. Permanent; never retried."""


class UnroutableEvent(BillingError):
    """The event carries no tenant reference we can resolve."""

    def __init__(self, event_id: str, event_type: str) -> None:
        super().__init__(f"event {event_id} ({event_type}) has no tenant reference")
        self.event_id = event_id
        self.event_type = event_type


class UnknownTenant(BillingError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"tenant {tenant_id} does not exist")
        self.tenant_id = tenant_id


class UnsupportedEventType(BillingError):
    def __init__(self, event_type: str) -> None:
        super().__init__(f"unsupported event type {event_type}")
        self.event_type = event_type


class TransientStoreError(BillingError):
    """The only error allowed to surface as a 5xx; the processor redelivers."""


class VersionConflict(BillingError):
    """A conditional check inside a write transaction failed.

    `role` names the transaction item that failed (tenant, invoice, activity
    or guard) when the store reports it.
    """

    def __init__(self, role: Optional[str] = None) -> None:
        super().__init__(f"conditional check failed on {role or 'unknown item'}")
        self.role = role


class MalformedEvent(BillingError):
    """Signed by the processor but not a decodable event envelope. Treated like a bad signature."""
