from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Type

from billing_reconciler.core.errors import UnsupportedEventType
from billing_reconciler.models import (
    ChargeRefunded,
    ConnectAccountUpdated,
    EventPayload,
    InvoiceFailed,
    InvoicePaid,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from billing_reconciler.services import handlers
from billing_reconciler.services.handlers import HandlerContext, Transition


@dataclass(frozen=True)
class Route:
    payload_model: Type[Any]
    handler: Callable[[HandlerContext], Transition]

    def decode(self, obj: Dict[str, Any]) -> EventPayload:
        return self.payload_model.from_object(obj)


ROUTES: Dict[str, Route] = {
    "payment_intent.succeeded": Route(PaymentSucceeded, handlers.payment_succeeded),
    "payment_intent.payment_failed": Route(PaymentFailed, handlers.payment_failed),
    "invoice.payment_succeeded": Route(InvoicePaid, handlers.invoice_paid),
    "invoice.payment_failed": Route(InvoiceFailed, handlers.invoice_failed),
    "customer.subscription.updated": Route(SubscriptionUpdated, handlers.subscription_updated),
    "customer.subscription.deleted": Route(SubscriptionDeleted, handlers.subscription_deleted),
    "account.updated": Route(ConnectAccountUpdated, handlers.connect_account_updated),
    "charge.refunded": Route(ChargeRefunded, handlers.charge_refunded),
}


def route(event_type: str) -> Route:
    """The route for `event_type`; the processor adds new types over time and we ignore them."""
    try:
        return ROUTES[event_type]
    except KeyError:
        raise UnsupportedEventType(event_type) from None
