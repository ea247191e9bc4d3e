"""Billing state machine: one pure transition per processor event type.

Handlers never touch the store. They receive what the reconciler read and
return a `Transition` describing what to write; the reconciler writes it in a
single conditional transaction and re-runs the handler on a version conflict.

Ordering: the processor does not deliver in order. Billing fields fall into
groups (status, payment, subscription, connect) and each group keeps the
`created` timestamp of the newest event that wrote it (`<group>_event_at`).
An event writes a group only if it is not older than that timestamp, so a
late subscription update still lands its period end after a newer payment
has moved `status`. Invoice status follows the same rule against `invoice.status_at`, with
`failed` winning a tie.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional, Tuple

from billing_reconciler.core.normalize import cents_to_amount
from billing_reconciler.models import (
    BILLING_ACTIVE,
    BILLING_CANCELED,
    BILLING_PAYMENT_FAILED,
    INVOICE_FAILED,
    INVOICE_PAID,
    TENANT_SUSPENDED,
    ActivityRecord,
    Billing,
    ChargeRefunded,
    ConnectAccountUpdated,
    EventPayload,
    Invoice,
    InvoiceFailed,
    InvoicePaid,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    Tenant,
    WebhookEvent,
)
from billing_reconciler.services.activity import activity_id_for
from billing_reconciler.services.ledger import invoice_id_for

APPLIED = "applied"
STALE = "stale"


@dataclass(frozen=True)
class HandlerContext:
    event: WebhookEvent
    payload: EventPayload
    tenant: Tenant
    agency_tenant_id: Optional[str]
    invoice: Optional[Invoice]
    now: int

    @property
    def occurred_at(self) -> int:
        return int(self.event.created or self.now)

    def is_current(self, group: str) -> bool:
        return self.occurred_at >= int(getattr(self.tenant.billing, f"{group}_event_at") or 0)


@dataclass
class Transition:
    outcome: str = APPLIED
    billing: Optional[Billing] = None
    tenant_status: Optional[str] = None
    invoice: Optional[Invoice] = None
    activity: Optional[ActivityRecord] = None
    notes: Dict[str, Any] = field(default_factory=dict)

    @property
    def writes_tenant(self) -> bool:
        return self.billing is not None or self.tenant_status is not None


def _advance(ctx: HandlerContext, **groups: Dict[str, Any]) -> Tuple[Optional[Billing], FrozenSet[str]]:
    """Apply each group of changes the event is not older than.

    Returns the new billing record (None when no group applied) and the
    names of the groups that were applied.
    """
    at = ctx.occurred_at
    applied = frozenset(name for name in groups if ctx.is_current(name))
    if not applied:
        return None, applied
    update: Dict[str, Any] = {"last_event_at": max(at, int(ctx.tenant.billing.last_event_at or 0))}
    for name in applied:
        update.update(groups[name])
        update[f"{name}_event_at"] = at
    return ctx.tenant.billing.model_copy(update=update), applied


def _supersedes(existing: Invoice, status: str, at: int) -> bool:
    if existing.status == "pending":
        return True
    if at > existing.status_at:
        return True
    return at == existing.status_at and status == INVOICE_FAILED and existing.status != INVOICE_FAILED


def _invoice_status(ctx: HandlerContext, provider_ref: str, status: str, amount_cents: int, currency: str) -> Optional[Invoice]:
    at = ctx.occurred_at
    stamp = {"paid_at": at} if status == INVOICE_PAID else {"failed_at": at}
    existing = ctx.invoice
    if existing is None:
        return Invoice(
            invoice_id=invoice_id_for(provider_ref),
            provider_ref=provider_ref,
            agency_tenant_id=ctx.agency_tenant_id,
            client_tenant_id=_client_id(ctx.tenant),
            amount=cents_to_amount(amount_cents),
            currency=currency,
            status=status,
            created_at=ctx.now,
            status_at=at,
            last_event_id=ctx.event.id,
            **stamp,
        )
    if not _supersedes(existing, status, at):
        return None
    update: Dict[str, Any] = {"status": status, "status_at": at, "last_event_id": ctx.event.id, **stamp}
    if amount_cents:
        update["amount"] = cents_to_amount(amount_cents)
    return existing.model_copy(update=update)


def _client_id(tenant: Tenant) -> Optional[str]:
    return tenant.tenant_id if tenant.kind == "agency_client" else None


def _activity(
    ctx: HandlerContext,
    activity_type: str,
    *,
    amount: Optional[Decimal] = None,
    description: Optional[str] = None,
) -> Optional[ActivityRecord]:
    if not ctx.agency_tenant_id:
        return None
    return ActivityRecord(
        activity_id=activity_id_for(ctx.event.id, activity_type),
        agency_tenant_id=ctx.agency_tenant_id,
        type=activity_type,
        client_tenant_id=_client_id(ctx.tenant),
        client_name=ctx.tenant.name,
        amount=amount,
        description=description,
        event_id=ctx.event.id,
        timestamp=ctx.now,
    )


def _gated(billing: Optional[Billing]) -> str:
    return APPLIED if billing is not None else STALE


def payment_succeeded(ctx: HandlerContext) -> Transition:
    p: PaymentSucceeded = ctx.payload  # type: ignore[assignment]
    amount = cents_to_amount(p.amount_cents)
    billing, _ = _advance(
        ctx,
        status={"status": BILLING_ACTIVE},
        payment={"last_payment_at": ctx.occurred_at, "last_payment_amount": amount, "last_payment_error": None},
    )
    return Transition(
        outcome=_gated(billing),
        billing=billing,
        invoice=_invoice_status(ctx, p.provider_ref, INVOICE_PAID, p.amount_cents, p.currency),
        activity=_activity(
            ctx,
            "payment_received",
            amount=amount,
            description=f"Payment received: {amount:.2f} {p.currency.upper()}",
        ),
    )


def payment_failed(ctx: HandlerContext) -> Transition:
    p: PaymentFailed = ctx.payload  # type: ignore[assignment]
    error = p.error_message or "Payment failed"
    billing, applied = _advance(
        ctx,
        status={"status": BILLING_PAYMENT_FAILED},
        payment={"last_payment_error": error},
    )
    return Transition(
        outcome=_gated(billing),
        billing=billing,
        tenant_status=TENANT_SUSPENDED if "status" in applied else None,
        activity=_activity(
            ctx,
            "payment_failed",
            amount=cents_to_amount(p.amount_cents),
            description=f"Payment failed: {error}",
        ),
    )


def invoice_paid(ctx: HandlerContext) -> Transition:
    p: InvoicePaid = ctx.payload  # type: ignore[assignment]
    amount = cents_to_amount(p.amount_cents)
    billing, _ = _advance(
        ctx,
        status={"status": BILLING_ACTIVE},
        payment={
            "last_payment_at": ctx.occurred_at,
            "last_payment_amount": amount,
            "last_payment_error": None,
            "mrr": amount,
        },
    )
    return Transition(
        outcome=_gated(billing),
        billing=billing,
        invoice=_invoice_status(ctx, p.provider_ref, INVOICE_PAID, p.amount_cents, p.currency),
    )


def invoice_failed(ctx: HandlerContext) -> Transition:
    p: InvoiceFailed = ctx.payload  # type: ignore[assignment]
    billing, applied = _advance(
        ctx,
        status={"status": BILLING_PAYMENT_FAILED},
        payment={"last_payment_error": "Invoice payment failed"},
    )
    suspended = "status" in applied
    return Transition(
        outcome=_gated(billing),
        billing=billing,
        tenant_status=TENANT_SUSPENDED if suspended else None,
        invoice=_invoice_status(ctx, p.provider_ref, INVOICE_FAILED, p.amount_cents, p.currency),
        activity=_activity(
            ctx,
            "payment_failed",
            amount=cents_to_amount(p.amount_cents),
            description="Invoice payment failed - client suspended" if suspended else "Invoice payment failed",
        ),
    )


def subscription_updated(ctx: HandlerContext) -> Transition:
    p: SubscriptionUpdated = ctx.payload  # type: ignore[assignment]
    current_end = ctx.tenant.billing.next_billing_date
    next_billing = p.current_period_end or current_end
    if current_end and next_billing and next_billing < current_end:
        # a period end never moves backwards
        next_billing = current_end
    billing, _ = _advance(
        ctx,
        status={"status": p.status},
        subscription={"next_billing_date": next_billing, "cancel_at_period_end": p.cancel_at_period_end},
    )
    return Transition(outcome=_gated(billing), billing=billing)


def subscription_deleted(ctx: HandlerContext) -> Transition:
    p: SubscriptionDeleted = ctx.payload  # type: ignore[assignment]
    billing, applied = _advance(
        ctx,
        status={"status": BILLING_CANCELED},
        subscription={"canceled_at": p.canceled_at or ctx.occurred_at},
    )
    canceled = "status" in applied
    description = "Subscription canceled" if canceled else "Subscription canceled; a newer billing update took precedence"
    return Transition(
        outcome=_gated(billing),
        billing=billing,
        tenant_status=TENANT_SUSPENDED if canceled else None,
        activity=_activity(ctx, "subscription_canceled", description=description),
    )


def connect_account_updated(ctx: HandlerContext) -> Transition:
    p: ConnectAccountUpdated = ctx.payload  # type: ignore[assignment]
    billing, _ = _advance(
        ctx,
        connect={
            "connect_status": "active" if p.charges_enabled else "pending",
            "charges_enabled": p.charges_enabled,
            "payouts_enabled": p.payouts_enabled,
            "details_submitted": p.details_submitted,
        },
    )
    activity = None
    if billing is not None and p.charges_enabled and not ctx.tenant.billing.charges_enabled:
        activity = _activity(ctx, "billing_activated", description="Stripe Connect activated; client billing enabled")
    return Transition(outcome=_gated(billing), billing=billing, activity=activity)


def charge_refunded(ctx: HandlerContext) -> Transition:
    p: ChargeRefunded = ctx.payload  # type: ignore[assignment]
    amount = cents_to_amount(p.amount_refunded_cents)
    invoice = None
    if ctx.invoice is not None:
        invoice = ctx.invoice.model_copy(
            update={"refunded_amount": amount, "refunded_at": ctx.occurred_at, "last_event_id": ctx.event.id}
        )
    return Transition(
        invoice=invoice,
        activity=_activity(ctx, "payment_refunded", amount=amount, description=f"Refund processed: {amount:.2f}"),
        notes={} if invoice is not None else {"invoice": "not_found"},
    )
