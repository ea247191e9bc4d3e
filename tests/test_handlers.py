from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from billing_reconciler.models import Billing, Invoice, Tenant, WebhookEvent
from billing_reconciler.services import event_router, handlers
from billing_reconciler.services.handlers import HandlerContext

NOW = 1_700_000_500

CLIENT = Tenant(tenant_id="c1", kind="agency_client", name="Client One", owner_tenant_id="a1")
AGENCY = Tenant(tenant_id="a1", kind="agency", name="Acme Agency")


def ctx_for(
    event_type: str,
    obj: Dict[str, Any],
    *,
    created: int = 1_700_000_000,
    tenant: Tenant = CLIENT,
    invoice: Optional[Invoice] = None,
    event_id: str = "evt_1",
) -> HandlerContext:
    event = WebhookEvent(id=event_id, type=event_type, created=created, data={"object": obj})
    return HandlerContext(
        event=event,
        payload=event_router.route(event_type).decode(obj),
        tenant=tenant,
        agency_tenant_id=tenant.agency_tenant_id,
        invoice=invoice,
        now=NOW,
    )


def run(ctx: HandlerContext):
    return event_router.route(ctx.event.type).handler(ctx)


def with_billing(**fields: Any) -> Tenant:
    return CLIENT.model_copy(update={"billing": Billing(**fields)})


def test_payment_succeeded_records_payment_invoice_and_activity():
    t = run(ctx_for("payment_intent.succeeded", {"id": "pi_1", "amount": 5000, "currency": "usd"}))
    assert t.outcome == "applied"
    assert t.billing.status == "active"
    assert t.billing.last_payment_amount == Decimal("50.00")
    assert t.billing.last_event_at == 1_700_000_000
    assert t.invoice.invoice_id == "INV#pi_1"
    assert t.invoice.status == "paid"
    assert t.invoice.amount == Decimal("50.00")
    assert t.invoice.agency_tenant_id == "a1"
    assert t.invoice.client_tenant_id == "c1"
    assert t.activity.type == "payment_received"
    assert t.activity.activity_id == "evt_1#payment_received"
    assert t.activity.description == "Payment received: 50.00 USD"
    assert t.activity.client_name == "Client One"


def test_payment_intent_for_an_invoice_uses_the_invoice_reference():
    t = run(ctx_for("payment_intent.succeeded", {"id": "pi_1", "invoice": "in_9", "amount": 100}))
    assert t.invoice.provider_ref == "in_9"
    assert t.invoice.invoice_id == "INV#in_9"


def test_payment_failed_suspends_and_keeps_error():
    obj = {"id": "pi_2", "amount": 2500, "last_payment_error": {"message": "Card declined"}}
    t = run(ctx_for("payment_intent.payment_failed", obj))
    assert t.billing.status == "payment_failed"
    assert t.billing.last_payment_error == "Card declined"
    assert t.tenant_status == "suspended"
    assert t.activity.type == "payment_failed"
    assert t.activity.amount == Decimal("25.00")
    assert t.invoice is None


def test_older_event_does_not_move_billing_backwards():
    tenant = with_billing(status="payment_failed", status_event_at=1_700_000_100, payment_event_at=1_700_000_100, last_event_at=1_700_000_100)
    t = run(ctx_for("payment_intent.succeeded", {"id": "pi_1", "amount": 5000}, created=1_700_000_000, tenant=tenant))
    assert t.outcome == "stale"
    assert t.billing is None
    assert not t.writes_tenant
    # the ledger and feed still learn about the payment
    assert t.invoice.status == "paid"
    assert t.activity is not None


def test_event_at_same_timestamp_is_applied():
    tenant = with_billing(status="active", status_event_at=1_700_000_000, last_event_at=1_700_000_000)
    t = run(ctx_for("invoice.payment_failed", {"id": "in_1", "amount_due": 100}, tenant=tenant))
    assert t.outcome == "applied"
    assert t.billing.status == "payment_failed"


def test_late_subscription_update_still_lands_its_own_fields():
    tenant = with_billing(status="active", status_event_at=1_700_000_001, payment_event_at=1_700_000_001, last_event_at=1_700_000_001)
    obj = {"id": "sub_c1", "status": "past_due", "cancel_at_period_end": True, "current_period_end": 1_700_090_000}
    t = run(ctx_for("customer.subscription.updated", obj, created=1_700_000_000, tenant=tenant))
    assert t.outcome == "applied"
    assert t.billing.status == "active"
    assert t.billing.status_event_at == 1_700_000_001
    assert t.billing.cancel_at_period_end is True
    assert t.billing.next_billing_date == 1_700_090_000
    assert t.billing.subscription_event_at == 1_700_000_000
    assert t.billing.last_event_at == 1_700_000_001


def test_stale_invoice_failure_does_not_claim_a_suspension():
    tenant = with_billing(status="active", status_event_at=1_700_000_100, last_event_at=1_700_000_100)
    t = run(ctx_for("invoice.payment_failed", {"id": "in_1", "amount_due": 100}, tenant=tenant))
    assert t.billing.status == "active"
    assert t.billing.last_payment_error == "Invoice payment failed"
    assert t.tenant_status is None
    assert t.activity.description == "Invoice payment failed"


def test_stale_cancellation_records_the_cancel_but_not_a_suspension():
    tenant = with_billing(status="active", status_event_at=1_700_000_100, last_event_at=1_700_000_100)
    t = run(ctx_for("customer.subscription.deleted", {"id": "sub_c1", "canceled_at": 1_699_999_000}, tenant=tenant))
    assert t.billing.status == "active"
    assert t.billing.canceled_at == 1_699_999_000
    assert t.tenant_status is None
    assert t.activity.description == "Subscription canceled; a newer billing update took precedence"


def test_fully_stale_cancellation_writes_nothing():
    tenant = with_billing(status="active", status_event_at=1_700_000_100, subscription_event_at=1_700_000_100)
    t = run(ctx_for("customer.subscription.deleted", {"id": "sub_c1"}, tenant=tenant))
    assert t.outcome == "stale"
    assert not t.writes_tenant
    assert t.activity.description == "Subscription canceled; a newer billing update took precedence"


def test_invoice_failure_after_payment_wins_when_newer():
    paid = Invoice(invoice_id="INV#in_1", provider_ref="in_1", status="paid", created_at=NOW, status_at=100, paid_at=100)
    t = run(ctx_for("invoice.payment_failed", {"id": "in_1", "amount_due": 100}, created=200, invoice=paid))
    assert t.invoice.status == "failed"
    assert t.invoice.failed_at == 200
    assert t.invoice.paid_at == 100


def test_older_invoice_event_leaves_status():
    failed = Invoice(invoice_id="INV#in_1", provider_ref="in_1", status="failed", created_at=NOW, status_at=200)
    t = run(ctx_for("invoice.payment_succeeded", {"id": "in_1", "amount_paid": 100}, created=100, invoice=failed))
    assert t.invoice is None


def test_failed_wins_a_timestamp_tie():
    paid = Invoice(invoice_id="INV#in_1", provider_ref="in_1", status="paid", created_at=NOW, status_at=100)
    t = run(ctx_for("invoice.payment_failed", {"id": "in_1"}, created=100, invoice=paid))
    assert t.invoice.status == "failed"

    failed = Invoice(invoice_id="INV#in_1", provider_ref="in_1", status="failed", created_at=NOW, status_at=100)
    t = run(ctx_for("invoice.payment_succeeded", {"id": "in_1"}, created=100, invoice=failed))
    assert t.invoice is None


def test_invoice_paid_has_no_activity():
    t = run(ctx_for("invoice.payment_succeeded", {"id": "in_1", "amount_paid": 4200, "metadata": {"clientTenantId": "c1"}}))
    assert t.invoice.amount == Decimal("42.00")
    assert t.activity is None
    assert t.billing.mrr == Decimal("42.00")
    assert t.billing.last_payment_amount == Decimal("42.00")


def test_invoice_failed_suspends_with_activity():
    t = run(ctx_for("invoice.payment_failed", {"id": "in_1", "amount_due": 4200}))
    assert t.tenant_status == "suspended"
    assert t.invoice.status == "failed"
    assert t.activity.description == "Invoice payment failed - client suspended"


def test_subscription_update_never_moves_period_end_backwards():
    tenant = with_billing(status="active", next_billing_date=2_000)
    t = run(ctx_for("customer.subscription.updated", {"id": "sub_c1", "status": "past_due", "current_period_end": 1_000}, tenant=tenant))
    assert t.billing.status == "past_due"
    assert t.billing.next_billing_date == 2_000

    t = run(ctx_for("customer.subscription.updated", {"id": "sub_c1", "status": "active", "current_period_end": 3_000}, tenant=tenant))
    assert t.billing.next_billing_date == 3_000


def test_subscription_period_end_from_items():
    obj = {
        "id": "sub_c1",
        "status": "active",
        "cancel_at_period_end": True,
        "items": {"data": [{"current_period_end": 5_000}, {"current_period_end": 6_000}]},
    }
    t = run(ctx_for("customer.subscription.updated", obj))
    assert t.billing.next_billing_date == 6_000
    assert t.billing.cancel_at_period_end is True
    assert t.activity is None


def test_subscription_deleted_cancels_and_suspends():
    t = run(ctx_for("customer.subscription.deleted", {"id": "sub_c1", "canceled_at": 1_699_999_000}))
    assert t.billing.status == "canceled"
    assert t.billing.canceled_at == 1_699_999_000
    assert t.tenant_status == "suspended"
    assert t.activity.type == "subscription_canceled"
    assert t.activity.agency_tenant_id == "a1"
    assert t.activity.client_tenant_id == "c1"


def test_connect_activation_logs_once():
    obj = {"id": "acct_a1", "charges_enabled": True, "payouts_enabled": True, "details_submitted": True}
    t = run(ctx_for("account.updated", obj, tenant=AGENCY))
    assert t.billing.connect_status == "active"
    assert t.billing.charges_enabled is True
    assert t.activity.type == "billing_activated"
    assert t.activity.agency_tenant_id == "a1"
    assert t.activity.client_tenant_id is None

    already = AGENCY.model_copy(update={"billing": Billing(charges_enabled=True, connect_status="active")})
    t = run(ctx_for("account.updated", obj, tenant=already))
    assert t.activity is None


def test_connect_account_pending_until_charges_enabled():
    t = run(ctx_for("account.updated", {"id": "acct_a1", "details_submitted": True}, tenant=AGENCY))
    assert t.billing.connect_status == "pending"
    assert t.activity is None


def test_refund_updates_existing_invoice():
    paid = Invoice(invoice_id="INV#pi_1", provider_ref="pi_1", status="paid", amount=Decimal("50.00"), created_at=NOW, status_at=100)
    t = run(ctx_for("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 1000}, invoice=paid))
    assert t.invoice.status == "paid"
    assert t.invoice.refunded_amount == Decimal("10.00")
    assert t.activity.type == "payment_refunded"
    assert not t.writes_tenant


def test_refund_without_invoice_notes_it():
    t = run(ctx_for("charge.refunded", {"id": "ch_1", "payment_intent": "pi_x", "amount_refunded": 1000}))
    assert t.invoice is None
    assert t.notes == {"invoice": "not_found"}


def test_tenant_without_agency_gets_no_activity():
    orphan = Tenant(tenant_id="c9", kind="agency_client")
    t = run(ctx_for("payment_intent.succeeded", {"id": "pi_1", "amount": 100}, tenant=orphan))
    assert t.activity is None
    assert t.invoice.agency_tenant_id is None
