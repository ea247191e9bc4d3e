from __future__ import annotations

from decimal import Decimal

import pytest

from billing_reconciler.core.errors import UnsupportedEventType
from billing_reconciler.core.normalize import cents_to_amount, expandable_id, metadata_of
from billing_reconciler.models import (
    ConnectAccountUpdated,
    InvoiceFailed,
    InvoicePaid,
    PaymentSucceeded,
    TenantRefs,
)
from billing_reconciler.services import event_router


def test_cents_to_amount():
    assert cents_to_amount(5000) == Decimal("50.00")
    assert cents_to_amount(1) == Decimal("0.01")
    assert cents_to_amount(None) == Decimal("0.00")


def test_expandable_id_accepts_ids_and_objects():
    assert expandable_id("in_1") == "in_1"
    assert expandable_id({"id": "in_2", "object": "invoice"}) == "in_2"
    assert expandable_id("  ") is None
    assert expandable_id(None) is None


def test_metadata_first_path_wins():
    obj = {"metadata": {"clientTenantId": "c1", "note": ""}, "parent": {"metadata": {"clientTenantId": "c2", "note": "x"}}}
    md = metadata_of(obj, "metadata", "parent.metadata")
    assert md == {"clientTenantId": "c1", "note": "x"}


def test_tenant_refs_accept_snake_case():
    refs = TenantRefs.from_metadata({"client_tenant_id": " c1 ", "agency_tenant_id": "a1"})
    assert refs.client_tenant_id == "c1"
    assert refs.target_tenant_id == "c1"
    assert TenantRefs.from_metadata({"agencyTenantId": "a1"}).target_tenant_id == "a1"
    assert TenantRefs.from_metadata({}).empty


def test_invoice_refs_from_subscription_parent():
    obj = {
        "id": "in_1",
        "amount_due": 900,
        "parent": {"subscription_details": {"subscription": "sub_1", "metadata": {"clientTenantId": "c1"}}},
    }
    payload = InvoiceFailed.from_object(obj)
    assert payload.subscription_id == "sub_1"
    assert payload.refs.client_tenant_id == "c1"
    assert payload.amount_cents == 900


def test_invoice_paid_expanded_subscription():
    payload = InvoicePaid.from_object({"id": "in_1", "subscription": {"id": "sub_2"}, "amount_paid": 100})
    assert payload.subscription_id == "sub_2"
    assert payload.refs.empty


def test_payment_intent_prefers_amount_received():
    payload = PaymentSucceeded.from_object({"id": "pi_1", "amount": 5000, "amount_received": 4500, "currency": "eur"})
    assert payload.amount_cents == 4500
    assert payload.provider_ref == "pi_1"
    assert payload.currency == "eur"


def test_connect_account_tenant_id_is_the_agency():
    payload = ConnectAccountUpdated.from_object({"id": "acct_1", "metadata": {"tenantId": "a1"}})
    assert payload.refs.agency_tenant_id == "a1"
    assert payload.refs.client_tenant_id is None


def test_unknown_event_type_is_unsupported():
    with pytest.raises(UnsupportedEventType):
        event_router.route("customer.created")
    assert event_router.route("charge.refunded").payload_model.__name__ == "ChargeRefunded"
