from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from billing_reconciler.core.normalize import clean_id, expandable_id, metadata_of

TENANT_ACTIVE = "active"
TENANT_SUSPENDED = "suspended"

BILLING_ACTIVE = "active"
BILLING_PAYMENT_FAILED = "payment_failed"
BILLING_CANCELED = "canceled"

INVOICE_PENDING = "pending"
INVOICE_PAID = "paid"
INVOICE_FAILED = "failed"


class StoredModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def to_item(self) -> Dict[str, Any]:
        return self.model_dump(mode="python", exclude_none=True)


class Billing(StoredModel):
    status: str = "none"
    last_payment_at: Optional[int] = None
    last_payment_amount: Optional[Decimal] = None
    last_payment_error: Optional[str] = None
    next_billing_date: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    connect_status: str = "none"  # active|pending|none
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    mrr: Optional[Decimal] = None
    # processor timestamps of the newest event applied to each field group
    status_event_at: int = 0
    payment_event_at: int = 0
    subscription_event_at: int = 0
    connect_event_at: int = 0
    last_event_at: int = 0
    version: int = 0


class Tenant(StoredModel):
    tenant_id: str
    kind: Literal["agency", "agency_client"] = "agency_client"
    status: str = TENANT_ACTIVE
    name: Optional[str] = None
    owner_tenant_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_connect_account_id: Optional[str] = None
    billing: Billing = Field(default_factory=Billing)
    _billing_stored: bool = PrivateAttr(default=True)

    @property
    def agency_tenant_id(self) -> Optional[str]:
        if self.kind == "agency":
            return self.tenant_id
        return self.owner_tenant_id


class Invoice(StoredModel):
    invoice_id: str
    provider_ref: str
    agency_tenant_id: Optional[str] = None
    client_tenant_id: Optional[str] = None
    amount: Decimal = Decimal("0.00")
    currency: str = "usd"
    status: Literal["pending", "paid", "failed"] = INVOICE_PENDING
    created_at: int
    paid_at: Optional[int] = None
    failed_at: Optional[int] = None
    status_at: int = 0
    refunded_amount: Optional[Decimal] = None
    refunded_at: Optional[int] = None
    last_event_id: Optional[str] = None
    version: int = 0


class ActivityRecord(StoredModel):
    activity_id: str
    agency_tenant_id: str
    type: str
    client_tenant_id: Optional[str] = None
    client_name: Optional[str] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    event_id: Optional[str] = None
    timestamp: int


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")
    object: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    type: str
    created: int = 0
    account: Optional[str] = None
    data: EventData = Field(default_factory=EventData)

    @property
    def object(self) -> Dict[str, Any]:
        return self.data.object


class TenantRefs(BaseModel):
    model_config = ConfigDict(frozen=True)
    client_tenant_id: Optional[str] = None
    agency_tenant_id: Optional[str] = None

    @classmethod
    def from_metadata(cls, md: Dict[str, Any]) -> "TenantRefs":
        client = md.get("clientTenantId") or md.get("client_tenant_id")
        agency = md.get("agencyTenantId") or md.get("agency_tenant_id")
        return cls(client_tenant_id=clean_id(client), agency_tenant_id=clean_id(agency))

    @property
    def target_tenant_id(self) -> Optional[str]:
        return self.client_tenant_id or self.agency_tenant_id

    @property
    def empty(self) -> bool:
        return self.target_tenant_id is None


# Event payloads, decoded once per delivery. Each variant carries only the
# fields its handler reads.

class PaymentSucceeded(BaseModel):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    payment_intent_id: str
    provider_ref: str
    amount_cents: int = 0
    currency: str = "usd"
    refs: TenantRefs

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "PaymentSucceeded":
        pi_id = str(obj.get("id") or "")
        return cls(
            payment_intent_id=pi_id,
            provider_ref=expandable_id(obj.get("invoice")) or pi_id,
            amount_cents=int(obj.get("amount_received") or obj.get("amount") or 0),
            currency=str(obj.get("currency") or "usd"),
            refs=TenantRefs.from_metadata(metadata_of(obj, "metadata")),
        )


class PaymentFailed(BaseModel):
    kind: Literal["payment_failed"] = "payment_failed"
    payment_intent_id: str
    provider_ref: str
    amount_cents: int = 0
    currency: str = "usd"
    error_message: Optional[str] = None
    refs: TenantRefs

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "PaymentFailed":
        pi_id = str(obj.get("id") or "")
        err = obj.get("last_payment_error") or {}
        return cls(
            payment_intent_id=pi_id,
            provider_ref=expandable_id(obj.get("invoice")) or pi_id,
            amount_cents=int(obj.get("amount") or 0),
            currency=str(obj.get("currency") or "usd"),
            error_message=(err.get("message") if isinstance(err, dict) else None) or None,
            refs=TenantRefs.from_metadata(metadata_of(obj, "metadata")),
        )


_INVOICE_METADATA_PATHS = (
    "metadata",
    "subscription_details.metadata",
    "parent.subscription_details.metadata",
)


def _invoice_subscription_id(obj: Dict[str, Any]) -> Optional[str]:
    sub = expandable_id(obj.get("subscription"))
    if sub:
        return sub
    parent = obj.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, dict) else None
    if isinstance(details, dict):
        return expandable_id(details.get("subscription"))
    return None


class InvoicePaid(BaseModel):
    kind: Literal["invoice_paid"] = "invoice_paid"
    provider_ref: str
    subscription_id: Optional[str] = None
    amount_cents: int = 0
    currency: str = "usd"
    refs: TenantRefs

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "InvoicePaid":
        return cls(
            provider_ref=str(obj.get("id") or ""),
            subscription_id=_invoice_subscription_id(obj),
            amount_cents=int(obj.get("amount_paid") or 0),
            currency=str(obj.get("currency") or "usd"),
            refs=TenantRefs.from_metadata(metadata_of(obj, *_INVOICE_METADATA_PATHS)),
        )


class InvoiceFailed(BaseModel):
    kind: Literal["invoice_failed"] = "invoice_failed"
    provider_ref: str
    subscription_id: Optional[str] = None
    amount_cents: int = 0
    currency: str = "usd"
    refs: TenantRefs

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "InvoiceFailed":
        return cls(
            provider_ref=str(obj.get("id") or ""),
            subscription_id=_invoice_subscription_id(obj),
            amount_cents=int(obj.get("amount_due") or 0),
            currency=str(obj.get("currency") or "usd"),
            refs=TenantRefs.from_metadata(metadata_of(obj, *_INVOICE_METADATA_PATHS)),
        )


def _current_period_end(obj: Dict[str, Any]) -> Optional[int]:
    if obj.get("current_period_end"):
        return int(obj["current_period_end"])
    # newer API versions moved the period onto subscription items
    items = ((obj.get("items") or {}).get("data")) or []
    ends = [int(it["current_period_end"]) for it in items if isinstance(it, dict) and it.get("current_period_end")]
    return max(ends) if ends else None


class SubscriptionUpdated(BaseModel):
    kind: Literal["subscription_updated"] = "subscription_updated"
    subscription_id: str
    status: str
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    refs: TenantRefs

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "SubscriptionUpdated":
        return cls(
            subscription_id=str(obj.get("id") or ""),
            status=str(obj.get("status") or "none"),
            current_period_end=_current_period_end(obj),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            refs=TenantRefs.from_metadata(metadata_of(obj, "metadata")),
        )


class SubscriptionDeleted(BaseModel):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    subscription_id: str
    canceled_at: Optional[int] = None
    refs: TenantRefs

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "SubscriptionDeleted":
        return cls(
            subscription_id=str(obj.get("id") or ""),
            canceled_at=int(obj["canceled_at"]) if obj.get("canceled_at") else None,
            refs=TenantRefs.from_metadata(metadata_of(obj, "metadata")),
        )


class ConnectAccountUpdated(BaseModel):
    kind: Literal["connect_account_updated"] = "connect_account_updated"
    account_id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    refs: TenantRefs

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ConnectAccountUpdated":
        md = metadata_of(obj, "metadata")
        refs = TenantRefs.from_metadata(md)
        if refs.empty and md.get("tenantId"):
            # Connect accounts belong to the agency itself
            refs = TenantRefs(agency_tenant_id=clean_id(md["tenantId"]))
        return cls(
            account_id=str(obj.get("id") or ""),
            charges_enabled=bool(obj.get("charges_enabled")),
            payouts_enabled=bool(obj.get("payouts_enabled")),
            details_submitted=bool(obj.get("details_submitted")),
            refs=refs,
        )


class ChargeRefunded(BaseModel):
    kind: Literal["charge_refunded"] = "charge_refunded"
    charge_id: str
    provider_ref: Optional[str] = None
    amount_refunded_cents: int = 0
    currency: str = "usd"
    refs: TenantRefs

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ChargeRefunded":
        return cls(
            charge_id=str(obj.get("id") or ""),
            provider_ref=expandable_id(obj.get("invoice")) or expandable_id(obj.get("payment_intent")),
            amount_refunded_cents=int(obj.get("amount_refunded") or 0),
            currency=str(obj.get("currency") or "usd"),
            refs=TenantRefs.from_metadata(metadata_of(obj, "metadata")),
        )


EventPayload = Union[
    PaymentSucceeded,
    PaymentFailed,
    InvoicePaid,
    InvoiceFailed,
    SubscriptionUpdated,
    SubscriptionDeleted,
    ConnectAccountUpdated,
    ChargeRefunded,
]


class WebhookAck(BaseModel):
    received: bool = True
    outcome: Optional[str] = None
    deduped: Optional[bool] = None


class ActivityFeedOut(BaseModel):
    items: List[ActivityRecord] = Field(default_factory=list)


class InvoiceHistoryOut(BaseModel):
    items: List[Invoice] = Field(default_factory=list)


class PruneOut(BaseModel):
    pruned: int
