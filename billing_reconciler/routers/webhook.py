from __future__ import annotations

import hmac
from functools import lru_cache
from typing import Optional

import anyio
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from billing_reconciler.core.aws import dynamodb_resource
from billing_reconciler.core.errors import AuthenticationError, MalformedEvent, TransientStoreError
from billing_reconciler.core.settings import S
from billing_reconciler.core.tables import Tables, build_tables
from billing_reconciler.models import ActivityFeedOut, InvoiceHistoryOut, PruneOut, WebhookAck
from billing_reconciler.services.reconciler import Reconciler

router = APIRouter(tags=["billing"])


@lru_cache(maxsize=1)
def get_tables() -> Tables:
    return build_tables(dynamodb_resource(S), S)


@lru_cache(maxsize=1)
def get_reconciler() -> Reconciler:
    return Reconciler.from_settings(S, get_tables())


def require_operator(x_ops_token: Optional[str] = Header(default=None)) -> None:
    if not S.ops_api_token:
        raise HTTPException(501, "Operator endpoints are not configured")
    if not x_ops_token or not hmac.compare_digest(x_ops_token, S.ops_api_token):
        raise HTTPException(401, "Invalid operator token")


@router.post("/billing/webhook", response_model=WebhookAck, response_model_exclude_none=True)
@router.post("/api/stripe/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def billing_webhook(req: Request, reconciler: Reconciler = Depends(get_reconciler)) -> WebhookAck:
    if not reconciler.processor.configured:
        raise HTTPException(501, "Stripe webhook secret not configured")

    payload = await req.body()
    sig = req.headers.get("stripe-signature")

    try:
        # boto3 is blocking; keep it off the event loop
        return await anyio.to_thread.run_sync(reconciler.process, payload, sig)
    except (AuthenticationError, MalformedEvent) as exc:
        raise HTTPException(400, f"Webhook error: {exc}") from exc
    except TransientStoreError as exc:
        raise HTTPException(500, "Webhook processing failed; redelivery expected") from exc


@router.get(
    "/billing/agencies/{agency_id}/activity",
    response_model=ActivityFeedOut,
    dependencies=[Depends(require_operator)],
)
def agency_activity(
    agency_id: str,
    limit: int = Query(50, ge=1, le=200),
    reconciler: Reconciler = Depends(get_reconciler),
) -> ActivityFeedOut:
    try:
        return ActivityFeedOut(items=reconciler.activity.list_for_agency(agency_id, limit=limit))
    except TransientStoreError as exc:
        raise HTTPException(503, "Activity store unavailable") from exc


@router.get(
    "/billing/agencies/{agency_id}/invoices",
    response_model=InvoiceHistoryOut,
    dependencies=[Depends(require_operator)],
)
def agency_invoices(
    agency_id: str,
    limit: int = Query(50, ge=1, le=200),
    reconciler: Reconciler = Depends(get_reconciler),
) -> InvoiceHistoryOut:
    try:
        return InvoiceHistoryOut(items=reconciler.ledger.list_for_agency(agency_id, limit=limit))
    except TransientStoreError as exc:
        raise HTTPException(503, "Invoice store unavailable") from exc


@router.post(
    "/billing/processed-events/prune",
    response_model=PruneOut,
    dependencies=[Depends(require_operator)],
)
def prune_processed_events(reconciler: Reconciler = Depends(get_reconciler)) -> PruneOut:
    try:
        return PruneOut(pruned=reconciler.guard.prune())
    except TransientStoreError as exc:
        raise HTTPException(503, "Processed-event store unavailable") from exc
