from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from billing_reconciler.core.errors import (
    TransientStoreError,
    UnknownTenant,
    UnroutableEvent,
    UnsupportedEventType,
    VersionConflict,
)
from billing_reconciler.core.settings import Settings
from billing_reconciler.core.tables import Tables
from billing_reconciler.core.time import now_ts
from billing_reconciler.metrics import CAS_RETRIES
from billing_reconciler.models import EventPayload, Tenant, TenantRefs, WebhookAck, WebhookEvent
from billing_reconciler.services import event_router
from billing_reconciler.services.activity import ActivityLog
from billing_reconciler.services.audit import emit_outcome
from billing_reconciler.services.ddb import TxItem, transact
from billing_reconciler.services.handlers import HandlerContext, Transition
from billing_reconciler.services.idempotency import IdempotencyGuard, Reservation
from billing_reconciler.services.ledger import InvoiceLedger
from billing_reconciler.services.processor import ProcessorClient
from billing_reconciler.services.tenant_store import TenantBillingStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Mirrors processor events into tenant billing state.

    verify -> reserve -> route -> resolve tenant -> handler -> one
    transaction writing {tenant billing, invoice, activity, guard commit}.
    Every delivery is independent; the only shared state is the store.
    """

    def __init__(
        self,
        processor: ProcessorClient,
        guard: IdempotencyGuard,
        tenants: TenantBillingStore,
        ledger: InvoiceLedger,
        activity: ActivityLog,
        client: Any,
        *,
        max_attempts: int = 5,
        audit_enabled: bool = True,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.processor = processor
        self.guard = guard
        self.tenants = tenants
        self.ledger = ledger
        self.activity = activity
        self.client = client
        self.max_attempts = max(1, max_attempts)
        self.audit_enabled = audit_enabled
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, tables: Tables, processor: Optional[ProcessorClient] = None) -> "Reconciler":
        return cls(
            processor or ProcessorClient.from_settings(settings),
            IdempotencyGuard(
                tables.processed_events,
                lease_seconds=settings.event_reservation_lease_seconds,
                retention_seconds=settings.processed_event_retention_seconds,
                ttl_attr=settings.ddb_ttl_attr,
            ),
            TenantBillingStore(
                tables.tenants,
                subscription_index=settings.tenants_subscription_index,
                connect_account_index=settings.tenants_connect_account_index,
            ),
            InvoiceLedger(tables.invoices, agency_index=settings.invoices_agency_index),
            ActivityLog(tables.agency_activity, agency_index=settings.agency_activity_index),
            tables.client,
            max_attempts=settings.cas_max_attempts,
            audit_enabled=settings.audit_log_enabled,
        )

    def process(self, payload: bytes, sig_header: Optional[str]) -> WebhookAck:
        event = self.processor.verify_event(payload, sig_header)
        return self.handle(event)

    def handle(self, event: WebhookEvent) -> WebhookAck:
        reservation = self.guard.check_and_reserve(event.id)
        if reservation.duplicate:
            self._emit("duplicate", event)
            return WebhookAck(outcome="duplicate", deduped=True)
        try:
            outcome = self._dispatch(event, reservation)
        except Exception as exc:
            self.guard.release(reservation)
            self._emit("failed", event, error=type(exc).__name__, detail=str(exc)[:200])
            raise
        return WebhookAck(outcome=outcome, deduped=True if outcome == "duplicate" else None)

    def _emit(self, outcome: str, event: WebhookEvent, **fields: Any) -> None:
        emit_outcome(outcome, event.id, event.type, enabled=self.audit_enabled, **fields)

    def _finish_noop(self, outcome: str, event: WebhookEvent, reservation: Reservation, **fields: Any) -> str:
        if not self.guard.commit(reservation):
            outcome = "duplicate"
        self._emit(outcome, event, **fields)
        return outcome

    def _dispatch(self, event: WebhookEvent, reservation: Reservation) -> str:
        try:
            route = event_router.route(event.type)
        except UnsupportedEventType:
            return self._finish_noop("unsupported", event, reservation)

        try:
            payload = route.decode(event.object)
        except (ValidationError, TypeError, ValueError) as exc:
            return self._finish_noop("unroutable", event, reservation, reason="undecodable_payload", detail=str(exc)[:200])

        try:
            tenant = self._resolve_tenant(event, payload)
        except UnroutableEvent:
            return self._finish_noop("unroutable", event, reservation, reason="missing_tenant_metadata")
        except UnknownTenant as exc:
            return self._finish_noop(
                "unknown_tenant",
                event,
                reservation,
                tenant_id=exc.tenant_id,
                agency_tenant_id=payload.refs.agency_tenant_id,
            )

        provider_ref = getattr(payload, "provider_ref", None)
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                refreshed = self.tenants.get(tenant.tenant_id)
                if refreshed is None:
                    return self._finish_noop("unknown_tenant", event, reservation, tenant_id=tenant.tenant_id)
                tenant = refreshed

            ctx = HandlerContext(
                event=event,
                payload=payload,
                tenant=tenant,
                agency_tenant_id=self._agency_for(tenant, payload.refs),
                invoice=self.ledger.get_by_provider_ref(provider_ref) if provider_ref else None,
                now=self.clock(),
            )
            transition = route.handler(ctx)
            try:
                transact(self.client, self._write_set(ctx, transition, reservation))
            except VersionConflict as exc:
                if exc.role in ("guard", "activity"):
                    # Another delivery already completed this event.
                    if exc.role == "activity":
                        self.guard.commit(reservation)
                    self._emit("duplicate", event, tenant_id=tenant.tenant_id, conflict=exc.role)
                    return "duplicate"
                CAS_RETRIES.inc()
                logger.info(
                    "Version conflict on %s for %s (attempt %d/%d)",
                    exc.role or "write set",
                    event.id,
                    attempt,
                    self.max_attempts,
                )
                continue

            self._emit(
                transition.outcome,
                event,
                tenant_id=tenant.tenant_id,
                agency_tenant_id=ctx.agency_tenant_id,
                billing_status=transition.billing.status if transition.billing else None,
                tenant_status=transition.tenant_status,
                invoice_status=transition.invoice.status if transition.invoice else None,
                activity_type=transition.activity.type if transition.activity else None,
                **transition.notes,
            )
            return transition.outcome

        raise TransientStoreError(
            f"billing write for tenant {tenant.tenant_id} lost {self.max_attempts} version races"
        )

    def _resolve_tenant(self, event: WebhookEvent, payload: EventPayload) -> Tenant:
        target = payload.refs.target_tenant_id
        if target:
            tenant = self.tenants.get(target)
            if tenant is None:
                raise UnknownTenant(target)
            return tenant

        # Fall back to processor object ids the directory links to tenants.
        subscription_id = getattr(payload, "subscription_id", None)
        if subscription_id:
            tenant = self.tenants.find_by_subscription(subscription_id)
            if tenant is not None:
                return tenant
        account_id = getattr(payload, "account_id", None) or event.account
        if account_id and payload.kind == "connect_account_updated":
            tenant = self.tenants.find_by_connect_account(account_id)
            if tenant is not None:
                return tenant
        raise UnroutableEvent(event.id, event.type)

    def _agency_for(self, tenant: Tenant, refs: TenantRefs) -> Optional[str]:
        stored = tenant.agency_tenant_id
        if stored and refs.agency_tenant_id and refs.agency_tenant_id != stored:
            logger.warning(
                "Event names agency %s but tenant %s belongs to %s; using the stored parent",
                refs.agency_tenant_id,
                tenant.tenant_id,
                stored,
            )
        if not stored and tenant.kind == "agency_client":
            logger.warning("Client tenant %s has no parent agency on record", tenant.tenant_id)
        return stored or refs.agency_tenant_id

    def _write_set(self, ctx: HandlerContext, transition: Transition, reservation: Reservation) -> List[TxItem]:
        items: List[TxItem] = []
        if transition.writes_tenant:
            items.append(
                self.tenants.cas_update_op(
                    ctx.tenant,
                    transition.billing or ctx.tenant.billing,
                    transition.tenant_status or ctx.tenant.status,
                    ctx.now,
                )
            )
        if transition.invoice is not None:
            items.append(self.ledger.put_op(transition.invoice, ctx.invoice.version if ctx.invoice else None))
        if transition.activity is not None:
            items.append(self.activity.append_op(transition.activity))
        items.append(self.guard.commit_op(reservation))
        return items
