from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from billing_reconciler.core.errors import TransientStoreError
from billing_reconciler.core.time import now_ts
from billing_reconciler.services.ddb import (
    TxItem,
    ddb_delete,
    ddb_get,
    ddb_put,
    ddb_scan,
    is_conditional_failure,
    store_failure,
)

logger = logging.getLogger(__name__)

PENDING = "pending"
DONE = "done"


@dataclass(frozen=True)
class Reservation:
    event_id: str
    fresh: bool
    token: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return not self.fresh


class IdempotencyGuard:
    """Durable set of processed processor event ids.

    A delivery reserves its event id before any handler runs. The reservation
    is flipped to `done` inside the same transaction as the handler's writes,
    or released if the handler fails, so a redelivery after a failure can
    reserve again. A pending reservation older than the lease is considered
    abandoned (crashed worker) and may be taken over.
    """

    def __init__(
        self,
        table: Any,
        *,
        lease_seconds: int = 60,
        retention_seconds: int = 7 * 24 * 3600,
        ttl_attr: str = "ttl_epoch",
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.table = table
        self.lease_seconds = lease_seconds
        self.retention_seconds = retention_seconds
        self.ttl_attr = ttl_attr
        self.clock = clock

    def check_and_reserve(self, event_id: str) -> Reservation:
        now = self.clock()
        token = secrets.token_hex(16)
        item = {
            "event_id": event_id,
            "status": PENDING,
            "token": token,
            "reserved_at": now,
            self.ttl_attr: now + self.retention_seconds,
        }
        try:
            ddb_put(
                self.table,
                item,
                condition_expression="attribute_not_exists(#id) OR (#st = :pending AND #ra < :stale)",
                names={"#id": "event_id", "#st": "status", "#ra": "reserved_at"},
                values={":pending": PENDING, ":stale": now - self.lease_seconds},
            )
            return Reservation(event_id=event_id, fresh=True, token=token)
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise

        existing = ddb_get(self.table, {"event_id": event_id})
        if existing and existing.get("status") == DONE:
            return Reservation(event_id=event_id, fresh=False)
        # Another delivery of this event holds a live lease. Acking now could
        # lose the event if that delivery fails, so ask for a redelivery.
        raise TransientStoreError(f"event {event_id} is in flight on another delivery")

    def _commit_update(self, reservation: Reservation) -> Dict[str, Any]:
        now = self.clock()
        return {
            "Key": {"event_id": reservation.event_id},
            "UpdateExpression": "SET #st = :done, #ca = :now, #ttl = :ttl",
            "ConditionExpression": "#tok = :tok",
            "ExpressionAttributeNames": {
                "#st": "status",
                "#ca": "completed_at",
                "#ttl": self.ttl_attr,
                "#tok": "token",
            },
            "ExpressionAttributeValues": {
                ":done": DONE,
                ":now": now,
                ":ttl": now + self.retention_seconds,
                ":tok": reservation.token,
            },
        }

    def commit_op(self, reservation: Reservation) -> TxItem:
        return ("guard", {"Update": {"TableName": self.table.name, **self._commit_update(reservation)}})

    def commit(self, reservation: Reservation) -> bool:
        """Mark a no-op outcome processed. False means our lease was taken over."""
        try:
            self.table.update_item(**self._commit_update(reservation))
            return True
        except ClientError as exc:
            if is_conditional_failure(exc):
                logger.warning("Reservation for %s was taken over before commit", reservation.event_id)
                return False
            raise store_failure(exc, "update_item") from exc
        except BotoCoreError as exc:
            raise store_failure(exc, "update_item") from exc

    def release(self, reservation: Reservation) -> None:
        # Best effort: an unreleased reservation expires with its lease.
        try:
            ddb_delete(
                self.table,
                {"event_id": reservation.event_id},
                condition_expression="#tok = :tok AND #st = :pending",
                names={"#tok": "token", "#st": "status"},
                values={":tok": reservation.token, ":pending": PENDING},
            )
        except (ClientError, TransientStoreError) as exc:
            logger.warning("Could not release reservation for %s: %s", reservation.event_id, exc)

    def prune(self, now: Optional[int] = None) -> int:
        """Delete completed entries past retention. Pending entries are never touched."""
        now = self.clock() if now is None else now
        names = {"#st": "status", "#ttl": self.ttl_attr}
        values = {":done": DONE, ":now": now}
        expired = ddb_scan(self.table, "#st = :done AND #ttl < :now", names, values)
        pruned = 0
        for item in expired:
            try:
                ddb_delete(
                    self.table,
                    {"event_id": item["event_id"]},
                    condition_expression="#st = :done AND #ttl < :now",
                    names=names,
                    values=values,
                )
                pruned += 1
            except ClientError as exc:
                if not is_conditional_failure(exc):
                    raise
                # re-reserved or refreshed since the scan
                continue
        if pruned:
            logger.info("Pruned %d processed event ids", pruned)
        return pruned
