from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from billing_reconciler.core.errors import TransientStoreError
from billing_reconciler.models import Billing, Tenant
from billing_reconciler.services.ddb import TxItem, ddb_get, ddb_query_index

logger = logging.getLogger(__name__)


class TenantBillingStore:
    """Authoritative per-tenant billing record.

    Tenants are created by the tenant directory; this store only reads them
    and rewrites their `billing` and `status` attributes through a
    compare-and-swap on `billing.version`.
    """

    def __init__(self, table: Any, *, subscription_index: str, connect_account_index: str) -> None:
        self.table = table
        self.subscription_index = subscription_index
        self.connect_account_index = connect_account_index

    def _parse(self, item: Optional[Dict[str, Any]]) -> Optional[Tenant]:
        if not item:
            return None
        try:
            tenant = Tenant.model_validate(item)
        except ValidationError as exc:
            # A record we cannot read must not be overwritten with guesses.
            logger.error("Tenant record %s is unreadable: %s", item.get("tenant_id"), exc.errors()[:3])
            raise TransientStoreError(f"tenant {item.get('tenant_id')} record is unreadable") from exc
        tenant._billing_stored = isinstance(item.get("billing"), dict)
        return tenant

    def get(self, tenant_id: str) -> Optional[Tenant]:
        return self._parse(ddb_get(self.table, {"tenant_id": tenant_id}))

    def _find_one(self, index: str, attr: str, value: str) -> Optional[Tenant]:
        items = ddb_query_index(self.table, index, attr, value, limit=2)
        if len(items) > 1:
            logger.warning("%s=%s matches more than one tenant; using %s", attr, value, items[0].get("tenant_id"))
        return self._parse(items[0]) if items else None

    def find_by_subscription(self, subscription_id: str) -> Optional[Tenant]:
        return self._find_one(self.subscription_index, "stripe_subscription_id", subscription_id)

    def find_by_connect_account(self, account_id: str) -> Optional[Tenant]:
        return self._find_one(self.connect_account_index, "stripe_connect_account_id", account_id)

    def cas_update_op(self, tenant: Tenant, billing: Billing, status: str, now: int) -> TxItem:
        """Write `billing` and `status` only if nobody changed the billing record since `tenant` was read.

        Fields are written one by one under `billing.` so attributes other
        services keep in the same map survive the update.
        """
        expected = int(tenant.billing.version)
        new_billing = billing.model_copy(update={"version": expected + 1})
        names = {"#id": "tenant_id", "#b": "billing", "#ver": "version", "#st": "status", "#u": "updated_at"}
        values: Dict[str, Any] = {":status": status, ":now": now}

        if not tenant._billing_stored:
            values[":billing"] = new_billing.to_item()
            update = "SET #b = :billing, #st = :status, #u = :now"
            condition = "attribute_exists(#id) AND attribute_not_exists(#b)"
        else:
            sets = ["#st = :status", "#u = :now"]
            removes = []
            for n, (field, value) in enumerate(new_billing.model_dump(mode="python").items()):
                if field == "version":
                    continue
                names[f"#f{n}"] = field
                if value is None:
                    removes.append(f"#b.#f{n}")
                else:
                    values[f":f{n}"] = value
                    sets.append(f"#b.#f{n} = :f{n}")
            sets.append("#b.#ver = :next")
            values[":next"] = expected + 1
            values[":expected"] = expected
            update = "SET " + ", ".join(sets)
            if removes:
                update += " REMOVE " + ", ".join(removes)
            if expected:
                condition = "attribute_exists(#id) AND #b.#ver = :expected"
            else:
                condition = "attribute_exists(#id) AND (attribute_not_exists(#b.#ver) OR #b.#ver = :expected)"
        return (
            "tenant",
            {
                "Update": {
                    "TableName": self.table.name,
                    "Key": {"tenant_id": tenant.tenant_id},
                    "UpdateExpression": update,
                    "ConditionExpression": condition,
                    "ExpressionAttributeNames": names,
                    "ExpressionAttributeValues": values,
                }
            },
        )
