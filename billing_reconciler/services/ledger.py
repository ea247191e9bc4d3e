from __future__ import annotations

from typing import Any, List, Optional

from billing_reconciler.models import Invoice
from billing_reconciler.services.ddb import TxItem, ddb_get, ddb_query_index


def invoice_id_for(provider_ref: str) -> str:
    # One row per processor reference: the key is derived from it, so
    # concurrent first sightings collide instead of inserting twice.
    return f"INV#{provider_ref}"


class InvoiceLedger:
    def __init__(self, table: Any, *, agency_index: str) -> None:
        self.table = table
        self.agency_index = agency_index

    def get_by_provider_ref(self, provider_ref: str) -> Optional[Invoice]:
        item = ddb_get(self.table, {"invoice_id": invoice_id_for(provider_ref)})
        return Invoice.model_validate(item) if item else None

    def put_op(self, invoice: Invoice, expected_version: Optional[int]) -> TxItem:
        """Upsert conditioned on the version read; None means the row did not exist."""
        item = invoice.model_copy(update={"version": (expected_version or 0) + 1}).to_item()
        if expected_version is None:
            condition = "attribute_not_exists(#id)"
            values = None
        else:
            condition = "#ver = :expected"
            values = {":expected": expected_version}
        op = {
            "TableName": self.table.name,
            "Item": item,
            "ConditionExpression": condition,
            "ExpressionAttributeNames": {"#id": "invoice_id"} if expected_version is None else {"#ver": "version"},
        }
        if values:
            op["ExpressionAttributeValues"] = values
        return ("invoice", {"Put": op})

    def list_for_agency(self, agency_tenant_id: str, limit: int = 50) -> List[Invoice]:
        items = ddb_query_index(
            self.table,
            self.agency_index,
            "agency_tenant_id",
            agency_tenant_id,
            limit=limit,
            newest_first=True,
        )
        return [Invoice.model_validate(it) for it in items]
