from __future__ import annotations

from typing import Any, List

from billing_reconciler.models import ActivityRecord
from billing_reconciler.services.ddb import TxItem, ddb_query_index


def activity_id_for(event_id: str, activity_type: str) -> str:
    return f"{event_id}#{activity_type}"


class ActivityLog:
    """Append-only, agency-scoped audit feed. Records are never updated."""

    def __init__(self, table: Any, *, agency_index: str) -> None:
        self.table = table
        self.agency_index = agency_index

    def append_op(self, record: ActivityRecord) -> TxItem:
        return (
            "activity",
            {
                "Put": {
                    "TableName": self.table.name,
                    "Item": record.to_item(),
                    "ConditionExpression": "attribute_not_exists(#id)",
                    "ExpressionAttributeNames": {"#id": "activity_id"},
                }
            },
        )

    def list_for_agency(self, agency_tenant_id: str, limit: int = 50) -> List[ActivityRecord]:
        items = ddb_query_index(
            self.table,
            self.agency_index,
            "agency_tenant_id",
            agency_tenant_id,
            limit=max(1, min(limit, 200)),
            newest_first=True,
        )
        return [ActivityRecord.model_validate(it) for it in items]
