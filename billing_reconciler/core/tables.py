from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .settings import Settings


@dataclass(frozen=True)
class Tables:
    tenants: Any
    invoices: Any
    agency_activity: Any
    processed_events: Any
    # Low-level client of the same resource; accepts plain Python values for TransactWriteItems.
    client: Any


def build_tables(ddb: Any, settings: Settings) -> Tables:
    return Tables(
        tenants=ddb.Table(settings.tenants_table_name),
        invoices=ddb.Table(settings.invoices_table_name),
        agency_activity=ddb.Table(settings.agency_activity_table_name),
        processed_events=ddb.Table(settings.processed_events_table_name),
        client=ddb.meta.client,
    )
