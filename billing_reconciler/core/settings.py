from __future__ import annotations

import os
from dataclasses import dataclass


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False")


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")
    dynamodb_endpoint_url: str = os.environ.get("DYNAMODB_ENDPOINT_URL", "")

    # Store I/O must fit inside the processor's webhook timeout
    ddb_connect_timeout_seconds: float = float(os.environ.get("DDB_CONNECT_TIMEOUT_SECONDS", "2"))
    ddb_read_timeout_seconds: float = float(os.environ.get("DDB_READ_TIMEOUT_SECONDS", "3"))
    ddb_max_attempts: int = int(os.environ.get("DDB_MAX_ATTEMPTS", "3"))

    # DynamoDB tables
    tenants_table_name: str = os.environ.get("TENANTS_TABLE_NAME", "tenants")
    tenants_subscription_index: str = os.environ.get("TENANTS_SUBSCRIPTION_INDEX", "stripe_subscription_id-index")
    tenants_connect_account_index: str = os.environ.get("TENANTS_CONNECT_ACCOUNT_INDEX", "stripe_connect_account_id-index")

    invoices_table_name: str = os.environ.get("INVOICES_TABLE_NAME", "invoices")
    invoices_agency_index: str = os.environ.get("INVOICES_AGENCY_INDEX", "agency_tenant_id-created_at-index")

    agency_activity_table_name: str = os.environ.get("AGENCY_ACTIVITY_TABLE_NAME", "agency_activity")
    agency_activity_index: str = os.environ.get("AGENCY_ACTIVITY_INDEX", "agency_tenant_id-timestamp-index")

    processed_events_table_name: str = os.environ.get("PROCESSED_EVENTS_TABLE_NAME", "processed_events")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")

    # Stripe
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_signature_tolerance_seconds: int = int(os.environ.get("STRIPE_SIGNATURE_TOLERANCE_SECONDS", "300"))

    # Reconciliation
    processed_event_retention_days: int = int(os.environ.get("PROCESSED_EVENT_RETENTION_DAYS", "7"))
    event_reservation_lease_seconds: int = int(os.environ.get("EVENT_RESERVATION_LEASE_SECONDS", "60"))
    cas_max_attempts: int = int(os.environ.get("CAS_MAX_ATTEMPTS", "5"))

    # Operator endpoints (activity feed, invoice history, prune)
    ops_api_token: str = os.environ.get("OPS_API_TOKEN", "")

    # Observability
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")
    audit_log_enabled: bool = _flag("AUDIT_LOG_ENABLED", "1")
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()

    @property
    def processed_event_retention_seconds(self) -> int:
        return self.processed_event_retention_days * 24 * 3600


S = Settings()
