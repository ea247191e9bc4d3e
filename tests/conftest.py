from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Dict

import pytest

ROOT = Path(__file__).resolve().parents[1]
HERE = Path(__file__).resolve().parent
for path in (ROOT, HERE):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from billing_reconciler.core.settings import S
from billing_reconciler.services.processor import ProcessorClient
from billing_reconciler.services.reconciler import Reconciler
from fakes import WEBHOOK_SECRET, build_fake_tables, encode, sign


@pytest.fixture
def tables():
    return build_fake_tables()


@pytest.fixture
def processor():
    return ProcessorClient(WEBHOOK_SECRET)


@pytest.fixture
def seeded(tables):
    """Agency a1 with client c1 (subscribed, billing in good standing)."""
    tables.tenants.items["a1"] = {
        "tenant_id": "a1",
        "kind": "agency",
        "status": "active",
        "name": "Acme Agency",
        "stripe_connect_account_id": "acct_a1",
        "billing": {"status": "active", "version": 0},
    }
    tables.tenants.items["c1"] = {
        "tenant_id": "c1",
        "kind": "agency_client",
        "status": "active",
        "name": "Client One",
        "owner_tenant_id": "a1",
        "stripe_subscription_id": "sub_c1",
        "billing": {"status": "active", "version": 0},
    }
    return tables


@pytest.fixture
def reconciler(seeded, processor):
    return Reconciler.from_settings(S, seeded, processor=processor)


@pytest.fixture
def deliver(reconciler) -> Callable[[Dict[str, Any]], Any]:
    def _deliver(event: Dict[str, Any]):
        body = encode(event)
        return reconciler.process(body, sign(body))

    return _deliver
