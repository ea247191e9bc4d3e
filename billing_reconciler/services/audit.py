from __future__ import annotations

import json
import logging
from typing import Any, Dict

from billing_reconciler.core.time import now_ts
from billing_reconciler.metrics import record_outcome

audit_logger = logging.getLogger("billing_reconciler.audit")

# Data-quality and failure outcomes are always logged, even with auditing off.
WARN_OUTCOMES = frozenset({"unroutable", "unknown_tenant", "failed"})


def emit_outcome(outcome: str, event_id: str, event_type: str, *, enabled: bool = True, **fields: Any) -> Dict[str, Any]:
    """One structured record per processed delivery."""
    record_outcome(event_type, outcome)
    payload: Dict[str, Any] = {
        "event": "billing_webhook",
        "outcome": outcome,
        "event_id": event_id,
        "event_type": event_type,
        "ts": now_ts(),
        **{k: v for k, v in fields.items() if v is not None},
    }
    line = json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)
    if outcome in WARN_OUTCOMES:
        audit_logger.warning(line)
    elif enabled:
        audit_logger.info(line)
    return payload
