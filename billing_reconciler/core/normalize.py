from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

CENT = Decimal("0.01")


def cents_to_amount(cents: Any) -> Decimal:
    """Processor amounts are integer minor units; we store two-decimal major units."""
    return (Decimal(int(cents or 0)) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


def clean_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def metadata_of(obj: Dict[str, Any], *paths: str) -> Dict[str, Any]:
    """Merge metadata dicts found at dotted paths, first path wins."""
    merged: Dict[str, Any] = {}
    for path in reversed(paths):
        node: Any = obj
        for part in path.split("."):
            node = node.get(part) if isinstance(node, dict) else None
            if node is None:
                break
        if isinstance(node, dict):
            merged.update({k: v for k, v in node.items() if v not in (None, "")})
    return merged


def expandable_id(value: Any) -> Optional[str]:
    # Stripe fields may be an id string or an expanded object
    if isinstance(value, dict):
        return clean_id(value.get("id"))
    return clean_id(value)
