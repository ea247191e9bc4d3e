from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from billing_reconciler.core.errors import TransientStoreError, VersionConflict
from billing_reconciler.metrics import STORE_ERRORS

logger = logging.getLogger(__name__)

# (role, TransactItems entry); role names the item in conflict reports
TxItem = Tuple[str, Dict[str, Any]]


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def is_conditional_failure(exc: ClientError) -> bool:
    return error_code(exc) == "ConditionalCheckFailedException"


def store_failure(exc: Exception, action: str) -> TransientStoreError:
    STORE_ERRORS.inc()
    logger.error("DynamoDB %s failed: %s", action, exc)
    return TransientStoreError(f"store unavailable during {action}")


def ddb_get(table: Any, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    try:
        resp = table.get_item(Key=key, ConsistentRead=True)
    except (ClientError, BotoCoreError) as exc:
        raise store_failure(exc, "get_item") from exc
    return resp.get("Item")


def ddb_put(
    table: Any,
    item: Dict[str, Any],
    *,
    condition_expression: Optional[str] = None,
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> None:
    """Put an item. Conditional failures propagate as ClientError for the caller to interpret."""
    kwargs: Dict[str, Any] = {"Item": item}
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    if names:
        kwargs["ExpressionAttributeNames"] = names
    if values:
        kwargs["ExpressionAttributeValues"] = values
    try:
        table.put_item(**kwargs)
    except ClientError as exc:
        if is_conditional_failure(exc):
            raise
        raise store_failure(exc, "put_item") from exc
    except BotoCoreError as exc:
        raise store_failure(exc, "put_item") from exc


def ddb_delete(
    table: Any,
    key: Dict[str, Any],
    *,
    condition_expression: Optional[str] = None,
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> None:
    kwargs: Dict[str, Any] = {"Key": key}
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    if names:
        kwargs["ExpressionAttributeNames"] = names
    if values:
        kwargs["ExpressionAttributeValues"] = values
    try:
        table.delete_item(**kwargs)
    except ClientError as exc:
        if is_conditional_failure(exc):
            raise
        raise store_failure(exc, "delete_item") from exc
    except BotoCoreError as exc:
        raise store_failure(exc, "delete_item") from exc


def ddb_query_index(
    table: Any,
    index_name: str,
    key_attr: str,
    key_value: Any,
    *,
    limit: Optional[int] = None,
    newest_first: bool = False,
) -> List[Dict[str, Any]]:
    kwargs: Dict[str, Any] = {
        "IndexName": index_name,
        "KeyConditionExpression": "#k = :k",
        "ExpressionAttributeNames": {"#k": key_attr},
        "ExpressionAttributeValues": {":k": key_value},
        "ScanIndexForward": not newest_first,
    }
    if limit:
        kwargs["Limit"] = int(limit)
    try:
        resp = table.query(**kwargs)
    except (ClientError, BotoCoreError) as exc:
        raise store_failure(exc, "query") from exc
    return resp.get("Items", [])


def ddb_scan(
    table: Any,
    filter_expression: str,
    names: Dict[str, str],
    values: Dict[str, Any],
) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    kwargs: Dict[str, Any] = {
        "FilterExpression": filter_expression,
        "ExpressionAttributeNames": names,
        "ExpressionAttributeValues": values,
    }
    while True:
        try:
            resp = table.scan(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise store_failure(exc, "scan") from exc
        items.extend(resp.get("Items", []))
        last = resp.get("LastEvaluatedKey")
        if not last:
            return items
        kwargs["ExclusiveStartKey"] = last


def transact(client: Any, items: Sequence[TxItem]) -> None:
    """Write all items or none.

    A failed condition raises VersionConflict naming the role of the first
    item that failed; anything else the store reports is transient.
    """
    try:
        client.transact_write_items(TransactItems=[op for _, op in items])
    except ClientError as exc:
        if error_code(exc) != "TransactionCanceledException":
            raise store_failure(exc, "transact_write_items") from exc
        reasons = exc.response.get("CancellationReasons") or []
        for (role, _), reason in zip(items, reasons):
            code = (reason or {}).get("Code")
            if code == "ConditionalCheckFailed":
                raise VersionConflict(role) from exc
        if any((reason or {}).get("Code") == "TransactionConflict" for reason in reasons):
            raise VersionConflict(None) from exc
        raise store_failure(exc, "transact_write_items") from exc
    except BotoCoreError as exc:
        raise store_failure(exc, "transact_write_items") from exc
