from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Iterator

from boto3.dynamodb.types import TypeSerializer

from ...observability.logging import get_logger
from .client import dynamodb_client, table_resource
from .errors import DdbInternal, DdbNotFound
from .pagination import decode_next_token, encode_next_token
from .retry import TRANSACTION_POLICY, RetryPolicy, ddb_call


log = get_logger("ddb_table")

_serializer = TypeSerializer()


def to_ddb(value: Any) -> Any:
    """Convert Python values into what boto3 accepts (floats become Decimal)."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_ddb(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_ddb(v) for v in value]
    return value


def from_ddb(value: Any) -> Any:
    """Convert boto3 Decimals back to int/float so items serialize as plain JSON."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_ddb(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_ddb(v) for v in value]
    if isinstance(value, set):
        return {from_ddb(v) for v in value}
    return value


def _serialize_item(item: dict[str, Any]) -> dict[str, Any]:
    # The low-level client expects AttributeValue shape ({'S': '...'}).
    return {k: _serializer.serialize(to_ddb(v)) for k, v in item.items()}


def _expression_kwargs(
    condition_expression: str | None,
    names: dict[str, str] | None,
    values: dict[str, Any] | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    if names:
        kwargs["ExpressionAttributeNames"] = names
    if values:
        kwargs["ExpressionAttributeValues"] = to_ddb(values)
    return kwargs


@dataclass(slots=True)
class Page:
    items: list[dict[str, Any]]
    next_token: str | None


class DynamoTable:
    def __init__(self, *, table_name: str):
        self.table_name = str(table_name)
        self._table = table_resource(self.table_name)
        self._client = dynamodb_client()

    # --- basic operations ---

    def get_item(self, *, key: dict[str, Any]) -> dict[str, Any] | None:
        def _op():
            resp = self._table.get_item(Key=key, ConsistentRead=True)
            return resp.get("Item")

        item = ddb_call("GetItem", _op, table_name=self.table_name, key=key)
        return from_ddb(item) if item else None

    def get_required(self, *, key: dict[str, Any], message: str = "Item not found") -> dict[str, Any]:
        item = self.get_item(key=key)
        if not item:
            raise DdbNotFound(message=message, operation="GetItem", table_name=self.table_name, key=key)
        return item

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        def _op():
            kwargs = _expression_kwargs(
                condition_expression, expression_attribute_names, expression_attribute_values
            )
            return self._table.put_item(Item=to_ddb(item), **kwargs)

        key = {"pk": item.get("pk"), "sk": item.get("sk")}
        return ddb_call("PutItem", _op, table_name=self.table_name, key=key)

    def delete_item(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        def _op():
            kwargs = _expression_kwargs(
                condition_expression, expression_attribute_names, expression_attribute_values
            )
            return self._table.delete_item(Key=key, **kwargs)

        return ddb_call("DeleteItem", _op, table_name=self.table_name, key=key)

    def update_item(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any] | None,
        condition_expression: str | None = None,
        return_values: str = "ALL_NEW",
    ) -> dict[str, Any] | None:
        def _op():
            kwargs = _expression_kwargs(
                condition_expression, expression_attribute_names, expression_attribute_values
            )
            resp = self._table.update_item(
                Key=key,
                UpdateExpression=update_expression,
                ReturnValues=return_values,
                **kwargs,
            )
            return resp.get("Attributes")

        attrs = ddb_call("UpdateItem", _op, table_name=self.table_name, key=key)
        return from_ddb(attrs) if attrs else None

    # --- query/pagination ---

    def query_page(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        limit: int = 50,
        scan_index_forward: bool = False,
        filter_expression: Any | None = None,
        next_token: str | None = None,
    ) -> Page:
        lim = max(1, min(500, int(limit or 50)))
        lek = decode_next_token(next_token) if next_token else None

        def _op():
            kwargs: dict[str, Any] = {
                "KeyConditionExpression": key_condition_expression,
                "ScanIndexForward": bool(scan_index_forward),
                "Limit": lim,
            }
            if index_name:
                kwargs["IndexName"] = index_name
            if filter_expression is not None:
                kwargs["FilterExpression"] = filter_expression
            # Only pass ExclusiveStartKey when present.
            if isinstance(lek, dict) and lek:
                kwargs["ExclusiveStartKey"] = lek
            return self._table.query(**kwargs)

        resp = ddb_call("Query", _op, table_name=self.table_name)
        items = [from_ddb(it) for it in (resp.get("Items") or [])]
        out_lek = from_ddb(resp.get("LastEvaluatedKey")) if resp.get("LastEvaluatedKey") else None
        return Page(items=items, next_token=encode_next_token(out_lek))

    def query_all(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        scan_index_forward: bool = False,
        max_items: int | None = 5000,
    ) -> list[dict[str, Any]]:
        """Drain a query across pages (bounded by `max_items` unless it is None)."""
        return list(
            self.iter_query(
                key_condition_expression=key_condition_expression,
                index_name=index_name,
                scan_index_forward=scan_index_forward,
                max_items=max_items,
            )
        )

    def iter_query(
        self,
        *,
        key_condition_expression: Any,
        index_name: str | None = None,
        scan_index_forward: bool = False,
        max_items: int | None = 5000,
    ) -> Iterator[dict[str, Any]]:
        """
        Yield items across pages. A cap that cuts the result short is logged
        as `ddb_query_truncated`; `max_items=None` reads everything.
        """
        seen = 0
        token: str | None = None
        while True:
            pg = self.query_page(
                key_condition_expression=key_condition_expression,
                index_name=index_name,
                scan_index_forward=scan_index_forward,
                limit=500,
                next_token=token,
            )
            for it in pg.items:
                if max_items is not None and seen >= max_items:
                    log.warning(
                        "ddb_query_truncated", table=self.table_name, index=index_name, max_items=max_items
                    )
                    return
                yield it
                seen += 1
            token = pg.next_token
            if not token:
                return

    # --- transactions ---

    def transact_write(
        self,
        *,
        puts: Iterable[dict[str, Any]] = (),
        deletes: Iterable[dict[str, Any]] = (),
        updates: Iterable[dict[str, Any]] = (),
        condition_checks: Iterable[dict[str, Any]] = (),
        retry_policy: RetryPolicy | None = None,
    ) -> dict[str, Any]:
        # Entries must already be in client shape (see tx_* builders).
        items: list[dict[str, Any]] = []
        items.extend({"Put": p} for p in puts)
        items.extend({"Delete": d} for d in deletes)
        items.extend({"Update": u} for u in updates)
        items.extend({"ConditionCheck": c} for c in condition_checks)

        if not items:
            return {"ok": True}

        def _op():
            return self._client.transact_write_items(TransactItems=items)

        return ddb_call(
            "TransactWriteItems",
            _op,
            table_name=self.table_name,
            retry_policy=retry_policy or TRANSACTION_POLICY,
        )

    # Builders for transact items (client shape)

    def _tx_common(
        self,
        out: dict[str, Any],
        condition_expression: str | None,
        names: dict[str, str] | None,
        values: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if condition_expression:
            out["ConditionExpression"] = condition_expression
        if names:
            out["ExpressionAttributeNames"] = names
        if values:
            out["ExpressionAttributeValues"] = _serialize_item(values)
        return out

    def tx_put(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        out = {"TableName": self.table_name, "Item": _serialize_item(item)}
        return self._tx_common(out, condition_expression, expression_attribute_names, expression_attribute_values)

    def tx_delete(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        out = {"TableName": self.table_name, "Key": _serialize_item(key)}
        return self._tx_common(out, condition_expression, expression_attribute_names, expression_attribute_values)

    def tx_update(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any] | None,
        condition_expression: str | None = None,
    ) -> dict[str, Any]:
        out = {
            "TableName": self.table_name,
            "Key": _serialize_item(key),
            "UpdateExpression": update_expression,
        }
        return self._tx_common(out, condition_expression, expression_attribute_names, expression_attribute_values)


def get_main_table() -> DynamoTable:
    from ...settings import settings

    if not settings.ddb_table_name:
        raise DdbInternal(message="DDB_TABLE_NAME is not set", operation="Config")
    return DynamoTable(table_name=settings.ddb_table_name)
