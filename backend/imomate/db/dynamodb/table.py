from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from boto3.dynamodb.types import TypeSerializer

from .client import dynamodb_client, table_resource
from .errors import DdbInternal
from .pagination import decode_next_token, encode_next_token
from .retry import RetryPolicy, ddb_call


_serializer = TypeSerializer()


def to_ddb(value: Any) -> Any:
    """Recursively convert floats to Decimal; DynamoDB rejects Python floats."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_ddb(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_ddb(v) for v in value]
    return value


def from_ddb(value: Any) -> Any:
    """Recursively convert Decimal back to int (when integral) or float."""
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
    # The low-level client expects AttributeValue shape ({'S': '...'} etc).
    return {k: _serializer.serialize(to_ddb(v)) for k, v in item.items()}


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

    def get_item(self, *, key: dict[str, Any], consistent_read: bool = True) -> dict[str, Any] | None:
        def _op():
            resp = self._table.get_item(Key=key, ConsistentRead=bool(consistent_read))
            return resp.get("Item")

        item = ddb_call("GetItem", _op, table_name=self.table_name, key=key)
        return from_ddb(item) if item else None

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: Any | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        def _op():
            kwargs: dict[str, Any] = {"Item": to_ddb(item)}
            if condition_expression is not None:
                kwargs["ConditionExpression"] = condition_expression
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names
            if expression_attribute_values:
                kwargs["ExpressionAttributeValues"] = to_ddb(expression_attribute_values)
            return self._table.put_item(**kwargs)

        return ddb_call("PutItem", _op, table_name=self.table_name, key={"pk": item.get("pk"), "sk": item.get("sk")})

    def delete_item(
        self,
        *,
        key: dict[str, Any],
        condition_expression: Any | None = None,
    ) -> dict[str, Any]:
        def _op():
            kwargs: dict[str, Any] = {"Key": key}
            if condition_expression is not None:
                kwargs["ConditionExpression"] = condition_expression
            return self._table.delete_item(**kwargs)

        return ddb_call("DeleteItem", _op, table_name=self.table_name, key=key)

    def update_item(
        self,
        *,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_names: dict[str, str] | None,
        expression_attribute_values: dict[str, Any],
        condition_expression: str | None = None,
        return_values: str = "ALL_NEW",
    ) -> dict[str, Any] | None:
        def _op():
            kwargs: dict[str, Any] = {
                "Key": key,
                "UpdateExpression": update_expression,
                "ExpressionAttributeValues": to_ddb(expression_attribute_values),
                "ReturnValues": return_values,
            }
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression
            resp = self._table.update_item(**kwargs)
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
        scope: str | None = None,
    ) -> Page:
        """
        One page of a Query. `scope` binds the returned cursor to its caller
        (tenant + collection); a cursor minted under another scope is rejected.
        """
        lim = max(1, min(1000, int(limit or 50)))
        lek = decode_next_token(next_token, scope=scope) if next_token else None

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
            if isinstance(lek, dict) and lek:
                kwargs["ExclusiveStartKey"] = to_ddb(lek)
            return self._table.query(**kwargs)

        resp = ddb_call("Query", _op, table_name=self.table_name)
        items = [from_ddb(it) for it in (resp.get("Items") or [])]
        out_lek = resp.get("LastEvaluatedKey")
        return Page(items=items, next_token=encode_next_token(from_ddb(out_lek), scope=scope))

    # --- batch ---

    def batch_put(self, *, items: Iterable[dict[str, Any]]) -> int:
        """Unconditional bulk write; boto3's batch_writer handles chunking and unprocessed items."""
        rows = [to_ddb(it) for it in items]

        def _op():
            with self._table.batch_writer(overwrite_by_pkeys=["pk", "sk"]) as writer:
                for row in rows:
                    writer.put_item(Item=row)
            return len(rows)

        return ddb_call("BatchWriteItem", _op, table_name=self.table_name)

    # --- transactions ---

    def transact_write(
        self,
        *,
        puts: Iterable[dict[str, Any]] = (),
        retry_policy: RetryPolicy | None = None,
    ) -> dict[str, Any]:
        # Each entry must already be in client shape (see tx_put).
        items = [{"Put": p} for p in puts]

        if not items:
            return {"ok": True}
        if len(items) > 100:
            raise DdbInternal(
                message="Transaction exceeds 100 items",
                operation="TransactWriteItems",
                table_name=self.table_name,
            )

        def _op():
            return self._client.transact_write_items(TransactItems=items)

        return ddb_call(
            "TransactWriteItems",
            _op,
            table_name=self.table_name,
            retry_policy=retry_policy or RetryPolicy(max_attempts=6, base_delay_s=0.08, max_delay_s=2.0),
        )

    # Transact item builder (client shape)

    def tx_put(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        out: dict[str, Any] = {
            "TableName": self.table_name,
            "Item": _serialize_item(item),
        }
        if condition_expression:
            out["ConditionExpression"] = condition_expression
        if expression_attribute_names:
            out["ExpressionAttributeNames"] = expression_attribute_names
        if expression_attribute_values:
            out["ExpressionAttributeValues"] = _serialize_item(expression_attribute_values)
        return out


def get_main_table() -> DynamoTable:
    from ...settings import settings

    if not settings.ddb_table_name:
        raise DdbInternal(message="DDB_TABLE_NAME is not set", operation="Config")
    return DynamoTable(table_name=settings.ddb_table_name)
