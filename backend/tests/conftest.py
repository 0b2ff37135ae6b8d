from __future__ import annotations

import copy
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# Ensure `backend/` is on sys.path so `import imomate.*` works in tests.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

from boto3.dynamodb.conditions import AttributeBase, ConditionBase  # noqa: E402

from imomate.db.dynamodb.errors import DdbConflict, DdbThrottled  # noqa: E402
from imomate.db.dynamodb.pagination import decode_next_token, encode_next_token  # noqa: E402
from imomate.db.dynamodb.table import Page, from_ddb, to_ddb  # noqa: E402


_MISSING = object()


def _resolve(item: dict[str, Any], name: str) -> Any:
    cur: Any = item
    for part in name.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _operand(v: Any, item: dict[str, Any]) -> Any:
    if isinstance(v, AttributeBase):
        return _resolve(item, v.name)
    return to_ddb(v)


def matches(cond: Any, item: dict[str, Any]) -> bool:
    """Evaluate a boto3 condition (or a simple attribute_(not_)exists string) against an item."""
    if cond is None:
        return True
    if isinstance(cond, str):
        m = re.fullmatch(r"(attribute_exists|attribute_not_exists)\((\w+)\)", cond.strip())
        assert m, f"unsupported condition string: {cond}"
        present = m.group(2) in item
        return present if m.group(1) == "attribute_exists" else not present
    assert isinstance(cond, ConditionBase), f"unsupported condition: {cond!r}"

    expr = cond.get_expression()
    op = expr["operator"]
    vals = expr["values"]
    if op == "AND":
        return matches(vals[0], item) and matches(vals[1], item)
    if op == "OR":
        return matches(vals[0], item) or matches(vals[1], item)
    if op == "NOT":
        return not matches(vals[0], item)
    if op == "attribute_exists":
        return _operand(vals[0], item) is not _MISSING
    if op == "attribute_not_exists":
        return _operand(vals[0], item) is _MISSING

    left = _operand(vals[0], item)
    if left is _MISSING:
        return op == "<>"
    if op == "=":
        return left == _operand(vals[1], item)
    if op == "<>":
        return left != _operand(vals[1], item)
    if op == "IN":
        return left in [_operand(v, item) for v in vals[1]]
    if op == "begins_with":
        return isinstance(left, str) and left.startswith(str(_operand(vals[1], item)))
    if op == "contains":
        right = _operand(vals[1], item)
        if isinstance(left, str):
            return str(right) in left
        return right in (left or [])
    right = _operand(vals[1], item)
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    raise AssertionError(f"unsupported operator: {op}")


class FakeTable:
    """In-memory stand-in for DynamoTable (same method surface, same conditions)."""

    table_name = "fake"

    def __init__(self):
        self._items: dict[tuple[str, str], dict[str, Any]] = {}
        self.fail_updates = False
        self.fail_transactions = False
        self.transactions: list[int] = []

    # --- helpers ---

    @staticmethod
    def _k(key: dict[str, Any]) -> tuple[str, str]:
        return (str(key.get("pk")), str(key.get("sk")))

    def _check(self, k: tuple[str, str], condition: Any) -> None:
        current = self._items.get(k)
        if not matches(condition, current or {}):
            raise DdbConflict(message="The conditional request failed", operation="PutItem", table_name=self.table_name)

    def all_items(self) -> list[dict[str, Any]]:
        return [from_ddb(copy.deepcopy(v)) for v in self._items.values()]

    # --- DynamoTable surface ---

    def get_item(self, *, key: dict[str, Any], consistent_read: bool = True) -> dict[str, Any] | None:
        it = self._items.get(self._k(key))
        return from_ddb(copy.deepcopy(it)) if it else None

    def put_item(self, *, item: dict[str, Any], condition_expression: Any | None = None, **_: Any) -> dict[str, Any]:
        k = self._k(item)
        self._check(k, condition_expression)
        self._items[k] = to_ddb(copy.deepcopy(item))
        return {}

    def delete_item(self, *, key: dict[str, Any], condition_expression: Any | None = None) -> dict[str, Any]:
        k = self._k(key)
        self._check(k, condition_expression)
        self._items.pop(k, None)
        return {}

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
        if self.fail_updates:
            raise DdbThrottled(message="Rate exceeded", operation="UpdateItem", table_name=self.table_name, retryable=True)
        k = self._k(key)
        self._check(k, condition_expression)
        names = expression_attribute_names or {}
        values = to_ddb(expression_attribute_values)
        item = copy.deepcopy(self._items.get(k) or dict(key))

        for clause, body in re.findall(r"(SET|ADD)\s+(.*?)(?=\s+(?:SET|ADD)\s+|$)", update_expression):
            for part in body.split(","):
                part = part.strip()
                if clause == "SET":
                    name, val = [s.strip() for s in part.split("=", 1)]
                    item[names.get(name, name)] = values[val]
                else:
                    name, val = part.split()
                    attr = names.get(name, name)
                    item[attr] = item.get(attr, 0) + values[val]
        self._items[k] = item
        return from_ddb(copy.deepcopy(item))

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
        # Limit is applied before the filter, as DynamoDB does.
        sort_key = "gsi1sk" if index_name else "sk"
        rows = [it for it in self._items.values() if matches(key_condition_expression, it)]
        rows.sort(key=lambda it: (str(it.get(sort_key)), str(it.get("sk"))), reverse=not scan_index_forward)

        lek = decode_next_token(next_token, scope=scope) if next_token else None
        if lek:
            pos = [i for i, it in enumerate(rows) if it.get("pk") == lek.get("pk") and it.get("sk") == lek.get("sk")]
            rows = rows[pos[0] + 1:] if pos else []

        window = rows[: max(1, int(limit))]
        more = len(rows) > len(window)
        items = [from_ddb(copy.deepcopy(it)) for it in window if matches(filter_expression, it)]
        out_lek = None
        if more and window:
            last = window[-1]
            out_lek = {k: last.get(k) for k in ("pk", "sk", "gsi1pk", "gsi1sk") if k in last}
        return Page(items=items, next_token=encode_next_token(out_lek, scope=scope))

    def batch_put(self, *, items: list[dict[str, Any]]) -> int:
        n = 0
        for it in items:
            self._items[self._k(it)] = to_ddb(copy.deepcopy(it))
            n += 1
        return n

    def tx_put(self, *, item: dict[str, Any], condition_expression: str | None = None, **_: Any) -> dict[str, Any]:
        return {"item": copy.deepcopy(item), "condition": condition_expression}

    def transact_write(self, *, puts=(), retry_policy=None) -> dict[str, Any]:
        puts = list(puts or [])
        if self.fail_transactions:
            raise DdbConflict(message="Transaction cancelled", operation="TransactWriteItems", table_name=self.table_name)
        codes = []
        for p in puts:
            k = self._k(p["item"])
            codes.append("None" if matches(p.get("condition"), self._items.get(k) or {}) else "ConditionalCheckFailed")
        if "ConditionalCheckFailed" in codes:
            raise DdbConflict(
                message="Transaction cancelled",
                operation="TransactWriteItems",
                table_name=self.table_name,
                cancellation_codes=codes,
            )
        for p in puts:
            self._items[self._k(p["item"])] = to_ddb(copy.deepcopy(p["item"]))
        self.transactions.append(len(puts))
        return {"ok": True}


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))
