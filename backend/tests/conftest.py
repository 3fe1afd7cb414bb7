from __future__ import annotations

import copy
import importlib
import re
import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure `backend/` is on sys.path so `import peeap.*` works in tests.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

from peeap.auth.cognito import VerifiedUser  # noqa: E402
from peeap.db.dynamodb.errors import DdbConflict  # noqa: E402
from peeap.db.dynamodb.table import DynamoTable, Page  # noqa: E402


_INDEX_KEYS = {
    None: ("pk", "sk"),
    "GSI1": ("gsi1pk", "gsi1sk"),
    "GSI2": ("gsi2pk", "gsi2sk"),
}


def _conflict(op: str, key: dict[str, Any]) -> DdbConflict:
    return DdbConflict(message="conditional check failed", operation=op, table_name="Fake", key=key)


def _name(token: str, names: dict[str, str] | None) -> str:
    token = token.strip()
    if token.startswith("#"):
        return str((names or {})[token])
    return token


def _key_matches(cond: Any, item: dict[str, Any]) -> bool:
    ex = cond.get_expression()
    op = ex["operator"]
    vals = ex["values"]
    if op == "AND":
        return all(_key_matches(c, item) for c in vals)
    cur = item.get(vals[0].name)
    if cur is None:
        return False
    if op == "=":
        return cur == vals[1]
    if op == "<=":
        return cur <= vals[1]
    if op == "<":
        return cur < vals[1]
    if op == ">=":
        return cur >= vals[1]
    if op == ">":
        return cur > vals[1]
    if op == "BETWEEN":
        return vals[1] <= cur <= vals[2]
    if op == "begins_with":
        return str(cur).startswith(vals[1])
    raise AssertionError(f"unsupported key condition: {op}")


class FakeTable:
    """
    In-memory stand-in for DynamoTable.

    Understands the expressions repositories build: `SET a = :x, ... REMOVE b`
    updates, and `attribute_(not_)exists`, `=` and `IN` conditions joined by AND.
    """

    table_name = "Fake"

    def __init__(self):
        # Keyed by (pk, sk)
        self.items: dict[tuple[str, str], dict[str, Any]] = {}

    @staticmethod
    def _k(key: dict[str, Any]) -> tuple[str, str]:
        return str(key.get("pk") or ""), str(key.get("sk") or "")

    # --- conditions / updates ---

    def _check(
        self,
        cur: dict[str, Any] | None,
        expr: str | None,
        names: dict[str, str] | None,
        values: dict[str, Any] | None,
    ) -> bool:
        if not expr:
            return True
        values = values or {}
        for clause in re.split(r"\s+AND\s+", expr.strip()):
            clause = clause.strip()
            m = re.fullmatch(r"attribute_(not_)?exists\((.+)\)", clause)
            if m:
                present = cur is not None and _name(m.group(2), names) in cur
                if present == bool(m.group(1)):
                    return False
                continue
            m = re.fullmatch(r"(\S+)\s+IN\s+\((.+)\)", clause)
            if m:
                opts = [values[t.strip()] for t in m.group(2).split(",")]
                if cur is None or cur.get(_name(m.group(1), names)) not in opts:
                    return False
                continue
            m = re.fullmatch(r"(\S+)\s*=\s*(:\S+)", clause)
            if m:
                if cur is None or cur.get(_name(m.group(1), names)) != values[m.group(2)]:
                    return False
                continue
            raise AssertionError(f"unsupported condition: {clause}")
        return True

    @staticmethod
    def _apply(
        cur: dict[str, Any],
        expr: str,
        names: dict[str, str] | None,
        values: dict[str, Any] | None,
    ) -> dict[str, Any]:
        m = re.fullmatch(r"\s*(?:SET\s+(?P<set>.*?))?\s*(?:REMOVE\s+(?P<rm>.*?))?\s*", expr)
        assert m and (m.group("set") or m.group("rm")), f"unsupported update: {expr}"
        out = dict(cur)
        for assign in (m.group("set") or "").split(","):
            if not assign.strip():
                continue
            left, right = assign.split("=", 1)
            out[_name(left, names)] = copy.deepcopy((values or {})[right.strip()])
        for attr in (m.group("rm") or "").split(","):
            if attr.strip():
                out.pop(_name(attr, names), None)
        return out

    # --- basic operations ---

    def get_item(self, *, key: dict[str, Any]) -> dict[str, Any] | None:
        it = self.items.get(self._k(key))
        return copy.deepcopy(it) if it else None

    def put_item(
        self,
        *,
        item: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        k = self._k(item)
        if not self._check(
            self.items.get(k), condition_expression, expression_attribute_names, expression_attribute_values
        ):
            raise _conflict("PutItem", {"pk": k[0], "sk": k[1]})
        self.items[k] = copy.deepcopy(item)
        return {}

    def delete_item(
        self,
        *,
        key: dict[str, Any],
        condition_expression: str | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        expression_attribute_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        k = self._k(key)
        if not self._check(
            self.items.get(k), condition_expression, expression_attribute_names, expression_attribute_values
        ):
            raise _conflict("DeleteItem", key)
        self.items.pop(k, None)
        return {}

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
        k = self._k(key)
        cur = self.items.get(k)
        if not self._check(cur, condition_expression, expression_attribute_names, expression_attribute_values):
            raise _conflict("UpdateItem", key)
        base = cur if cur is not None else {"pk": k[0], "sk": k[1]}
        self.items[k] = self._apply(base, update_expression, expression_attribute_names, expression_attribute_values)
        return copy.deepcopy(self.items[k])

    # --- queries ---

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
        assert filter_expression is None
        pk_attr, sk_attr = _INDEX_KEYS[index_name]
        rows = [
            it for it in self.items.values() if pk_attr in it and _key_matches(key_condition_expression, it)
        ]
        rows.sort(key=lambda it: str(it.get(sk_attr) or ""), reverse=not scan_index_forward)
        start = int(next_token or 0)
        end = start + max(1, int(limit or 50))
        return Page(
            items=[copy.deepcopy(it) for it in rows[start:end]],
            next_token=str(end) if end < len(rows) else None,
        )

    # Paging and the item cap run through the real implementation over query_page.
    iter_query = DynamoTable.iter_query
    query_all = DynamoTable.query_all

    # --- transactions ---

    def tx_put(self, *, item, condition_expression=None, expression_attribute_names=None, expression_attribute_values=None):
        return {
            "Item": copy.deepcopy(item),
            "ConditionExpression": condition_expression,
            "ExpressionAttributeNames": expression_attribute_names,
            "ExpressionAttributeValues": expression_attribute_values,
        }

    def tx_delete(self, *, key, condition_expression=None, expression_attribute_names=None, expression_attribute_values=None):
        return {
            "Key": dict(key),
            "ConditionExpression": condition_expression,
            "ExpressionAttributeNames": expression_attribute_names,
            "ExpressionAttributeValues": expression_attribute_values,
        }

    def tx_update(self, *, key, update_expression, expression_attribute_names, expression_attribute_values, condition_expression=None):
        return {
            "Key": dict(key),
            "UpdateExpression": update_expression,
            "ConditionExpression": condition_expression,
            "ExpressionAttributeNames": expression_attribute_names,
            "ExpressionAttributeValues": expression_attribute_values,
        }

    def transact_write(self, *, puts=(), deletes=(), updates=(), condition_checks=(), retry_policy=None):
        staged = dict(self.items)

        def _ok(entry: dict[str, Any], k: tuple[str, str]) -> None:
            if not self._check(
                staged.get(k),
                entry.get("ConditionExpression"),
                entry.get("ExpressionAttributeNames"),
                entry.get("ExpressionAttributeValues"),
            ):
                raise _conflict("TransactWriteItems", {"pk": k[0], "sk": k[1]})

        for p in puts:
            k = self._k(p["Item"])
            _ok(p, k)
            staged[k] = copy.deepcopy(p["Item"])
        for d in deletes:
            k = self._k(d["Key"])
            _ok(d, k)
            staged.pop(k, None)
        for u in updates:
            k = self._k(u["Key"])
            _ok(u, k)
            base = staged.get(k) or {"pk": k[0], "sk": k[1]}
            staged[k] = self._apply(
                base, u["UpdateExpression"], u.get("ExpressionAttributeNames"), u.get("ExpressionAttributeValues")
            )
        for c in condition_checks:
            _ok(c, self._k(c["Key"]))
        self.items = staged
        return {"ok": True}


_TABLE_MODULES = (
    "peeap.repositories.common",
    "peeap.repositories.businesses_repo",
    "peeap.repositories.cards_repo",
    "peeap.repositories.checkout_sessions_repo",
    "peeap.repositories.invoices_repo",
    "peeap.repositories.monime_transactions_repo",
    "peeap.repositories.multivendor_repo",
    "peeap.repositories.notifications_repo",
    "peeap.repositories.outbox_repo",
    "peeap.repositories.payouts_repo",
    "peeap.repositories.recurring_invoices_repo",
    "peeap.repositories.school_connections_repo",
    "peeap.repositories.transactions_repo",
    "peeap.repositories.users_repo",
    "peeap.repositories.wallets_repo",
    "peeap.modules.wallets.wallet_service",
)


@pytest.fixture()
def fake_table(monkeypatch):
    t = FakeTable()
    for mod_name in _TABLE_MODULES:
        monkeypatch.setattr(importlib.import_module(mod_name), "get_main_table", lambda: t)
    return t


@pytest.fixture()
def no_outbox(monkeypatch):
    """Collect queued push events instead of writing them to the outbox."""
    from peeap.repositories import outbox_repo

    queued: list[dict[str, Any]] = []

    def _enqueue(*, event_type: str, payload: dict[str, Any], dedupe_key: str | None = None):
        queued.append({"eventType": event_type, "payload": payload, "dedupeKey": dedupe_key})
        return {"eventId": dedupe_key or f"evt_{len(queued)}"}

    monkeypatch.setattr(outbox_repo, "enqueue_event", _enqueue)
    return queued


def make_user(sub: str = "user_1", *roles: str, email: str | None = None) -> VerifiedUser:
    return VerifiedUser(
        sub=sub,
        username=sub,
        email=email or f"{sub}@example.com",
        claims={"sub": sub},
        roles=list(roles) or ["user"],
    )


@pytest.fixture()
def as_user(monkeypatch):
    """
    Authenticate API calls: `as_user(make_user(...))` makes every bearer token
    resolve to that user.
    """
    from peeap.middleware import auth as auth_mw

    def _set(user: VerifiedUser) -> dict[str, str]:
        monkeypatch.setattr(auth_mw, "verify_bearer_token", lambda _tok: user)
        return {"Authorization": "Bearer test-token"}

    return _set
