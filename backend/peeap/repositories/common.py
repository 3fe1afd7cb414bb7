from __future__ import annotations

import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from ..db.dynamodb.expressions import build_update, equals_condition
from ..db.dynamodb.table import get_main_table

KEY_FIELDS = ("pk", "sk", "gsi1pk", "gsi1sk", "gsi2pk", "gsi2sk")


def iso(dt: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix (sortable as text)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return iso(datetime.now(timezone.utc))


def parse_iso(value: Any) -> datetime | None:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20]}"


def new_sortable_id(prefix: str) -> str:
    # Millisecond prefix keeps ids in creation order inside a partition.
    return f"{prefix}_{int(time.time() * 1000):013d}{secrets.token_hex(3)}"


def require_id(value: Any, name: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise ValueError(f"{name} is required")
    return s


def strip_keys(item: dict[str, Any] | None) -> dict[str, Any] | None:
    if not item:
        return None
    return {k: v for k, v in item.items() if k not in KEY_FIELDS}


def apply_update(
    key: dict[str, Any],
    patch: dict[str, Any],
    *,
    expected: dict[str, Any] | None = None,
    remove: Iterable[str] = (),
) -> dict[str, Any] | None:
    """
    Patch an existing item; `expected` adds optimistic guards on current values.

    Raises DdbConflict when the item is missing or a guard does not hold.
    """
    upd = build_update(patch, remove_fields=remove, updated_at=now_iso())
    cond = equals_condition(expected or {})
    return get_main_table().update_item(
        key=key,
        update_expression=upd.expression,
        expression_attribute_names={**upd.names, **cond.names},
        expression_attribute_values={**upd.values, **cond.values},
        condition_expression=cond.expression,
        return_values="ALL_NEW",
    )


def tx_apply_update(
    key: dict[str, Any],
    patch: dict[str, Any],
    *,
    expected: dict[str, Any] | None = None,
    prefix: str = "c",
) -> dict[str, Any]:
    """Same as `apply_update`, but returns a TransactWriteItems entry."""
    upd = build_update(patch, updated_at=now_iso())
    cond = equals_condition(expected or {}, prefix=prefix)
    return get_main_table().tx_update(
        key=key,
        update_expression=upd.expression,
        expression_attribute_names={**upd.names, **cond.names},
        expression_attribute_values={**upd.values, **cond.values},
        condition_expression=cond.expression,
    )
