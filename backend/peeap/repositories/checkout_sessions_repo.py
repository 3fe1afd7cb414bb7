from __future__ import annotations

from typing import Any, Iterator

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import apply_update, require_id, strip_keys

CHECKOUT_STATUSES = ("OPEN", "COMPLETE", "EXPIRED", "CANCELLED")


def checkout_key(session_id: str) -> dict[str, str]:
    sid = require_id(session_id, "session_id")
    return {"pk": f"CHECKOUT#{sid}", "sk": "PROFILE"}


def status_index(status: str, at: str, session_id: str) -> dict[str, str]:
    return {"gsi2pk": f"CHECKOUT_STATUS#{status}", "gsi2sk": f"{at}#{session_id}"}


def normalize_checkout(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("sessionId")
    return obj


def put_checkout(item: dict[str, Any]) -> dict[str, Any]:
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_checkout(item) or {}


def get_checkout(session_id: str) -> dict[str, Any] | None:
    return normalize_checkout(get_main_table().get_item(key=checkout_key(session_id)))


def list_business_checkouts(business_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    bid = require_id(business_id, "business_id")
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"BUSINESS_CHECKOUTS#{bid}"),
        scan_index_forward=False,
        limit=max(1, min(200, int(limit or 50))),
        next_token=next_token,
    )
    return {"data": [c for c in (normalize_checkout(it) for it in pg.items) if c], "nextToken": pg.next_token}


def _completed_condition(start_iso: str | None, end_iso: str | None) -> Any:
    cond = Key("gsi2pk").eq("CHECKOUT_STATUS#COMPLETE")
    if start_iso or end_iso:
        cond = cond & Key("gsi2sk").between(start_iso or "0", f"{end_iso or '9999'}~")
    return cond


def list_completed_between(
    start_iso: str | None = None, end_iso: str | None = None, *, max_items: int | None = None
) -> list[dict[str, Any]]:
    """COMPLETE sessions by completedAt in [start, end]; newest first."""
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=_completed_condition(start_iso, end_iso),
        scan_index_forward=False,
        max_items=max_items,
    )
    return [c for c in (normalize_checkout(it) for it in items) if c]


def iter_completed(start_iso: str | None = None, end_iso: str | None = None) -> Iterator[dict[str, Any]]:
    """Like list_completed_between, but reads pages only as the caller consumes them."""
    for it in get_main_table().iter_query(
        index_name="GSI2",
        key_condition_expression=_completed_condition(start_iso, end_iso),
        scan_index_forward=False,
        max_items=None,
    ):
        c = normalize_checkout(it)
        if c:
            yield c


def transition_checkout(
    session_id: str, *, from_status: str, to_status: str, at: str, patch: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    """Move a session between statuses; DdbConflict when it is no longer in `from_status`."""
    full = {**(patch or {}), "status": to_status, **status_index(to_status, at, session_id)}
    return normalize_checkout(apply_update(checkout_key(session_id), full, expected={"status": from_status}))


def update_checkout(session_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
    return normalize_checkout(apply_update(checkout_key(session_id), patch))
