from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from .common import apply_update, now_iso, require_id, strip_keys


def school_connection_key(school_id: str) -> dict[str, str]:
    sid = require_id(school_id, "school_id")
    return {"pk": f"SCHOOL#{sid}", "sk": "CONNECTION"}


def normalize_connection(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("schoolId")
    return obj


def get_connection(school_id: str) -> dict[str, Any] | None:
    return normalize_connection(get_main_table().get_item(key=school_connection_key(school_id)))


def create_connection(
    *,
    school_id: str,
    school_name: str,
    peeap_school_id: str,
    connected_by: str | None,
) -> tuple[dict[str, Any], bool]:
    now = now_iso()
    item: dict[str, Any] = {
        **school_connection_key(school_id),
        "entityType": "SchoolConnection",
        "schoolId": school_id,
        "schoolName": school_name,
        "peeapSchoolId": peeap_school_id,
        "walletId": None,
        "status": "connected",
        "connectedBy": connected_by,
        "connectedAt": now,
        "createdAt": now,
        "updatedAt": now,
        "gsi2pk": "TYPE#SCHOOL_CONNECTION",
        "gsi2sk": f"{now}#{school_id}",
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        existing = get_connection(school_id)
        if existing:
            return existing, False
        raise
    return normalize_connection(item) or {}, True


def list_connections() -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq("TYPE#SCHOOL_CONNECTION"),
        scan_index_forward=False,
    )
    return [c for c in (normalize_connection(it) for it in items) if c]


def update_connection(
    school_id: str, patch: dict[str, Any], *, expected: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    return normalize_connection(apply_update(school_connection_key(school_id), patch, expected=expected))
