from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import apply_update, require_id, strip_keys

RECURRING_STATUSES = ("active", "paused", "cancelled", "completed")
RECURRING_FREQUENCIES = ("weekly", "biweekly", "monthly", "quarterly", "yearly")


def recurring_key(template_id: str) -> dict[str, str]:
    tid = require_id(template_id, "template_id")
    return {"pk": f"RECURRING#{tid}", "sk": "PROFILE"}


def due_index(status: str, next_generation_date: str, template_id: str) -> dict[str, str]:
    # Scheduler queries RECURRING_DUE#active with gsi2sk <= today.
    return {
        "gsi2pk": f"RECURRING_DUE#{status}",
        "gsi2sk": f"{next_generation_date}#{template_id}",
    }


def normalize_recurring(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("templateId")
    return obj


def put_recurring(item: dict[str, Any]) -> dict[str, Any]:
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_recurring(item) or {}


def get_recurring(template_id: str) -> dict[str, Any] | None:
    return normalize_recurring(get_main_table().get_item(key=recurring_key(template_id)))


def list_business_recurring(business_id: str) -> list[dict[str, Any]]:
    bid = require_id(business_id, "business_id")
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"BUSINESS_RECURRING#{bid}"),
        scan_index_forward=False,
    )
    return [r for r in (normalize_recurring(it) for it in items) if r]


def list_due_templates(today: str, *, max_items: int = 1000) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq("RECURRING_DUE#active") & Key("gsi2sk").lte(f"{today}#~"),
        scan_index_forward=True,
        max_items=max_items,
    )
    return [r for r in (normalize_recurring(it) for it in items) if r]


def update_recurring(
    template_id: str, patch: dict[str, Any], *, expected: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    """Patch a template, keeping the due index in sync with status/nextGenerationDate."""
    current = get_main_table().get_item(key=recurring_key(template_id)) or {}
    status = str(patch.get("status") or current.get("status") or "active")
    next_date = str(patch.get("nextGenerationDate") or current.get("nextGenerationDate") or "")
    full = {**patch, **due_index(status, next_date, template_id)}
    return normalize_recurring(apply_update(recurring_key(template_id), full, expected=expected))


def delete_recurring(template_id: str) -> None:
    get_main_table().delete_item(key=recurring_key(template_id), condition_expression="attribute_exists(pk)")
