from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from .common import iso, new_id, now_iso, require_id, strip_keys

DEFAULT_MAX_ATTEMPTS = 8


def outbox_key(event_id: str) -> dict[str, str]:
    eid = require_id(event_id, "event_id")
    return {"pk": f"OUTBOX#{eid}", "sk": "PROFILE"}


def enqueue_event(*, event_type: str, payload: dict[str, Any], dedupe_key: str | None = None) -> dict[str, Any]:
    """
    Enqueue an outbox event for async side effects (push delivery).

    When `dedupe_key` is given it becomes the event id, so retried enqueues collapse.
    """
    et = require_id(event_type, "event_type")
    eid = str(dedupe_key or "").strip() or new_id("evt")

    now = now_iso()
    item: dict[str, Any] = {
        **outbox_key(eid),
        "entityType": "OutboxEvent",
        "eventId": eid,
        "eventType": et,
        "status": "pending",
        "attempts": 0,
        "maxAttempts": DEFAULT_MAX_ATTEMPTS,
        "nextAttemptAt": now,
        "createdAt": now,
        "updatedAt": now,
        "payload": payload if isinstance(payload, dict) else {},
        # GSI1: pending queue ordered by next attempt time.
        "gsi1pk": "OUTBOX#PENDING",
        "gsi1sk": f"{now}#{eid}",
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        return strip_keys(get_main_table().get_item(key=outbox_key(eid))) or {}
    return strip_keys(item) or {}


def list_due(*, limit: int = 50, now: str | None = None) -> list[dict[str, Any]]:
    """Pending events whose nextAttemptAt has passed, oldest first."""
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq("OUTBOX#PENDING") & Key("gsi1sk").lte(f"{now or now_iso()}#~"),
        scan_index_forward=True,
        limit=max(1, min(200, int(limit or 50))),
    )
    return [e for e in (strip_keys(it) for it in pg.items) if e]


def claim_event(*, event_id: str) -> dict[str, Any] | None:
    """
    Atomically move an event from pending -> processing.

    Raises DdbConflict when another worker claimed it first.
    """
    now = now_iso()
    updated = get_main_table().update_item(
        key=outbox_key(event_id),
        update_expression="SET #s = :s, lockedAt = :l, updatedAt = :u REMOVE gsi1pk, gsi1sk",
        expression_attribute_names={"#s": "status"},
        expression_attribute_values={":s": "processing", ":l": now, ":u": now, ":pending": "pending"},
        condition_expression="#s = :pending",
        return_values="ALL_NEW",
    )
    return strip_keys(updated)


def mark_done(*, event_id: str, result: dict[str, Any] | None = None) -> dict[str, Any] | None:
    updated = get_main_table().update_item(
        key=outbox_key(event_id),
        update_expression="SET #s = :s, updatedAt = :u, #r = :r",
        expression_attribute_names={"#s": "status", "#r": "result"},
        expression_attribute_values={":s": "done", ":u": now_iso(), ":r": result if isinstance(result, dict) else {}},
        return_values="ALL_NEW",
    )
    return strip_keys(updated)


def mark_retry(*, event_id: str, error: str) -> dict[str, Any] | None:
    """
    Put a processing event back in the queue with exponential backoff,
    or mark it failed once maxAttempts is reached.
    """
    raw = get_main_table().get_item(key=outbox_key(event_id)) or {}
    attempts = int(raw.get("attempts") or 0) + 1
    max_attempts = int(raw.get("maxAttempts") or DEFAULT_MAX_ATTEMPTS)
    now = now_iso()
    err = str(error or "")[:800]

    if attempts >= max_attempts:
        updated = get_main_table().update_item(
            key=outbox_key(event_id),
            update_expression="SET #s = :s, attempts = :a, lastError = :e, updatedAt = :u",
            expression_attribute_names={"#s": "status"},
            expression_attribute_values={":s": "failed", ":a": attempts, ":e": err, ":u": now},
            return_values="ALL_NEW",
        )
        return strip_keys(updated)

    # Exponential backoff capped at 5 minutes.
    delay_s = min(300, int(2 ** min(10, attempts)))
    next_at = iso(datetime.fromtimestamp(time.time() + delay_s, tz=timezone.utc))
    updated = get_main_table().update_item(
        key=outbox_key(event_id),
        update_expression=(
            "SET #s = :s, attempts = :a, lastError = :e, nextAttemptAt = :n, updatedAt = :u, "
            "gsi1pk = :gpk, gsi1sk = :gsk"
        ),
        expression_attribute_names={"#s": "status"},
        expression_attribute_values={
            ":s": "pending",
            ":a": attempts,
            ":e": err,
            ":n": next_at,
            ":u": now,
            ":gpk": "OUTBOX#PENDING",
            ":gsk": f"{next_at}#{event_id}",
        },
        return_values="ALL_NEW",
    )
    return strip_keys(updated)
