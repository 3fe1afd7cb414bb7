from __future__ import annotations

from typing import Any

from ..db.dynamodb.errors import DdbConflict
from ..infrastructure.push.fcm_client import PushDeliveryError
from ..modules.notifications import notification_service
from ..observability.logging import configure_logging, get_logger
from ..repositories.outbox_repo import claim_event, list_due, mark_done, mark_retry

log = get_logger("outbox_worker")


def dispatch_event(event: dict[str, Any]) -> dict[str, Any]:
    """Dispatch a single outbox event."""
    et = str(event.get("eventType") or "").strip()
    payload_raw = event.get("payload")
    payload: dict[str, Any] = payload_raw if isinstance(payload_raw, dict) else {}

    if et == notification_service.PUSH_EVENT_TYPE:
        return notification_service.deliver_push(payload)

    return {"ok": False, "error": "unknown_event_type", "eventType": et}


def run_once(*, limit: int = 30) -> dict[str, Any]:
    """
    Drain due outbox events. Safe to run from cron/ECS scheduled task;
    concurrent runners lose the claim and skip.
    """
    lim = max(1, min(100, int(limit or 30)))
    scanned = 0
    processed = 0
    failed = 0

    for it in list_due(limit=lim):
        scanned += 1
        eid = str(it.get("eventId") or "").strip()
        if not eid:
            continue
        try:
            claimed = claim_event(event_id=eid)
        except DdbConflict:
            log.debug("outbox_event_already_claimed", event_id=eid)
            continue
        if not claimed:
            continue
        try:
            res = dispatch_event(claimed)
        except PushDeliveryError as e:
            failed += 1
            log.warning("outbox_push_failed", event_id=eid, error=str(e))
            mark_retry(event_id=eid, error=str(e) or "push_failed")
            continue
        except Exception as e:
            failed += 1
            log.exception("outbox_dispatch_failed", event_id=eid, event_type=claimed.get("eventType"))
            mark_retry(event_id=eid, error=str(e) or "dispatch_failed")
            continue
        if res.get("ok"):
            processed += 1
            mark_done(event_id=eid, result=res)
        else:
            failed += 1
            mark_retry(event_id=eid, error=str(res.get("error") or "dispatch_failed"))

    out = {"ok": True, "scanned": scanned, "processed": processed, "failed": failed}
    log.info("outbox_run_once_done", **out)
    return out


if __name__ == "__main__":
    configure_logging(level="INFO")
    run_once(limit=30)
