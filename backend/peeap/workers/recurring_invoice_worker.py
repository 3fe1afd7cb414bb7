from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from ..modules.invoices import recurring_service
from ..observability.logging import configure_logging, get_logger

log = get_logger("recurring_invoice_worker")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def run_once(*, today: date | None = None) -> dict[str, Any]:
    started_at = _now_iso()
    res = recurring_service.generate_due_invoices(today)
    out = {"ok": res["failed"] == 0, "startedAt": started_at, "finishedAt": _now_iso(), **res}
    log.info("recurring_invoice_run_done", **out)
    return out


if __name__ == "__main__":
    configure_logging(level="INFO")
    run_once()
