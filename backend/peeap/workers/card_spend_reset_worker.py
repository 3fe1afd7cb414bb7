"""
Scheduled ECS task. CARD_SPEND_RESET_SCOPE selects `daily` (run just after
midnight UTC) or `monthly` (run on the 1st).
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any

from ..modules.cards import card_service
from ..observability.logging import configure_logging, get_logger

log = get_logger("card_spend_reset_worker")

SCOPES = ("daily", "monthly")


def run_once(*, scope: str = "daily", now: datetime | None = None) -> dict[str, Any]:
    """
    Zero the daily or monthly spend counters of every card.

    Authorization already treats a counter from an earlier period as zero,
    so this only keeps stored values tidy for reporting.
    """
    if scope not in SCOPES:
        raise ValueError(f"scope must be one of {SCOPES}")
    if scope == "daily":
        reset = card_service.reset_daily_spent(now=now)
    else:
        reset = card_service.reset_monthly_spent(now=now)
    out = {"ok": True, "scope": scope, "reset": reset}
    log.info("card_spend_reset_done", **out)
    return out


if __name__ == "__main__":
    configure_logging(level="INFO")
    run_once(scope=(os.environ.get("CARD_SPEND_RESET_SCOPE") or "daily").strip().lower())
