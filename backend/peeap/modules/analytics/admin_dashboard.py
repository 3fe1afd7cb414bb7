from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import users_repo, wallets_repo
from ...settings import settings
from ..businesses import business_service
from ..cards import card_service
from ..wallets import transaction_service
from . import monime_analytics

log = get_logger("admin_dashboard")


def wallet_totals() -> dict[str, Any]:
    balances: dict[str, float] = {}
    count = 0
    for w in wallets_repo.list_all_wallets():
        count += 1
        cur = str(w.get("currency") or "")
        balances[cur] = to_money(balances.get(cur, 0.0) + float(w.get("balance") or 0))
    return {"count": count, "balanceByCurrency": balances}


def platform_overview(*, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    today = transaction_service.transaction_stats(transaction_service.day_start(now), now)
    month = transaction_service.transaction_stats(transaction_service.month_start(now), now)
    return {
        "generatedAt": now.isoformat(),
        "users": {"total": len(users_repo.list_users())},
        "wallets": wallet_totals(),
        "transactions": {
            "today": {"count": today["count"], "volume": today["volume"]},
            "thisMonth": {"count": month["count"], "volume": month["volume"]},
        },
        "cards": card_service.card_stats(now=now),
        "businesses": business_service.business_counts(),
        "monimeToday": monime_analytics.calculate_flows(
            *monime_analytics.date_range("today", now), settings.default_currency
        ),
    }
