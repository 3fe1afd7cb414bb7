from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ...errors import NotFound
from ...money import to_money
from ...repositories import transactions_repo
from ...repositories.common import iso


def get_transaction(transaction_id: str) -> dict[str, Any]:
    t = transactions_repo.get_transaction(transaction_id)
    if not t:
        raise NotFound("Transaction not found", code="transaction_not_found")
    return t


def list_user_transactions(user_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    return transactions_repo.list_user_transactions(user_id, limit=limit, next_token=next_token)


def _matches(txn: dict[str, Any], needle: str) -> bool:
    return any(needle in str(v).lower() for v in (txn.get("reference"), txn.get("description")) if v)


def list_platform_transactions(
    *,
    type: str | None = None,
    status: str | None = None,
    search: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    """Admin view across all users, newest first."""
    needle = str(search or "").strip().lower()
    out: list[dict[str, Any]] = []
    rows = transactions_repo.list_transactions_between(
        iso(start) if start else None, iso(end) if end else None
    )
    for t in rows:
        if type and type != "all" and t.get("type") != type:
            continue
        if status and status != "all" and t.get("status") != status:
            continue
        if needle and not _matches(t, needle):
            continue
        out.append(t)
        if len(out) >= max(1, int(limit)):
            break
    return out


def transaction_stats(start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
    """Count and completed volume per currency, plus counts by status and type."""
    by_status: dict[str, int] = {}
    by_type: dict[str, int] = {}
    volume: dict[str, float] = {}
    count = 0
    rows = transactions_repo.list_transactions_between(
        iso(start) if start else None, iso(end) if end else None
    )
    for t in rows:
        count += 1
        st = str(t.get("status") or "")
        by_status[st] = by_status.get(st, 0) + 1
        kind = str(t.get("type") or "")
        by_type[kind] = by_type.get(kind, 0) + 1
        # A transfer is two rows; count the money once, on the sending side.
        if st == "completed" and kind != "receive":
            cur = str(t.get("currency") or "")
            volume[cur] = to_money(volume.get(cur, 0.0) + float(t.get("amount") or 0))
    return {"count": count, "volume": volume, "byStatus": by_status, "byType": by_type}


def day_start(now: datetime | None = None) -> datetime:
    n = now or datetime.now(timezone.utc)
    return n.replace(hour=0, minute=0, second=0, microsecond=0)


def month_start(now: datetime | None = None) -> datetime:
    return day_start(now).replace(day=1)
