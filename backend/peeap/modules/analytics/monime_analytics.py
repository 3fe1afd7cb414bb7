"""
Mobile-money (Monime) inflow/outflow analytics.

Inflows are money entering the platform through Monime (deposits, mobile
checkout payments); outflows leave through it (withdrawals, cashouts,
payouts). Four stores are unioned:

1. Monime transactions (direct wallet deposits/withdrawals)
2. Completed checkout sessions paid by mobile money
3. Platform ledger rows that went through Monime
4. Completed payouts
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable

from cachetools import TTLCache

from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import (
    checkout_sessions_repo,
    monime_transactions_repo,
    payouts_repo,
    transactions_repo,
)
from ...repositories.common import iso
from ...settings import settings

log = get_logger("monime_analytics")

PERIODS = ("today", "yesterday", "thisWeek", "thisMonth", "thisYear")

_INFLOW_TYPES = ("deposit", "credit", "receive")
_OUTFLOW_TYPES = ("withdrawal", "cashout", "payout")

_SUMMARY_CACHE: TTLCache[str, dict[str, Any]] = TTLCache(maxsize=32, ttl=max(1, int(settings.analytics_cache_ttl_s)))
_SUMMARY_LOCK = threading.Lock()


@dataclass(slots=True)
class FlowSummary:
    totalDeposits: float = 0.0
    totalWithdrawals: float = 0.0
    depositCount: int = 0
    withdrawalCount: int = 0
    netFlow: float = 0.0
    currency: str = "SLE"

    def add_inflow(self, amount: Any) -> None:
        self.totalDeposits += _as_float(amount)
        self.depositCount += 1

    def add_outflow(self, amount: Any) -> None:
        self.totalWithdrawals += _as_float(amount)
        self.withdrawalCount += 1

    def finish(self) -> dict[str, Any]:
        self.totalDeposits = to_money(self.totalDeposits)
        self.totalWithdrawals = to_money(self.totalWithdrawals)
        self.netFlow = to_money(self.totalDeposits - self.totalWithdrawals)
        return asdict(self)


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def is_mobile_payment(payment_method: Any) -> bool:
    pm = str(payment_method or "")
    return pm in ("mobile_money", "monime_mobile") or "mobile" in pm


def is_paid_through_platform(session: dict[str, Any]) -> bool:
    """Sandbox and counter-confirmed checkouts moved no money."""
    settlement = session.get("settlement") or ("sandbox" if session.get("isTestMode") else "wallet")
    return settlement == "wallet"


def _went_through_monime(txn: dict[str, Any]) -> bool:
    meta = txn.get("metadata") or {}
    method = str(meta.get("paymentMethod") or meta.get("payment_method") or "")
    return bool(
        "monime" in method
        or "mobile" in method
        or meta.get("monimeReference")
        or meta.get("checkoutSessionId")
    )


def _monime_txns(flows: FlowSummary, start: str | None, end: str | None) -> None:
    for t in monime_transactions_repo.list_monime_txns_between(start, end):
        if t.get("status") != "COMPLETED" or t.get("currencyCode") != flows.currency:
            continue
        if t.get("type") == "DEPOSIT":
            flows.add_inflow(t.get("amount"))
        elif t.get("type") == "WITHDRAWAL":
            flows.add_outflow(t.get("amount"))


def _checkouts(flows: FlowSummary, start: str | None, end: str | None) -> None:
    for s in checkout_sessions_repo.list_completed_between(start, end):
        if s.get("currencyCode") != flows.currency or not is_mobile_payment(s.get("paymentMethod")):
            continue
        if not is_paid_through_platform(s):
            continue
        flows.add_inflow(s.get("amount"))


def _ledger(flows: FlowSummary, start: str | None, end: str | None) -> None:
    for t in transactions_repo.list_transactions_between(start, end):
        if t.get("status") != "completed" or t.get("currency") != flows.currency:
            continue
        if not _went_through_monime(t):
            continue
        kind = str(t.get("type") or "").lower()
        if kind in _INFLOW_TYPES:
            # Checkout-backed credits are already counted from the session.
            if not (t.get("metadata") or {}).get("checkoutSessionId"):
                flows.add_inflow(t.get("amount"))
        elif kind in _OUTFLOW_TYPES:
            flows.add_outflow(t.get("amount"))


def _payouts(flows: FlowSummary, start: str | None, end: str | None) -> None:
    for p in payouts_repo.list_payouts_between(start, end):
        if p.get("status") == "completed" and p.get("currency") == flows.currency:
            flows.add_outflow(p.get("amount"))


_SOURCES: tuple[tuple[str, Callable[[FlowSummary, str | None, str | None], None]], ...] = (
    ("monime_transactions", _monime_txns),
    ("checkout_sessions", _checkouts),
    ("transactions", _ledger),
    ("payouts", _payouts),
)


def calculate_flows(
    start: datetime | None = None, end: datetime | None = None, currency: str = "SLE"
) -> dict[str, Any]:
    """Inflow/outflow totals in [start, end]; a failing source is skipped."""
    flows = FlowSummary(currency=str(currency or "SLE").upper())
    start_iso = iso(start) if start else None
    end_iso = iso(end) if end else None
    for name, source in _SOURCES:
        try:
            source(flows, start_iso, end_iso)
        except Exception as e:
            log.warning("monime_flow_source_failed", source=name, error=str(e))
    return flows.finish()


def _day_bounds(d: date) -> tuple[datetime, datetime]:
    start = datetime.combine(d, time.min, tzinfo=timezone.utc)
    end = datetime.combine(d, time(23, 59, 59, 999000), tzinfo=timezone.utc)
    return start, end


def date_range(period: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    """UTC bounds; weeks start on Sunday and open periods end at `now`."""
    now = now or datetime.now(timezone.utc)
    today = now.date()
    if period == "today":
        return _day_bounds(today)
    if period == "yesterday":
        return _day_bounds(today - timedelta(days=1))
    if period == "thisWeek":
        # date.weekday(): Monday=0 .. Sunday=6
        days_since_sunday = (today.weekday() + 1) % 7
        return _day_bounds(today - timedelta(days=days_since_sunday))[0], now
    if period == "thisMonth":
        return _day_bounds(today.replace(day=1))[0], now
    if period == "thisYear":
        return _day_bounds(date(today.year, 1, 1))[0], now
    raise ValueError(f"unknown period: {period}")


def get_summary(currency: str = "SLE", *, now: datetime | None = None, use_cache: bool = True) -> dict[str, Any]:
    cur = str(currency or "SLE").upper()
    if use_cache and now is None:
        with _SUMMARY_LOCK:
            cached = _SUMMARY_CACHE.get(cur)
        if cached is not None:
            return cached

    ranges = {p: date_range(p, now) for p in PERIODS}
    with ThreadPoolExecutor(max_workers=len(PERIODS) + 1) as ex:
        futures = {p: ex.submit(calculate_flows, s, e, cur) for p, (s, e) in ranges.items()}
        futures["allTime"] = ex.submit(calculate_flows, None, None, cur)
        summary = {p: f.result() for p, f in futures.items()}

    if use_cache and now is None:
        with _SUMMARY_LOCK:
            _SUMMARY_CACHE[cur] = summary
    return summary


def clear_cache() -> None:
    with _SUMMARY_LOCK:
        _SUMMARY_CACHE.clear()


def _period_point(label: str, flows: dict[str, Any]) -> dict[str, Any]:
    return {
        "period": label,
        "deposits": flows["totalDeposits"],
        "withdrawals": flows["totalWithdrawals"],
        "depositCount": flows["depositCount"],
        "withdrawalCount": flows["withdrawalCount"],
        "netFlow": flows["netFlow"],
    }


def get_daily_data(days: int = 7, currency: str = "SLE", *, now: datetime | None = None) -> list[dict[str, Any]]:
    today = (now or datetime.now(timezone.utc)).date()
    out: list[dict[str, Any]] = []
    for i in range(max(1, int(days)) - 1, -1, -1):
        d = today - timedelta(days=i)
        start, end = _day_bounds(d)
        out.append(_period_point(d.strftime("%a"), calculate_flows(start, end, currency)))
    return out


def _shift_month(d: date, months_back: int) -> date:
    idx = d.year * 12 + (d.month - 1) - months_back
    return date(idx // 12, idx % 12 + 1, 1)


def get_monthly_data(months: int = 6, currency: str = "SLE", *, now: datetime | None = None) -> list[dict[str, Any]]:
    today = (now or datetime.now(timezone.utc)).date()
    out: list[dict[str, Any]] = []
    for i in range(max(1, int(months)) - 1, -1, -1):
        first = _shift_month(today, i)
        last = _shift_month(today, i - 1) - timedelta(days=1)
        start = _day_bounds(first)[0]
        end = _day_bounds(last)[1]
        out.append(_period_point(first.strftime("%b"), calculate_flows(start, end, currency)))
    return out


def get_recent_transactions(limit: int = 10, currency: str | None = None) -> list[dict[str, Any]]:
    """Most recent completed mobile-money checkout sessions."""
    lim = max(1, int(limit or 10))
    out: list[dict[str, Any]] = []
    for s in checkout_sessions_repo.iter_completed():
        if currency and s.get("currencyCode") != str(currency).upper():
            continue
        if not is_mobile_payment(s.get("paymentMethod")) or not is_paid_through_platform(s):
            continue
        out.append(s)
        if len(out) >= lim:
            break
    return out
