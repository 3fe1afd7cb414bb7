from __future__ import annotations

from datetime import datetime, timezone

import pytest

from peeap.modules.analytics import admin_dashboard, monime_analytics
from peeap.modules.wallets import wallet_service
from peeap.repositories import payouts_repo

# Wednesday
NOW = datetime(2026, 3, 11, 15, 30, tzinfo=timezone.utc)


@pytest.fixture()
def sources(monkeypatch):
    data = {
        "monime": [
            {"type": "DEPOSIT", "status": "COMPLETED", "currencyCode": "SLE", "amount": 100},
            {"type": "DEPOSIT", "status": "PENDING", "currencyCode": "SLE", "amount": 999},
            {"type": "WITHDRAWAL", "status": "COMPLETED", "currencyCode": "SLE", "amount": 30},
            {"type": "DEPOSIT", "status": "COMPLETED", "currencyCode": "USD", "amount": 5},
        ],
        "checkouts": [
            {"checkoutSessionId": "cs_1", "paymentMethod": "mobile_money", "currencyCode": "SLE", "amount": 40},
            {"checkoutSessionId": "cs_2", "paymentMethod": "card", "currencyCode": "SLE", "amount": 70},
            {"checkoutSessionId": "cs_3", "paymentMethod": "monime_mobile", "currencyCode": "SLE", "amount": 10},
        ],
        "ledger": [
            # Credit from a checkout: already counted through the session.
            {"type": "receive", "status": "completed", "currency": "SLE", "amount": 40,
             "metadata": {"checkoutSessionId": "cs_1", "paymentMethod": "mobile_money"}},
            {"type": "cashout", "status": "completed", "currency": "SLE", "amount": 12,
             "metadata": {"paymentMethod": "monime"}},
            {"type": "deposit", "status": "completed", "currency": "SLE", "amount": 8,
             "metadata": {"monimeReference": "mon_1"}},
            # Internal transfer, not Monime.
            {"type": "send", "status": "completed", "currency": "SLE", "amount": 500, "metadata": {}},
        ],
        "payouts": [
            {"status": "completed", "currency": "SLE", "amount": 20},
            {"status": "failed", "currency": "SLE", "amount": 20},
        ],
    }
    monkeypatch.setattr(monime_analytics.monime_transactions_repo, "list_monime_txns_between", lambda s=None, e=None, **_k: data["monime"])
    monkeypatch.setattr(monime_analytics.checkout_sessions_repo, "list_completed_between", lambda s=None, e=None, **_k: data["checkouts"])
    monkeypatch.setattr(monime_analytics.checkout_sessions_repo, "iter_completed", lambda s=None, e=None: iter(data["checkouts"]))
    monkeypatch.setattr(monime_analytics.transactions_repo, "list_transactions_between", lambda s=None, e=None, **_k: data["ledger"])
    monkeypatch.setattr(monime_analytics.payouts_repo, "list_payouts_between", lambda s=None, e=None, **_k: data["payouts"])
    monime_analytics.clear_cache()
    yield data
    monime_analytics.clear_cache()


def test_calculate_flows_unions_sources(sources):
    flows = monime_analytics.calculate_flows(currency="sle")
    # 100 (monime) + 40 + 10 (checkouts) + 8 (ledger deposit)
    assert flows["totalDeposits"] == 158.0
    assert flows["depositCount"] == 4
    # 30 (monime) + 12 (ledger cashout) + 20 (payout)
    assert flows["totalWithdrawals"] == 62.0
    assert flows["withdrawalCount"] == 3
    assert flows["netFlow"] == 96.0
    assert flows["currency"] == "SLE"


def test_failing_source_is_skipped(sources, monkeypatch):
    def _boom(*_a, **_k):
        raise RuntimeError("table unavailable")

    monkeypatch.setattr(monime_analytics.payouts_repo, "list_payouts_between", _boom)
    flows = monime_analytics.calculate_flows()
    assert flows["totalWithdrawals"] == 42.0


@pytest.mark.parametrize(
    "period,start,end",
    [
        ("today", "2026-03-11T00:00:00+00:00", "2026-03-11T23:59:59.999000+00:00"),
        ("yesterday", "2026-03-10T00:00:00+00:00", "2026-03-10T23:59:59.999000+00:00"),
        ("thisWeek", "2026-03-08T00:00:00+00:00", NOW.isoformat()),
        ("thisMonth", "2026-03-01T00:00:00+00:00", NOW.isoformat()),
        ("thisYear", "2026-01-01T00:00:00+00:00", NOW.isoformat()),
    ],
)
def test_date_ranges(period, start, end):
    s, e = monime_analytics.date_range(period, NOW)
    assert s.isoformat() == start
    assert e.isoformat() == end


def test_week_starting_on_sunday_is_its_own_start():
    sunday = datetime(2026, 3, 8, 10, tzinfo=timezone.utc)
    s, _ = monime_analytics.date_range("thisWeek", sunday)
    assert s.date().isoformat() == "2026-03-08"


def test_unknown_period():
    with pytest.raises(ValueError):
        monime_analytics.date_range("lastDecade", NOW)


def test_summary_is_cached_until_cleared(sources):
    first = monime_analytics.get_summary("SLE")
    assert set(first) == {"today", "yesterday", "thisWeek", "thisMonth", "thisYear", "allTime"}

    sources["payouts"].append({"status": "completed", "currency": "SLE", "amount": 1000})
    assert monime_analytics.get_summary("SLE") is first

    fresh = monime_analytics.get_summary("SLE", use_cache=False)
    assert fresh["allTime"]["totalWithdrawals"] == first["allTime"]["totalWithdrawals"] + 1000


def test_daily_and_monthly_series(sources):
    daily = monime_analytics.get_daily_data(3, now=NOW)
    assert [p["period"] for p in daily] == ["Mon", "Tue", "Wed"]
    assert daily[-1]["deposits"] == 158.0

    monthly = monime_analytics.get_monthly_data(3, now=NOW)
    assert [p["period"] for p in monthly] == ["Jan", "Feb", "Mar"]


def test_recent_transactions_are_mobile_only(sources):
    recent = monime_analytics.get_recent_transactions(limit=5)
    assert [s["checkoutSessionId"] for s in recent] == ["cs_1", "cs_3"]
    assert monime_analytics.get_recent_transactions(limit=1) == [sources["checkouts"][0]]
    assert monime_analytics.get_recent_transactions(currency="USD") == []


def test_unsettled_checkouts_are_not_counted(sources):
    sources["checkouts"] += [
        {"checkoutSessionId": "cs_sb", "paymentMethod": "mobile_money", "currencyCode": "SLE", "amount": 500,
         "isTestMode": True, "settlement": "sandbox"},
        {"checkoutSessionId": "cs_cash", "paymentMethod": "cash", "currencyCode": "SLE", "amount": 300,
         "settlement": "offline"},
        {"checkoutSessionId": "cs_legacy_test", "paymentMethod": "mobile_money", "currencyCode": "SLE",
         "amount": 200, "isTestMode": True},
    ]
    flows = monime_analytics.calculate_flows(currency="SLE")
    assert flows["totalDeposits"] == 158.0
    assert flows["depositCount"] == 4
    recent = monime_analytics.get_recent_transactions(limit=10)
    assert [s["checkoutSessionId"] for s in recent] == ["cs_1", "cs_3"]


def test_all_time_flows_read_every_page(fake_table):
    for i in range(620):
        item = payouts_repo.build_payout_item(
            payout_id=f"po_{i:04d}",
            user_id="alice",
            wallet_id="w_1",
            amount=1,
            currency="SLE",
            destination={"phoneNumber": "+23276000000"},
            created_at=f"2026-01-01T00:{i // 60:02d}:{i % 60:02d}+00:00",
        )
        item["status"] = "completed"
        payouts_repo.put_payout(item)

    flows = monime_analytics.calculate_flows(currency="SLE")
    assert flows["withdrawalCount"] == 620
    assert flows["totalWithdrawals"] == 620.0


def test_platform_overview(fake_table, monkeypatch):
    monkeypatch.setattr(monime_analytics, "calculate_flows", lambda *_a, **_k: {"totalDeposits": 0})
    a = wallet_service.get_or_create_wallet("alice", currency="SLE")
    b = wallet_service.get_or_create_wallet("bob", currency="SLE")
    wallet_service.credit(a["walletId"], 50, type="deposit")
    wallet_service.transfer(a["walletId"], b["walletId"], 20)

    out = admin_dashboard.platform_overview()
    assert out["wallets"] == {"count": 2, "balanceByCurrency": {"SLE": 50.0}}
    assert out["transactions"]["today"]["count"] == 3
    assert out["transactions"]["thisMonth"]["volume"] == {"SLE": 70.0}
    assert out["cards"]["total"] == 0
    assert out["businesses"]["total"] == 0
    assert out["users"]["total"] == 0
    assert out["monimeToday"] == {"totalDeposits": 0}
