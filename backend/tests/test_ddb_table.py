from __future__ import annotations

from boto3.dynamodb.conditions import Key

from peeap.db.dynamodb import table as table_mod
from peeap.repositories import transactions_repo


class _Recorder:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def warning(self, event: str, **kw):
        self.events.append((event, kw))


def _seed(fake_table, n: int) -> None:
    for i in range(n):
        fake_table.put_item(
            item=transactions_repo.build_transaction_item(
                user_id="alice",
                wallet_id="w_1",
                type="deposit",
                amount=1,
                currency="SLE",
                transaction_id=f"txn_{i:04d}",
                created_at=f"2026-02-01T00:{i // 60:02d}:{i % 60:02d}+00:00",
            )
        )


def _by_type():
    return Key("gsi2pk").eq("TYPE#TRANSACTION")


def test_query_drains_all_pages_without_a_cap(fake_table, monkeypatch):
    rec = _Recorder()
    monkeypatch.setattr(table_mod, "log", rec)
    _seed(fake_table, 1050)

    rows = fake_table.query_all(index_name="GSI2", key_condition_expression=_by_type(), max_items=None)
    assert len(rows) == 1050
    assert len({r["transactionId"] for r in rows}) == 1050
    assert rec.events == []


def test_cap_that_cuts_results_is_logged(fake_table, monkeypatch):
    rec = _Recorder()
    monkeypatch.setattr(table_mod, "log", rec)
    _seed(fake_table, 7)

    rows = fake_table.query_all(index_name="GSI2", key_condition_expression=_by_type(), max_items=5)
    assert [r["transactionId"] for r in rows] == [f"txn_{i:04d}" for i in (6, 5, 4, 3, 2)]
    assert rec.events == [("ddb_query_truncated", {"table": "Fake", "index": "GSI2", "max_items": 5})]


def test_cap_equal_to_result_size_is_not_a_truncation(fake_table, monkeypatch):
    rec = _Recorder()
    monkeypatch.setattr(table_mod, "log", rec)
    _seed(fake_table, 5)

    rows = fake_table.query_all(index_name="GSI2", key_condition_expression=_by_type(), max_items=5)
    assert len(rows) == 5
    assert rec.events == []


def test_range_listing_is_uncapped_by_default(fake_table):
    _seed(fake_table, 620)
    assert len(transactions_repo.list_transactions_between()) == 620
