from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from analytics import AnalyticsAggregator
from ledger import LedgerReader, StorageUnavailable
from models import ReportFrequency, TransactionType
from money import Money
from periods import AggregationWindow, ReportSchedule


def _seed_month(ledger, user_id: int) -> None:
    ledger.add_txn(user_id, datetime(2024, 1, 1, 0, 0), TransactionType.income, 500_000, "Salary")
    ledger.add_txn(user_id, datetime(2024, 1, 3, 9), TransactionType.expense, 12_050, "Groceries")
    ledger.add_txn(user_id, datetime(2024, 1, 14, 18), TransactionType.expense, 4_999, "Dining")
    ledger.add_txn(user_id, datetime(2024, 1, 20, 7), TransactionType.expense, 8_000, "Groceries")
    ledger.add_txn(user_id, datetime(2024, 1, 31, 23, 59), TransactionType.income, 1_001, "Interest")
    ledger.add_txn(user_id, datetime(2024, 2, 2, 12), TransactionType.expense, 30_000, "Rent")
    ledger.add_txn(user_id, datetime(2024, 2, 10, 12), TransactionType.expense, 2_500, "Dining")


def test_aggregate_sums_half_open_window(ledger, session_factory) -> None:
    user_id = ledger.add_user("a@example.com", datetime(2023, 12, 1))
    _seed_month(ledger, user_id)
    # Boundary rows: end is exclusive, start inclusive.
    ledger.add_txn(user_id, datetime(2024, 2, 1), TransactionType.expense, 777, "Groceries")
    ledger.add_txn(
        user_id,
        datetime(2024, 1, 10),
        TransactionType.expense,
        10_000,
        "Groceries",
        deleted_at=datetime(2024, 1, 11),
    )

    totals = LedgerReader(session_factory).aggregate(
        user_id, AggregationWindow(datetime(2024, 1, 1), datetime(2024, 2, 1))
    )

    assert totals.total_income == Money(501_001)
    assert totals.total_expense == Money(25_049)
    assert totals.totals_by_category == {"Dining": Money(4_999), "Groceries": Money(20_050)}
    assert list(totals.totals_by_category) == ["Dining", "Groceries"]
    assert totals.income_by_category == {"Interest": Money(1_001), "Salary": Money(500_000)}
    assert totals.transaction_count == 5


def test_aggregate_is_additive_over_gap_free_partition(ledger, session_factory) -> None:
    user_id = ledger.add_user("b@example.com", datetime(2023, 12, 1))
    _seed_month(ledger, user_id)
    reader = LedgerReader(session_factory)
    lifetime = reader.aggregate(
        user_id, AggregationWindow(datetime(2023, 12, 1), datetime(2024, 3, 1))
    )

    schedule = ReportSchedule(ReportFrequency.weekly, datetime(2023, 12, 1))
    windows = list(schedule.windows_due(datetime(2023, 12, 1), datetime(2024, 3, 10)))
    parts = [reader.aggregate(user_id, w) for w in windows if w.start < datetime(2024, 3, 1)]

    assert Money.total(p.total_income for p in parts) == lifetime.total_income
    assert Money.total(p.total_expense for p in parts) == lifetime.total_expense
    assert sum(p.transaction_count for p in parts) == lifetime.transaction_count
    for name, amount in lifetime.totals_by_category.items():
        assert (
            Money.total(p.totals_by_category.get(name, Money.zero()) for p in parts)
            == amount
        )


def test_aggregate_only_reads_requested_user(ledger, session_factory) -> None:
    alice = ledger.add_user("alice@example.com", datetime(2023, 12, 1))
    bob = ledger.add_user("bob@example.com", datetime(2023, 12, 1))
    ledger.add_txn(alice, datetime(2024, 1, 5), TransactionType.expense, 100, "Misc")
    ledger.add_txn(bob, datetime(2024, 1, 5), TransactionType.expense, 900, "Misc")

    totals = LedgerReader(session_factory).aggregate(
        bob, AggregationWindow(datetime(2024, 1, 1), datetime(2024, 2, 1))
    )
    assert totals.total_expense == Money(900)


def test_aggregate_wraps_storage_errors() -> None:
    class BrokenSession:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def execute(self, _stmt):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

    reader = LedgerReader(lambda: BrokenSession())
    with pytest.raises(StorageUnavailable):
        reader.aggregate(1, AggregationWindow(datetime(2024, 1, 1), datetime(2024, 1, 2)))


def test_snapshot_marks_trend_unavailable_without_prior_activity(ledger, session_factory) -> None:
    user_id = ledger.add_user("c@example.com", datetime(2024, 1, 1))
    _seed_month(ledger, user_id)
    aggregator = AnalyticsAggregator(LedgerReader(session_factory))
    schedule = ReportSchedule(ReportFrequency.monthly, datetime(2024, 1, 1))

    snapshot = aggregator.compute(user_id, schedule.window_from(datetime(2024, 1, 1)), schedule)

    assert snapshot.trend is None
    assert not snapshot.trend_available
    assert snapshot.as_payload()["trend"] == {"status": "unavailable"}
    assert snapshot.net == Money(501_001 - 25_049)


def test_snapshot_trend_deltas_against_previous_window(ledger, session_factory) -> None:
    user_id = ledger.add_user("d@example.com", datetime(2024, 1, 1))
    _seed_month(ledger, user_id)
    aggregator = AnalyticsAggregator(LedgerReader(session_factory))
    schedule = ReportSchedule(ReportFrequency.monthly, datetime(2024, 1, 1))

    snapshot = aggregator.compute(
        user_id, AggregationWindow(datetime(2024, 2, 1), datetime(2024, 3, 1)), schedule
    )

    trend = snapshot.trend
    assert trend is not None
    assert trend.previous_window == AggregationWindow(datetime(2024, 1, 1), datetime(2024, 2, 1))
    assert trend.income_delta == Money(-501_001)
    assert trend.expense_delta == Money(32_500 - 25_049)
    assert trend.net_delta == Money((0 - 32_500) - (501_001 - 25_049))
    assert trend.category_deltas == {
        "Dining": Money(2_500 - 4_999),
        "Groceries": Money(-20_050),
        "Rent": Money(30_000),
    }
    assert snapshot.savings_rate is None
    assert snapshot.expense_ratio is None


def test_snapshot_percentages_and_top_categories(ledger, session_factory) -> None:
    user_id = ledger.add_user("e@example.com", datetime(2024, 1, 1))
    ledger.add_txn(user_id, datetime(2024, 1, 2), TransactionType.income, 300_000, "Salary")
    ledger.add_txn(user_id, datetime(2024, 1, 3), TransactionType.expense, 100_000, "Rent")
    ledger.add_txn(user_id, datetime(2024, 1, 4), TransactionType.expense, 50_000, "Food")
    ledger.add_txn(user_id, datetime(2024, 1, 5), TransactionType.expense, 50_000, "Travel")
    aggregator = AnalyticsAggregator(LedgerReader(session_factory))
    schedule = ReportSchedule(ReportFrequency.monthly, datetime(2024, 1, 1))

    snapshot = aggregator.compute(user_id, schedule.window_from(datetime(2024, 1, 1)), schedule)

    assert snapshot.savings_rate == Decimal("33.33")
    assert snapshot.expense_ratio == Decimal("66.67")
    assert snapshot.top_categories(limit=2) == [
        {"name": "Rent", "amount_cents": 100_000, "percent": "50.00"},
        {"name": "Food", "amount_cents": 50_000, "percent": "25.00"},
    ]


def test_snapshot_serialization_is_deterministic(ledger, session_factory) -> None:
    user_id = ledger.add_user("f@example.com", datetime(2024, 1, 1))
    _seed_month(ledger, user_id)
    schedule = ReportSchedule(ReportFrequency.monthly, datetime(2024, 1, 1))
    window = AggregationWindow(datetime(2024, 2, 1), datetime(2024, 3, 1))

    first = AnalyticsAggregator(LedgerReader(session_factory)).compute(user_id, window, schedule)
    second = AnalyticsAggregator(LedgerReader(session_factory)).compute(user_id, window, schedule)

    assert first.to_json() == second.to_json()
    assert first.fingerprint() == second.fingerprint()
    assert list(first.as_payload()["category_breakdown_cents"]) == ["Dining", "Rent"]

    # A transaction landing in a later window leaves this window's report unchanged.
    ledger.add_txn(user_id, window.end + timedelta(hours=1), TransactionType.expense, 99, "Dining")
    third = AnalyticsAggregator(LedgerReader(session_factory)).compute(user_id, window, schedule)
    assert third.fingerprint() == first.fingerprint()
