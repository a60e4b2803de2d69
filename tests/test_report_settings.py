import threading
from datetime import datetime

import pytest

from models import ReportFrequency
from periods import AggregationWindow
from report_settings import ReportSettingsStore, StaleWrite


def test_new_user_gets_default_monthly_setting(ledger, session_factory) -> None:
    created = datetime(2024, 1, 15, 10, 30)
    user_id = ledger.add_user("new@example.com", created)

    view = ReportSettingsStore(session_factory).get(user_id)

    assert view.is_enabled is True
    assert view.frequency == ReportFrequency.monthly
    assert view.last_dispatched_at is None
    assert view.cycle_anchor_at == created
    assert view.next_due_at == datetime(2024, 2, 15, 10, 30)


def test_get_unknown_user_raises(session_factory) -> None:
    with pytest.raises(ValueError):
        ReportSettingsStore(session_factory).get(999)


def test_daily_user_is_due_only_after_first_full_day(ledger, session_factory) -> None:
    user_id = ledger.add_user("daily@example.com", datetime(2024, 1, 1))
    ledger.set_setting(user_id, frequency=ReportFrequency.daily)
    store = ReportSettingsStore(session_factory)

    assert store.list_due_candidates(datetime(2024, 1, 1, 0, 0, 1)) == []

    due = store.list_due_candidates(datetime(2024, 1, 2, 0, 0, 1))
    assert [c.user_id for c in due] == [user_id]
    assert due[0].setting.cycle_start == datetime(2024, 1, 1)


def test_disabled_user_is_never_a_candidate(ledger, session_factory) -> None:
    user_id = ledger.add_user("off@example.com", datetime(2020, 1, 1))
    ledger.set_setting(user_id, is_enabled=False, frequency=ReportFrequency.daily)
    store = ReportSettingsStore(session_factory)

    for as_of in (datetime(2020, 1, 3), datetime(2024, 6, 1), datetime(2099, 1, 1)):
        assert store.list_due_candidates(as_of) == []


def test_monthly_due_uses_last_dispatched_at(ledger, session_factory) -> None:
    user_id = ledger.add_user("m@example.com", datetime(2023, 11, 1))
    ledger.set_setting(user_id, last_dispatched_at=datetime(2024, 1, 1))
    store = ReportSettingsStore(session_factory)

    assert store.list_due_candidates(datetime(2024, 1, 31, 23, 59)) == []
    due = store.list_due_candidates(datetime(2024, 2, 1))
    assert [c.user_id for c in due] == [user_id]


def test_record_dispatch_advances_commit_point_once(ledger, session_factory) -> None:
    user_id = ledger.add_user("r@example.com", datetime(2024, 1, 1))
    store = ReportSettingsStore(session_factory)
    window = AggregationWindow(datetime(2024, 1, 1), datetime(2024, 2, 1))

    store.record_dispatch(user_id, window)
    assert ledger.setting(user_id).last_dispatched_at == datetime(2024, 2, 1)

    with pytest.raises(StaleWrite):
        store.record_dispatch(user_id, window)
    assert ledger.setting(user_id).last_dispatched_at == datetime(2024, 2, 1)

    store.record_dispatch(
        user_id, AggregationWindow(datetime(2024, 2, 1), datetime(2024, 3, 1))
    )
    assert ledger.setting(user_id).last_dispatched_at == datetime(2024, 3, 1)


def test_record_dispatch_rejects_window_not_starting_at_commit_point(ledger, session_factory) -> None:
    user_id = ledger.add_user("gap@example.com", datetime(2024, 1, 1))
    store = ReportSettingsStore(session_factory)

    with pytest.raises(StaleWrite):
        store.record_dispatch(
            user_id, AggregationWindow(datetime(2024, 2, 1), datetime(2024, 3, 1))
        )
    assert ledger.setting(user_id).last_dispatched_at is None


def test_concurrent_record_dispatch_succeeds_exactly_once(ledger, session_factory) -> None:
    user_id = ledger.add_user("race@example.com", datetime(2024, 1, 1))
    window = AggregationWindow(datetime(2024, 1, 1), datetime(2024, 2, 1))
    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def runner() -> None:
        store = ReportSettingsStore(session_factory)
        barrier.wait()
        try:
            store.record_dispatch(user_id, window)
            result = "ok"
        except StaleWrite:
            result = "stale"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=runner) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["ok", "stale"]
    assert ledger.setting(user_id).last_dispatched_at == datetime(2024, 2, 1)


def test_frequency_change_reanchors_cycle(ledger, session_factory) -> None:
    user_id = ledger.add_user("switch@example.com", datetime(2024, 1, 31))
    ledger.set_setting(user_id, last_dispatched_at=datetime(2024, 2, 29))
    store = ReportSettingsStore(session_factory)

    view = store.update_settings(user_id, frequency=ReportFrequency.weekly)
    assert view.cycle_anchor_at == datetime(2024, 2, 29)
    assert view.next_due_at == datetime(2024, 3, 7)

    view = store.update_settings(user_id, is_enabled=False)
    assert view.is_enabled is False
    assert view.frequency == ReportFrequency.weekly
    assert view.last_dispatched_at == datetime(2024, 2, 29)


def test_update_settings_unknown_user(session_factory) -> None:
    with pytest.raises(ValueError):
        ReportSettingsStore(session_factory).update_settings(42, is_enabled=False)
