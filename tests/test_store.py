from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from redblue.database import session_scope
from redblue.errors import NotFoundError, StorageError, ValidationError
from redblue.models import CounterHistory, utcnow
from redblue.store import MAX_HISTORY_LIMIT, CounterStore, resolve_time_range


def _history(store, **kwargs):
    return store.query_history(limit=MAX_HISTORY_LIMIT, **kwargs).entries


def test_increment_records_history(store):
    result = store.increment("red", 3, client_info={"userAgent": "pytest"}, session_id="s-1")

    assert (result.previous_count, result.new_count, result.increment_by) == (0, 3, 3)
    assert store.read().counters == {"blue": 0, "red": 3}

    [entry] = _history(store)
    assert entry.color == "red"
    assert entry.previous_count == 0
    assert entry.new_count == 3
    assert entry.increment_amount == 3
    assert entry.session_id == "s-1"
    assert entry.client_info == {"userAgent": "pytest"}


@pytest.mark.parametrize("amount", [0, -1, True, 1.5, "2"])
def test_increment_rejects_bad_amount(store, amount):
    with pytest.raises(ValidationError):
        store.increment("red", amount)

    assert store.read().counters["red"] == 0
    assert _history(store) == []


def test_increment_unknown_color_is_not_found(store):
    with pytest.raises(NotFoundError):
        store.increment("green")

    assert _history(store) == []


def test_concurrent_increments_lose_nothing(store):
    amounts = [1, 2, 3, 5] * 10

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda amount: store.increment("red", amount), amounts))

    assert store.read().counters["red"] == sum(amounts)

    # every transaction saw a distinct predecessor value
    previous = sorted(result.previous_count for result in results)
    assert len(set(previous)) == len(amounts)

    entries = _history(store, color="red")
    assert len(entries) == len(amounts)
    for entry in entries:
        assert entry.new_count == entry.previous_count + entry.increment_amount


def test_reset_zeroes_every_counter_with_one_entry_per_color(store):
    store.increment("red", 7)
    store.increment("blue", 2)

    result = store.reset(client_info={"admin": {"ipAddress": "127.0.0.1"}})

    assert result.previous_counts == {"blue": 2, "red": 7}
    assert store.read().counters == {"blue": 0, "red": 0}

    resets = [e for e in _history(store) if (e.client_info or {}).get("action") == "reset"]
    assert sorted((e.color, e.previous_count, e.new_count, e.increment_amount) for e in resets) == [
        ("blue", 2, 0, -2),
        ("red", 7, 0, -7),
    ]
    assert resets[0].client_info["admin"] == {"ipAddress": "127.0.0.1"}


def test_reset_records_zero_counters_too(store):
    store.reset()

    entries = _history(store)
    assert sorted(e.color for e in entries) == ["blue", "red"]
    assert all(e.increment_amount == 0 for e in entries)


class _FailingCommitSession(Session):
    def commit(self):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))


def test_reset_is_all_or_nothing(engine, store):
    store.increment("red", 5)
    store.increment("blue", 1)
    broken = CounterStore(sessionmaker(bind=engine, class_=_FailingCommitSession))

    with pytest.raises(StorageError) as excinfo:
        broken.reset()

    assert "disk I/O error" in excinfo.value.details
    assert store.read().counters == {"blue": 1, "red": 5}
    assert len(_history(store)) == 2


def test_read_reports_last_updated(store):
    before = store.read().last_updated
    store.increment("blue")
    after = store.read().last_updated

    assert after is not None
    assert before is None or after >= before


def test_history_limit_and_offset_are_clamped(store):
    for _ in range(3):
        store.increment("red")

    page = store.query_history(limit=5000, offset=-5)
    assert page.limit == MAX_HISTORY_LIMIT
    assert page.offset == 0
    assert page.total_count == 3
    assert not page.has_more

    as_max = store.query_history(limit=MAX_HISTORY_LIMIT, offset=0)
    assert [e.id for e in page.entries] == [e.id for e in as_max.entries]


def test_history_is_most_recent_first_with_pagination(store):
    for color in ("red", "blue", "red", "blue", "red"):
        store.increment(color)

    page = store.query_history(limit=2, offset=1)
    ids = [entry.id for entry in _history(store)]

    assert [entry.id for entry in page.entries] == ids[1:3]
    assert page.total_count == 5
    assert page.has_more
    assert page.to_dict()["pagination"] == {
        "limit": 2,
        "offset": 1,
        "totalCount": 5,
        "hasMore": True,
    }


def test_history_filters_by_color_and_dates(store, session_factory):
    store.increment("red")
    store.increment("blue")
    with session_scope(session_factory) as session:
        session.add(
            CounterHistory(
                color="red",
                previous_count=0,
                new_count=1,
                increment_amount=1,
                timestamp=utcnow() - timedelta(days=3),
            )
        )

    assert {e.color for e in _history(store, color="blue")} == {"blue"}

    recent = _history(store, start_date=utcnow() - timedelta(days=1))
    assert len(recent) == 2

    old = _history(store, end_date=utcnow() - timedelta(days=1))
    assert [(e.color, e.previous_count) for e in old] == [("red", 0)]


def test_stats_aggregate_window_and_live_values(store, session_factory):
    store.increment("red", 2)
    store.increment("red", 4)
    with session_scope(session_factory) as session:
        session.add(
            CounterHistory(
                color="blue",
                previous_count=0,
                new_count=9,
                increment_amount=9,
                timestamp=utcnow() - timedelta(days=2),
            )
        )

    day = {s.color: s for s in store.query_stats("24 hours").stats}
    assert day["red"].current_count == 6
    assert day["red"].total_increments == 2
    assert day["red"].total_increment_amount == 6
    assert day["red"].avg_increment == pytest.approx(3.0)
    assert day["red"].first_increment_at <= day["red"].last_increment_at
    assert day["blue"].total_increments == 0
    assert day["blue"].first_increment_at is None

    week = {s.color: s for s in store.query_stats("7 days").stats}
    assert week["blue"].total_increment_amount == 9


def test_unknown_time_range_uses_default_window(store):
    store.increment("blue", 2)

    unknown = store.query_stats("fortnight")
    default = store.query_stats("24 hours")

    assert resolve_time_range("fortnight") == timedelta(hours=24)
    assert unknown.time_range == "fortnight"
    assert [s.to_dict() for s in unknown.stats] == [s.to_dict() for s in default.stats]


def test_health_check(store):
    assert store.health_check() == {"status": "healthy"}


def test_zero_limit_page_is_final(store):
    store.increment("red")
    store.increment("blue")

    page = store.query_history(limit=0)

    assert page.entries == []
    assert page.total_count == 2
    assert not page.has_more
    assert page.to_dict()["pagination"]["hasMore"] is False
