from __future__ import annotations

import asyncio

import pytest

from redblue.errors import StorageError
from redblue.service import CounterService, generate_insights, summarize


class _RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.calls = 0
        self.fail = fail

    async def notify_mutation(self) -> int:
        self.calls += 1
        if self.fail:
            raise RuntimeError("fan-out exploded")
        return 0


class _BrokenStore:
    def read(self):
        raise StorageError("Failed to fetch counter values", details="connection refused")

    def increment(self, *args, **kwargs):
        raise StorageError("Failed to increment red counter", details="connection refused")

    def health_check(self):
        return {"status": "unhealthy", "error": "connection refused"}


def _history_total(service: CounterService) -> int:
    result = asyncio.run(service.get_history())
    return result.data["pagination"]["totalCount"]


def test_increment_normalizes_color_and_notifies(store):
    notifier = _RecordingNotifier()
    service = CounterService(store, notifier=notifier)

    result = asyncio.run(
        service.increment_counter(
            "RED", increment_by=2, session_id="abc", client_info={"userAgent": "pytest"}
        )
    )

    assert result.success
    assert result.data["color"] == "red"
    assert result.data["newCount"] == 2
    assert notifier.calls == 1

    [entry] = asyncio.run(service.get_history()).data["history"]
    assert entry["sessionId"] == "abc"
    assert entry["clientInfo"]["userAgent"] == "pytest"
    assert entry["clientInfo"]["sessionId"] == "abc"


@pytest.mark.parametrize(
    ("color", "amount", "message"),
    [
        ("green", 1, "Invalid color"),
        ("red", 0, "positive integer"),
        ("red", -1, "positive integer"),
        ("red", "3", "positive integer"),
        (None, 1, "Invalid color"),
    ],
)
def test_invalid_increment_changes_nothing(service, color, amount, message):
    notifier = _RecordingNotifier()
    service.notifier = notifier

    result = asyncio.run(service.increment_counter(color, increment_by=amount))

    assert not result.success
    assert message in result.error
    assert notifier.calls == 0
    assert asyncio.run(service.get_current_counters()).data["counters"] == {"blue": 0, "red": 0}
    assert _history_total(service) == 0


def test_notifier_failure_does_not_fail_mutation(store):
    service = CounterService(store, notifier=_RecordingNotifier(fail=True))

    result = asyncio.run(service.increment_counter("blue"))

    assert result.success
    assert store.read().counters["blue"] == 1


def test_batch_applies_items_independently(store):
    notifier = _RecordingNotifier()
    service = CounterService(store, notifier=notifier)

    result = asyncio.run(
        service.batch_increment(
            [
                {"color": "red", "incrementBy": 2},
                {"color": "green", "incrementBy": 1},
                {"color": "blue"},
                {"color": "blue", "incrementBy": 0},
            ]
        )
    )

    assert not result.success
    assert result.data["summary"] == {"total": 4, "successful": 2, "failed": 2}
    assert [item["color"] for item in result.data["failed"]] == ["green", "blue"]
    assert store.read().counters == {"blue": 1, "red": 2}
    assert notifier.calls == 1


def test_batch_all_successful(service):
    result = asyncio.run(
        service.batch_increment([{"color": "red"}, {"color": "red", "incrementBy": 3}])
    )

    assert result.success
    assert [item["newCount"] for item in result.data["successful"]] == [1, 4]


def test_batch_with_only_failures_does_not_notify(service):
    notifier = _RecordingNotifier()
    service.notifier = notifier

    result = asyncio.run(service.batch_increment([{"color": "purple"}]))

    assert not result.success
    assert notifier.calls == 0


def test_reset_all_records_admin_and_notifies(store):
    notifier = _RecordingNotifier()
    service = CounterService(store, notifier=notifier)
    store.increment("red", 3)

    result = asyncio.run(service.reset_all({"ipAddress": "10.0.0.1"}))

    assert result.success
    assert result.data["previousCounts"] == {"blue": 0, "red": 3}
    assert store.read().counters == {"blue": 0, "red": 0}
    assert notifier.calls == 1

    history = asyncio.run(service.get_history({"color": "red"})).data["history"]
    assert history[0]["clientInfo"] == {"action": "reset", "admin": {"ipAddress": "10.0.0.1"}}


def test_statistics_include_summary_and_insights(store, service):
    store.increment("red", 15)
    store.increment("blue", 3)

    result = asyncio.run(service.get_statistics("bogus"))

    assert result.success
    assert result.data["timeRange"] == "bogus"
    assert result.data["summary"]["leader"] == "red"
    assert result.data["summary"]["totalCount"] == 18
    assert result.data["summary"]["difference"] == 12
    assert result.data["insights"] == ["Close competition with red slightly ahead"]


def test_summarize_and_insights_edge_cases():
    assert summarize([])["leader"] is None
    assert generate_insights([]) == []

    tied = [
        {"color": "blue", "currentCount": 4, "totalIncrements": 1},
        {"color": "red", "currentCount": 4, "totalIncrements": 2},
    ]
    assert generate_insights(tied) == ["It's a perfect tie!"]
    assert summarize(tied)["totalIncrements"] == 3

    blowout = [
        {"color": "blue", "currentCount": 500, "totalIncrements": 1},
        {"color": "red", "currentCount": 2, "totalIncrements": 1},
    ]
    assert generate_insights(blowout) == ["blue is dominating with a lead of 498"]


def test_history_filters_are_validated(store, service):
    for _ in range(3):
        store.increment("red")

    clamped = asyncio.run(service.get_history({"limit": "5000", "offset": "-5"}))
    assert clamped.success
    assert clamped.data["pagination"]["limit"] == 1000
    assert clamped.data["pagination"]["offset"] == 0

    default = asyncio.run(service.get_history())
    assert default.data["pagination"]["limit"] == 50

    assert not asyncio.run(service.get_history({"color": "green"})).success
    assert not asyncio.run(service.get_history({"limit": "ten"})).success
    assert not asyncio.run(service.get_history({"startDate": "yesterday"})).success

    dated = asyncio.run(service.get_history({"startDate": "2000-01-01T00:00:00Z"}))
    assert dated.data["pagination"]["totalCount"] == 3


def test_storage_failures_become_results():
    quiet = CounterService(_BrokenStore())
    verbose = CounterService(_BrokenStore(), expose_details=True)

    result = asyncio.run(quiet.increment_counter("red"))
    assert not result.success
    assert result.error == "Failed to increment red counter"
    assert "details" not in result.to_dict()

    result = asyncio.run(verbose.get_current_counters())
    assert result.to_dict()["details"] == "connection refused"


def test_health(service):
    report = asyncio.run(service.get_health())
    assert report["status"] == "healthy"
    assert report["counters"] == {"blue": 0, "red": 0}

    broken = asyncio.run(CounterService(_BrokenStore()).get_health())
    assert broken["status"] == "unhealthy"
