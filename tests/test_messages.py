from __future__ import annotations

import pytest

from redblue import messages
from redblue.errors import ProtocolError
from redblue.messages import MessageKind, parse_client_message


def test_parse_known_kinds():
    for kind in ("ping", "pong", "get_counters", "get_stats", "subscribe_updates", "unsubscribe_updates"):
        assert parse_client_message(f'{{"type": "{kind}"}}').kind is MessageKind(kind)


def test_parse_get_stats_time_range_from_bytes():
    message = parse_client_message(b'{"type": "get_stats", "timeRange": "7 days"}')

    assert message.kind is MessageKind.GET_STATS
    assert message.time_range == "7 days"


def test_parse_unknown_type_keeps_raw_tag():
    message = parse_client_message('{"type": "dance", "data": {"moves": 3}}')

    assert message.kind is MessageKind.UNKNOWN
    assert message.raw_type == "dance"
    assert message.data == {"moves": 3}


@pytest.mark.parametrize(
    "raw",
    ["not json", "[1, 2]", '"ping"', '{"data": {}}', '{"type": 7}', b"\xff\xfe"],
)
def test_parse_rejects_malformed(raw):
    with pytest.raises(ProtocolError) as excinfo:
        parse_client_message(raw)

    assert str(excinfo.value) == "Invalid message format"
    assert excinfo.value.details


def test_server_envelopes():
    assert messages.connection_confirmed("client_1", "2024-01-01T00:00:00+00:00") == {
        "type": "connection_confirmed",
        "data": {"clientId": "client_1", "connectedAt": "2024-01-01T00:00:00+00:00"},
    }
    assert messages.counter_update({"red": 1, "blue": 2}, "t") == {
        "type": "counter_update",
        "data": {"red": 1, "blue": 2},
        "timestamp": "t",
    }
    assert messages.statistics_update({"stats": []}, "1 hour")["timeRange"] == "1 hour"
    assert messages.subscription_confirmed(False)["data"] == {"subscribed": False}
    assert messages.error("nope")["error"] == "nope"
    assert messages.pong()["type"] == "pong"
    assert messages.heartbeat()["type"] == "heartbeat"
    assert messages.server_shutdown()["message"] == "Server is shutting down"
