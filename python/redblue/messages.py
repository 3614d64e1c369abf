"""Real-time message envelope.

Envelope shape (both directions)::

    {type: str, data?: object, timestamp?: str, timeRange?: str, error?: str}

Inbound messages are parsed into a :class:`ClientMessage` whose ``kind`` is
a closed :class:`MessageKind`; unrecognised types map to
``MessageKind.UNKNOWN`` and keep the raw tag for the error reply.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import ProtocolError


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageKind(str, Enum):
    """Client to server message kinds."""

    PING = "ping"
    PONG = "pong"
    GET_COUNTERS = "get_counters"
    GET_STATS = "get_stats"
    SUBSCRIBE_UPDATES = "subscribe_updates"
    UNSUBSCRIBE_UPDATES = "unsubscribe_updates"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, raw_type: str) -> "MessageKind":
        try:
            kind = cls(raw_type)
        except ValueError:
            return cls.UNKNOWN
        return kind


@dataclass(frozen=True)
class ClientMessage:
    """Parsed inbound message."""

    kind: MessageKind
    raw_type: str
    time_range: str | None = None
    data: dict[str, Any] | None = None


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Parse an inbound frame.

    Raises:
        ProtocolError: payload is not a JSON object with a string ``type``
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Invalid message format", details=str(exc)) from exc

    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ProtocolError("Invalid message format", details=str(exc)) from exc

    if not isinstance(parsed, dict):
        raise ProtocolError("Invalid message format", details="envelope must be an object")

    raw_type = parsed.get("type")
    if not isinstance(raw_type, str):
        raise ProtocolError("Invalid message format", details="missing message type")

    time_range = parsed.get("timeRange")
    data = parsed.get("data")
    return ClientMessage(
        kind=MessageKind.from_type(raw_type),
        raw_type=raw_type,
        time_range=time_range if isinstance(time_range, str) else None,
        data=data if isinstance(data, dict) else None,
    )


# Server -> client envelopes


def connection_confirmed(client_id: str, connected_at: str) -> dict[str, Any]:
    return {
        "type": "connection_confirmed",
        "data": {"clientId": client_id, "connectedAt": connected_at},
    }


def pong() -> dict[str, Any]:
    return {"type": "pong", "timestamp": _now_iso()}


def heartbeat() -> dict[str, Any]:
    return {"type": "heartbeat", "timestamp": _now_iso()}


def counter_update(counters: dict[str, int], timestamp: str | None = None) -> dict[str, Any]:
    return {
        "type": "counter_update",
        "data": dict(counters),
        "timestamp": timestamp or _now_iso(),
    }


def statistics_update(data: dict[str, Any], time_range: str) -> dict[str, Any]:
    return {"type": "statistics_update", "data": data, "timeRange": time_range}


def subscription_confirmed(subscribed: bool) -> dict[str, Any]:
    return {"type": "subscription_confirmed", "data": {"subscribed": subscribed}}


def error(message: str) -> dict[str, Any]:
    return {"type": "error", "error": message, "timestamp": _now_iso()}


def server_shutdown(message: str = "Server is shutting down") -> dict[str, Any]:
    return {"type": "server_shutdown", "message": message, "timestamp": _now_iso()}
