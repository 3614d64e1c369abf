"""Connection registry for real-time clients.

The registry exclusively owns every live :class:`Connection`. It is the only
shared mutable structure in the process; all mutation happens on the event
loop, and iteration always works on a snapshot so handlers that suspend
mid-loop never see the set change underneath them.

Per-connection state machine::

    CONNECTING -> OPEN (subscribed true/false) -> CLOSED

There is no reconnection: a new transport session is a new connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from . import messages
from .errors import ProtocolError, TransportError
from .logger import get_logger
from .messages import MessageKind, parse_client_message

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL = 30.0
DEFAULT_GRACE_PERIOD = 1.0

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_connection_id() -> str:
    return f"client_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class Transport(Protocol):
    """Bidirectional message channel underneath one connection."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, message: dict[str, Any]) -> None: ...

    async def ping(self) -> bool:
        """Send a liveness probe.

        Returns True when the transport vouches for the peer itself (its
        server answers protocol pings), False when the registry must wait
        for an inbound frame or ``mark_alive``.
        """
        ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


class Responder(Protocol):
    """Answers snapshot requests for a single connection."""

    async def send_counters(self, connection: "Connection") -> bool: ...

    async def send_statistics(self, connection: "Connection", time_range: str | None) -> bool: ...

    async def send_initial_data(self, connection: "Connection") -> None: ...


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class Connection:
    """One live real-time client."""

    id: str
    transport: Transport
    remote_address: str | None = None
    user_agent: str | None = None
    connected_at: datetime = field(default_factory=_now)
    last_seen_at: datetime = field(default_factory=_now)
    subscribed: bool = True
    is_alive: bool = True
    state: ConnectionState = ConnectionState.CONNECTING

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN and self.transport.is_open

    def touch(self) -> None:
        self.is_alive = True
        self.last_seen_at = _now()

    def info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "remoteAddress": self.remote_address,
            "userAgent": self.user_agent,
            "connectedAt": self.connected_at.isoformat(),
            "lastSeen": self.last_seen_at.isoformat(),
            "subscribed": self.subscribed,
        }


class ConnectionRegistry:
    """Tracks live connections, routes their messages and reaps dead ones.

    Args:
        sweep_interval: Seconds between liveness sweeps.
        grace_period: Seconds a probed connection has to answer.
        responder: Answers ``get_counters``/``get_stats`` and pushes the
            initial snapshot on accept (normally the broadcast dispatcher).
    """

    def __init__(
        self,
        *,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        responder: Responder | None = None,
    ):
        self.sweep_interval = sweep_interval
        self.grace_period = grace_period
        self.responder = responder
        self._connections: dict[str, Connection] = {}
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def subscribers(self) -> list[Connection]:
        """Subscribed connections with an open transport, in insertion order."""
        return [c for c in self._connections.values() if c.subscribed and c.is_open]

    def clients_info(self) -> list[dict[str, Any]]:
        return [connection.info() for connection in self._connections.values()]

    async def accept(
        self,
        transport: Transport,
        *,
        remote_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Register a new connection and push the welcome sequence.

        The client receives ``connection_confirmed`` followed by the current
        counters and default-window statistics without asking for them.
        """
        connection = Connection(
            id=generate_connection_id(),
            transport=transport,
            remote_address=remote_address,
            user_agent=user_agent,
        )
        self._connections[connection.id] = connection
        connection.state = ConnectionState.OPEN

        logger.info(
            "Client connected: %s (%d connected)", connection.id, len(self._connections)
        )

        await self.send(
            connection,
            messages.connection_confirmed(connection.id, connection.connected_at.isoformat()),
        )
        if self.responder is not None and connection.is_open:
            await self.responder.send_initial_data(connection)

        return connection.id

    async def send(self, connection: Connection, message: dict[str, Any]) -> bool:
        """Send to one connection; a transport failure closes that connection only."""
        if not connection.is_open:
            return False
        try:
            await connection.transport.send_json(message)
        except (TransportError, OSError) as exc:
            logger.warning("Send to %s failed: %s", connection.id, exc)
            await self.close(connection.id, "transport error")
            return False
        return True

    async def send_error(self, connection: Connection, message: str) -> bool:
        return await self.send(connection, messages.error(message))

    def mark_alive(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.touch()

    async def dispatch(self, connection_id: str, raw: str | bytes) -> None:
        """Route one inbound frame.

        Malformed or unknown messages get an ``error`` reply; they never
        close the connection.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        connection.touch()

        try:
            message = parse_client_message(raw)
        except ProtocolError as exc:
            logger.debug("Unparseable message from %s: %s", connection_id, exc.details)
            await self.send_error(connection, str(exc))
            return

        kind = message.kind
        if kind is MessageKind.PING:
            await self.send(connection, messages.pong())
        elif kind is MessageKind.PONG:
            pass
        elif kind is MessageKind.GET_COUNTERS:
            if self.responder is None:
                await self.send_error(connection, "Counter data unavailable")
            else:
                await self.responder.send_counters(connection)
        elif kind is MessageKind.GET_STATS:
            if self.responder is None:
                await self.send_error(connection, "Statistics unavailable")
            else:
                await self.responder.send_statistics(connection, message.time_range)
        elif kind is MessageKind.SUBSCRIBE_UPDATES:
            connection.subscribed = True
            await self.send(connection, messages.subscription_confirmed(True))
        elif kind is MessageKind.UNSUBSCRIBE_UPDATES:
            connection.subscribed = False
            await self.send(connection, messages.subscription_confirmed(False))
        else:
            await self.send_error(connection, f"Unknown message type: {message.raw_type}")

    async def close(
        self, connection_id: str, reason: str = "", *, code: int = CLOSE_NORMAL
    ) -> bool:
        """Deregister and close a connection.

        Idempotent: unknown or already closed ids are a no-op.

        Returns:
            True if this call removed the connection
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False

        was_open = connection.transport.is_open
        connection.state = ConnectionState.CLOSED
        if was_open:
            try:
                await connection.transport.close(code=code, reason=reason)
            except (TransportError, OSError) as exc:
                logger.debug("Closing transport for %s failed: %s", connection_id, exc)

        logger.info(
            "Client disconnected: %s (%s), %d remaining",
            connection_id,
            reason or "closed",
            len(self._connections),
        )
        return True

    async def sweep_liveness(self) -> list[str]:
        """Probe every open connection and reap those that do not answer.

        Connections whose transport already closed are removed at once.
        A transport that acknowledges its own probe counts as alive. Other
        probed connections are marked not-alive; any inbound frame (or
        ``mark_alive``) within ``grace_period`` keeps them, the rest are
        terminated.

        Returns:
            Ids removed by this sweep
        """
        removed: list[str] = []
        probed: list[Connection] = []

        for connection in self.connections():
            if not connection.is_open:
                if await self.close(connection.id, "transport closed"):
                    removed.append(connection.id)
                continue

            connection.is_alive = False
            try:
                acknowledged = await connection.transport.ping()
            except (TransportError, OSError) as exc:
                logger.debug("Liveness probe to %s failed: %s", connection.id, exc)
                if await self.close(connection.id, "transport error"):
                    removed.append(connection.id)
                continue
            if acknowledged:
                connection.touch()
            else:
                probed.append(connection)

        if probed:
            await asyncio.sleep(self.grace_period)
            for connection in probed:
                if connection.is_alive or connection.id not in self._connections:
                    continue
                if await self.close(connection.id, "liveness check failed", code=CLOSE_GOING_AWAY):
                    removed.append(connection.id)

        if removed:
            logger.info("Cleaned up %d disconnected clients", len(removed))
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_liveness()
            except Exception:
                logger.exception("Liveness sweep failed")

    def start(self) -> None:
        """Schedule the recurring liveness sweep on the running loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "Liveness sweep started (every %.1fs, grace %.1fs)",
                self.sweep_interval,
                self.grace_period,
            )

    async def stop(self) -> None:
        """Cancel the liveness sweep."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def shutdown(self) -> None:
        """Stop sweeping, tell every client the server is going away and close them."""
        await self.stop()
        notice = messages.server_shutdown()
        for connection in self.connections():
            await self.send(connection, notice)
            await self.close(connection.id, "Server shutdown", code=CLOSE_GOING_AWAY)
        logger.info("Connection registry shut down")
