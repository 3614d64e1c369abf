"""Broadcast of counter snapshots to real-time clients."""

from __future__ import annotations

from . import messages
from .logger import get_logger
from .registry import Connection, ConnectionRegistry
from .service import CounterService
from .store import DEFAULT_TIME_RANGE

logger = get_logger(__name__)


class BroadcastDispatcher:
    """Pushes fresh counter snapshots after mutations and on request.

    Broadcast is best effort: one attempt per subscribed open connection,
    no retry or queueing, and a failed send only affects that connection.
    """

    def __init__(self, service: CounterService, registry: ConnectionRegistry):
        self._service = service
        self._registry = registry

    async def notify_mutation(self) -> int:
        """Send the current counters to every subscriber.

        Returns:
            Number of connections the update was delivered to
        """
        result = await self._service.get_current_counters()
        if not result.success:
            logger.error("Failed to get counter data for broadcast: %s", result.error)
            return 0

        message = messages.counter_update(result.data["counters"], result.timestamp)
        targets = self._registry.subscribers()
        delivered = 0
        for connection in targets:
            if await self._registry.send(connection, message):
                delivered += 1

        logger.debug("Broadcast counter_update to %d/%d clients", delivered, len(targets))
        return delivered

    async def send_counters(self, connection: Connection) -> bool:
        result = await self._service.get_current_counters()
        if not result.success:
            return await self._registry.send_error(connection, "Failed to fetch counters")
        return await self._registry.send(
            connection, messages.counter_update(result.data["counters"], result.timestamp)
        )

    async def send_statistics(self, connection: Connection, time_range: str | None = None) -> bool:
        time_range = time_range or DEFAULT_TIME_RANGE
        result = await self._service.get_statistics(time_range)
        if not result.success:
            return await self._registry.send_error(connection, "Failed to fetch statistics")
        return await self._registry.send(
            connection, messages.statistics_update(result.data, time_range)
        )

    async def send_initial_data(self, connection: Connection) -> None:
        await self.send_counters(connection)
        await self.send_statistics(connection, DEFAULT_TIME_RANGE)
