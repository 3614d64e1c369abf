"""Counter service: validation and orchestration over the counter store.

Every operation returns a :class:`ServiceResult` instead of raising, so the
HTTP and WebSocket boundaries never see raw storage exceptions. Store calls
are synchronous and run in the threadpool to keep the event loop free.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from fastapi.concurrency import run_in_threadpool

from .errors import CounterError, InvalidAmountError, InvalidColorError, ValidationError
from .logger import get_logger
from .models import VALID_COLORS
from .store import DEFAULT_TIME_RANGE, CounterStore, isoformat

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 50


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MutationNotifier(Protocol):
    async def notify_mutation(self) -> int: ...


@dataclass
class ServiceResult:
    """Uniform ``{success, data?|error?}`` result shape."""

    success: bool
    data: Any = None
    error: str | None = None
    details: str | None = None
    message: str | None = None
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        if self.details is not None:
            result["details"] = self.details
        if self.message is not None:
            result["message"] = self.message
        result["timestamp"] = self.timestamp
        return result


def normalize_color(color: Any) -> str:
    """Return the canonical color name.

    Raises:
        InvalidColorError: ``color`` is not a known counter
    """
    if isinstance(color, str) and color.lower() in VALID_COLORS:
        return color.lower()
    raise InvalidColorError(
        f"Invalid color '{color}'. Valid colors are: {', '.join(VALID_COLORS)}"
    )


def validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise InvalidAmountError("Increment amount must be a positive integer")
    return amount


def _parse_date(value: Any, name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid {name} '{value}'. Use an ISO-8601 date.") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_int(value: Any, default: int, name: str) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {name} '{value}'. Expected an integer.") from exc


def summarize(stats: list[dict[str, Any]]) -> dict[str, Any]:
    """Totals and leader across the per-color statistics."""
    if not stats:
        return {
            "totalCount": 0,
            "totalIncrements": 0,
            "leader": None,
            "leaderCount": 0,
            "difference": 0,
        }

    leader = stats[0]
    for stat in stats[1:]:
        if stat["currentCount"] > leader["currentCount"]:
            leader = stat

    difference = 0
    if len(stats) >= 2:
        difference = abs(stats[0]["currentCount"] - stats[1]["currentCount"])

    return {
        "totalCount": sum(stat["currentCount"] for stat in stats),
        "totalIncrements": sum(stat["totalIncrements"] for stat in stats),
        "leader": leader["color"],
        "leaderCount": leader["currentCount"],
        "difference": difference,
    }


def generate_insights(stats: list[dict[str, Any]]) -> list[str]:
    insights: list[str] = []
    if len(stats) < 2:
        return insights

    first, second = stats[0], stats[1]
    diff = abs(first["currentCount"] - second["currentCount"])
    ahead = first["color"] if first["currentCount"] > second["currentCount"] else second["color"]

    if diff == 0:
        insights.append("It's a perfect tie!")
    elif diff > 100:
        insights.append(f"{ahead} is dominating with a lead of {diff}")
    elif diff > 10:
        insights.append(f"Close competition with {ahead} slightly ahead")
    return insights


class CounterService:
    """Business operations over the counter store.

    ``notifier`` (normally the broadcast dispatcher) is called after every
    committed mutation.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        notifier: MutationNotifier | None = None,
        expose_details: bool = False,
    ):
        self._store = store
        self.notifier = notifier
        self._expose_details = expose_details

    def _failure(self, error: str, exc: Exception | None = None) -> ServiceResult:
        details = None
        if self._expose_details and exc is not None:
            details = getattr(exc, "details", None) or str(exc)
        return ServiceResult(success=False, error=error, details=details)

    async def _notify(self) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify_mutation()
        except Exception:
            logger.exception("Broadcast after mutation failed")

    async def get_current_counters(self) -> ServiceResult:
        try:
            snapshot = await run_in_threadpool(self._store.read)
        except CounterError as exc:
            logger.error("get_current_counters failed: %s", exc)
            return self._failure("Failed to retrieve counter values", exc)
        return ServiceResult(success=True, data=snapshot.to_dict())

    async def _increment(
        self,
        color: Any,
        increment_by: Any,
        session_id: str | None,
        client_info: dict[str, Any] | None,
    ) -> ServiceResult:
        try:
            color = normalize_color(color)
            amount = validate_amount(increment_by)
        except ValidationError as exc:
            return ServiceResult(success=False, error=str(exc))

        enriched = {
            **(client_info or {}),
            "sessionId": session_id,
            "timestamp": _now_iso(),
            "userAgent": (client_info or {}).get("userAgent"),
            "ipAddress": (client_info or {}).get("ipAddress"),
        }

        try:
            result = await run_in_threadpool(
                self._store.increment,
                color,
                amount,
                client_info=enriched,
                session_id=session_id,
            )
        except CounterError as exc:
            logger.error("increment_counter(%s) failed: %s", color, exc)
            return self._failure(f"Failed to increment {color} counter", exc)

        return ServiceResult(
            success=True,
            data=result.to_dict(),
            message=f"{color} counter incremented successfully",
        )

    async def increment_counter(
        self,
        color: Any,
        *,
        increment_by: Any = 1,
        session_id: str | None = None,
        client_info: dict[str, Any] | None = None,
    ) -> ServiceResult:
        """Increment one counter and broadcast the new values on success."""
        result = await self._increment(color, increment_by, session_id, client_info)
        if result.success:
            await self._notify()
        return result

    async def batch_increment(self, increments: list[dict[str, Any]]) -> ServiceResult:
        """Apply each increment independently, in order.

        There is no atomicity across the batch. ``success`` is true only
        when every item succeeded; per-item outcomes are in ``data``.
        """
        successful: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []

        for item in increments:
            color = item.get("color")
            result = await self._increment(
                color,
                item.get("incrementBy", 1),
                item.get("sessionId"),
                item.get("clientInfo"),
            )
            if result.success:
                successful.append(result.data)
            else:
                failed.append({"color": color, "error": result.error})

        if successful:
            await self._notify()

        return ServiceResult(
            success=not failed,
            data={
                "successful": successful,
                "failed": failed,
                "summary": {
                    "total": len(increments),
                    "successful": len(successful),
                    "failed": len(failed),
                },
            },
        )

    async def reset_all(self, admin_info: dict[str, Any] | None = None) -> ServiceResult:
        try:
            result = await run_in_threadpool(
                self._store.reset,
                client_info={"admin": admin_info} if admin_info else None,
            )
        except CounterError as exc:
            logger.error("reset_all failed: %s", exc)
            return self._failure("Failed to reset counters", exc)

        if admin_info:
            logger.info("Admin reset action by %s", admin_info)

        await self._notify()
        return ServiceResult(
            success=True,
            data=result.to_dict(),
            message="All counters have been reset to zero",
        )

    async def get_statistics(self, time_range: str | None = DEFAULT_TIME_RANGE) -> ServiceResult:
        try:
            report = await run_in_threadpool(
                self._store.query_stats, time_range or DEFAULT_TIME_RANGE
            )
        except CounterError as exc:
            logger.error("get_statistics failed: %s", exc)
            return self._failure("Failed to retrieve counter statistics", exc)

        data = report.to_dict()
        data["summary"] = summarize(data["stats"])
        data["insights"] = generate_insights(data["stats"])
        return ServiceResult(success=True, data=data)

    async def get_history(self, filters: dict[str, Any] | None = None) -> ServiceResult:
        filters = filters or {}
        try:
            color = filters.get("color")
            if color:
                color = normalize_color(color)
            start_date = _parse_date(filters.get("startDate"), "startDate")
            end_date = _parse_date(filters.get("endDate"), "endDate")
            limit = _parse_int(filters.get("limit"), DEFAULT_HISTORY_LIMIT, "limit")
            offset = _parse_int(filters.get("offset"), 0, "offset")
        except ValidationError as exc:
            return ServiceResult(success=False, error=str(exc))

        try:
            page = await run_in_threadpool(
                self._store.query_history,
                color=color or None,
                limit=limit,
                offset=offset,
                start_date=start_date,
                end_date=end_date,
            )
        except CounterError as exc:
            logger.error("get_history failed: %s", exc)
            return self._failure("Failed to retrieve counter history", exc)

        return ServiceResult(success=True, data=page.to_dict())

    async def get_health(self) -> dict[str, Any]:
        """Combine the store health check with a counter snapshot."""
        try:
            database = await run_in_threadpool(self._store.health_check)
            snapshot = await run_in_threadpool(self._store.read)
        except Exception as exc:
            return {"status": "unhealthy", "error": str(exc), "timestamp": _now_iso()}

        return {
            "status": "healthy" if database.get("status") == "healthy" else "unhealthy",
            "database": database,
            "counters": snapshot.counters,
            "lastUpdated": isoformat(snapshot.last_updated),
            "timestamp": _now_iso(),
        }
