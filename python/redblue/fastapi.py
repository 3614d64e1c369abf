"""FastAPI application: HTTP endpoints and the real-time WebSocket channel.

The app factory owns the lifecycle of every collaborator: the engine, the
counter store and service, the connection registry (and its liveness
sweep) and the broadcast dispatcher.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.websockets import WebSocketState

from . import messages
from .broadcast import BroadcastDispatcher
from .config import Settings
from .database import create_engine_for_url, create_session_factory
from .errors import TransportError
from .logger import configure_uvicorn_logging, get_logger
from .migrations import MigrationManager
from .registry import CLOSE_NORMAL, ConnectionRegistry
from .schemas import BatchIncrementRequest, IncrementRequest
from .service import CounterService, ServiceResult
from .store import DEFAULT_TIME_RANGE, CounterStore
from .version import get_version, log_startup

logger = get_logger(__name__)

WEBSOCKET_PATH = "/ws"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebSocketTransport:
    """Registry transport over a Starlette WebSocket.

    Protocol-level ping/pong is handled by the ASGI server (uvicorn runs it
    with ``ws_ping_interval``/``ws_ping_timeout``) and a peer that stops
    answering is disconnected there. The registry probe therefore only
    pushes a ``heartbeat`` envelope through the send path and vouches for
    the connection while the socket is still open; a closed socket or a
    failed send gets it reaped.
    """

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    async def send_json(self, message: dict[str, Any]) -> None:
        try:
            await self._websocket.send_json(message)
        except (RuntimeError, OSError, WebSocketDisconnect) as exc:
            raise TransportError("WebSocket send failed", details=str(exc)) from exc

    async def ping(self) -> bool:
        if not self.is_open:
            return False
        await self.send_json(messages.heartbeat())
        return True

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close(code=code, reason=reason or None)
        except (RuntimeError, OSError) as exc:
            raise TransportError("WebSocket close failed", details=str(exc)) from exc


def extract_client_info(request: Request) -> dict[str, Any]:
    return {
        "ipAddress": request.client.host if request.client else None,
        "userAgent": request.headers.get("user-agent"),
        "origin": request.headers.get("origin"),
        "referer": request.headers.get("referer"),
        "timestamp": _now_iso(),
    }


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"message": message, "timestamp": _now_iso()}},
    )


def create_app(settings: Settings | None = None, *, engine: Engine | None = None) -> FastAPI:
    """Build the application and wire its collaborators.

    Args:
        settings: Service settings (defaults to ``Settings.from_env()``)
        engine: Pre-built engine, mainly for tests (defaults to one built
            from ``settings.database_url``)
    """
    settings = settings or Settings.from_env()
    version = get_version()
    engine = engine or create_engine_for_url(settings.database_url)

    service = CounterService(
        CounterStore(create_session_factory(engine)), expose_details=settings.is_development
    )
    registry = ConnectionRegistry(
        sweep_interval=settings.ws_ping_interval,
        grace_period=settings.ws_ping_grace,
    )
    dispatcher = BroadcastDispatcher(service, registry)
    registry.responder = dispatcher
    service.notifier = dispatcher

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_uvicorn_logging()
        log_startup(version)
        logger.info("Settings: %s", settings.to_dict())
        await run_in_threadpool(MigrationManager(engine).migrate)
        registry.start()
        app.state.started_at = time.monotonic()
        try:
            yield
        finally:
            logger.info("Shutting down")
            await registry.shutdown()
            engine.dispose()

    app = FastAPI(
        title="Red vs Blue Counter Service",
        description="Two durable counters with history analytics and real-time fan-out",
        version=version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.started_at = time.monotonic()

    if settings.cors_origins is not None:
        allow_creds = bool(settings.cors_origins)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins if settings.cors_origins else ["*"],
            allow_credentials=allow_creds,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        logger.debug("Rejected %s %s: %s", request.method, request.url.path, problems)
        result = ServiceResult(success=False, error=f"Invalid request: {problems}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Server Error")

    @app.get("/")
    def welcome() -> dict[str, Any]:
        return {
            "message": "Welcome to the Red vs Blue API!",
            "version": version,
            "endpoints": {
                "counters": "/api/counters",
                "red": "/api/red",
                "blue": "/api/blue",
                "stats": "/api/counters/stats",
                "history": "/api/counters/history",
                "health": "/api/health",
            },
            "websocket": WEBSOCKET_PATH,
            "timestamp": _now_iso(),
        }

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        """Process liveness probe; does not touch the database."""
        return {"status": "healthy", "service": "redblue-counter"}

    @app.get("/api/health")
    async def health() -> JSONResponse:
        report = await service.get_health()
        status_code = (
            status.HTTP_200_OK
            if report["status"] == "healthy"
            else status.HTTP_503_SERVICE_UNAVAILABLE
        )
        return JSONResponse(status_code=status_code, content=report)

    @app.get("/api/status")
    async def api_status(request: Request) -> JSONResponse:
        result = await service.get_current_counters()
        if not result.success:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"success": False, "error": "Unable to fetch counter status"},
            )
        return JSONResponse(
            content={
                "success": True,
                "data": {
                    "counters": result.data["counters"],
                    "connectedClients": len(registry),
                    "timestamp": _now_iso(),
                    "uptime": time.monotonic() - request.app.state.started_at,
                    "version": version,
                },
            }
        )

    @app.get("/api/counters")
    async def get_counters() -> JSONResponse:
        result = await service.get_current_counters()
        if not result.success:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=result.to_dict()
            )
        return JSONResponse(
            content={
                "success": True,
                "data": {
                    "counters": result.data["counters"],
                    "lastUpdated": result.data["lastUpdated"],
                    "timestamp": result.timestamp,
                },
            }
        )

    async def _increment(color: str, request: Request, body: IncrementRequest | None) -> JSONResponse:
        body = body or IncrementRequest()
        result = await service.increment_counter(
            color,
            increment_by=body.incrementBy,
            session_id=body.sessionId,
            client_info=extract_client_info(request),
        )
        if not result.success:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.to_dict())
        return JSONResponse(
            content={
                "success": True,
                "message": f"{color.title()} activated {result.data['newCount']} times",
                "data": result.data,
            }
        )

    @app.post("/api/red")
    async def increment_red(request: Request, body: IncrementRequest | None = None) -> JSONResponse:
        return await _increment("red", request, body)

    @app.post("/api/blue")
    async def increment_blue(request: Request, body: IncrementRequest | None = None) -> JSONResponse:
        return await _increment("blue", request, body)

    @app.post("/api/counters/batch")
    async def batch_increment(request: Request, body: BatchIncrementRequest) -> JSONResponse:
        if not body.increments:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"success": False, "error": "increments must be a non-empty array"},
            )
        client_info = extract_client_info(request)
        increments = [
            {**item.model_dump(), "clientInfo": client_info} for item in body.increments
        ]
        result = await service.batch_increment(increments)
        return JSONResponse(
            status_code=status.HTTP_200_OK if result.success else status.HTTP_207_MULTI_STATUS,
            content=result.to_dict(),
        )

    @app.post("/api/counters/reset")
    async def reset_counters(request: Request) -> JSONResponse:
        admin_info = {
            "ipAddress": request.client.host if request.client else None,
            "userAgent": request.headers.get("user-agent"),
            "timestamp": _now_iso(),
        }
        result = await service.reset_all(admin_info)
        if not result.success:
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=result.to_dict()
            )
        return JSONResponse(content=result.to_dict())

    @app.get("/api/counters/stats")
    async def get_statistics(timeRange: str = Query(default=DEFAULT_TIME_RANGE)) -> JSONResponse:
        result = await service.get_statistics(timeRange)
        status_code = status.HTTP_200_OK if result.success else status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(status_code=status_code, content=result.to_dict())

    @app.get("/api/counters/history")
    async def get_history(
        color: str | None = None,
        limit: str | None = None,
        offset: str | None = None,
        startDate: str | None = None,
        endDate: str | None = None,
    ) -> JSONResponse:
        result = await service.get_history(
            {
                "color": color,
                "limit": limit,
                "offset": offset,
                "startDate": startDate,
                "endDate": endDate,
            }
        )
        status_code = status.HTTP_200_OK if result.success else status.HTTP_400_BAD_REQUEST
        return JSONResponse(status_code=status_code, content=result.to_dict())

    @app.get("/api/clients")
    def list_clients() -> dict[str, Any]:
        return {"success": True, "data": {"count": len(registry), "clients": registry.clients_info()}}

    @app.websocket(WEBSOCKET_PATH)
    async def counters_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        connection_id = await registry.accept(
            WebSocketTransport(websocket),
            remote_address=websocket.client.host if websocket.client else None,
            user_agent=websocket.headers.get("user-agent"),
        )
        reason = "client disconnected"
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                payload = frame.get("text")
                if payload is None:
                    payload = frame.get("bytes") or b""
                await registry.dispatch(connection_id, payload)
        except WebSocketDisconnect:
            pass
        except RuntimeError as exc:
            # Starlette raises RuntimeError when the socket was closed server side
            reason = "transport error"
            logger.debug("WebSocket %s receive failed: %s", connection_id, exc)
        finally:
            await registry.close(connection_id, reason)

    return app
