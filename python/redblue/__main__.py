"""CLI entrypoint for running the counter service."""

from __future__ import annotations

import uvicorn

from .config import Settings
from .fastapi import create_app


def main() -> None:
    settings = Settings.from_env()
    app = create_app(settings)
    # protocol-level keepalive; half-open sockets are dropped by uvicorn
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
        ws_ping_interval=settings.ws_ping_interval,
        ws_ping_timeout=settings.ws_ping_timeout,
    )


if __name__ == "__main__":
    main()
