"""Environment-driven configuration for the counter service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote_plus

from .errors import ConfigError

ENVIRONMENTS = ("development", "test", "production")


def _read_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


def _read_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
        return parsed if parsed > 0 else default
    except ValueError:
        return default


def _read_origins(value: str | None) -> list[str] | None:
    # None means CORS is not configured, [] means all origins
    if value is None:
        return None
    value = value.strip()
    if value == "*":
        return []
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def _build_database_url() -> str:
    url = (os.environ.get("DATABASE_URL") or "").strip()
    if url:
        return url

    host = os.environ.get("DB_HOST", "localhost")
    port = _read_int(os.environ.get("DB_PORT"), 5432)
    name = os.environ.get("DB_NAME", "red_vs_blue")
    user = os.environ.get("DB_USER", "postgres")
    password = os.environ.get("DB_PASSWORD", "password")
    return f"postgresql+psycopg://{quote_plus(user)}:{quote_plus(password)}@{host}:{port}/{name}"


@dataclass(frozen=True)
class Settings:
    """Typed container for service configuration."""

    database_url: str
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    ws_ping_interval: float = 30.0
    ws_ping_grace: float = 1.0
    ws_ping_timeout: float = 20.0
    cors_origins: list[str] | None = field(default=None)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""

        environment = os.environ.get("REDBLUE_ENV", "development").strip().lower()
        if environment not in ENVIRONMENTS:
            raise ConfigError(
                f"REDBLUE_ENV must be one of {', '.join(ENVIRONMENTS)}, got '{environment}'."
            )

        port_raw = os.environ.get("REDBLUE_PORT") or os.environ.get("PORT")

        return cls(
            database_url=_build_database_url(),
            host=os.environ.get("REDBLUE_HOST", cls.host),
            port=_read_int(port_raw, cls.port),
            environment=environment,
            ws_ping_interval=_read_float(
                os.environ.get("REDBLUE_WS_PING_INTERVAL"), cls.ws_ping_interval
            ),
            ws_ping_grace=_read_float(
                os.environ.get("REDBLUE_WS_PING_GRACE"), cls.ws_ping_grace
            ),
            ws_ping_timeout=_read_float(
                os.environ.get("REDBLUE_WS_PING_TIMEOUT"), cls.ws_ping_timeout
            ),
            cors_origins=_read_origins(os.environ.get("REDBLUE_CORS_ORIGINS")),
        )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def to_dict(self) -> dict[str, Any]:
        """Return a dict suitable for logging/debugging (password redacted)."""

        url = self.database_url
        scheme, sep, rest = url.partition("://")
        if sep and "@" in rest:
            credentials, _, location = rest.rpartition("@")
            user = credentials.split(":", 1)[0]
            url = f"{scheme}://{user}:***@{location}"

        return {
            "database_url": url,
            "host": self.host,
            "port": self.port,
            "environment": self.environment,
            "ws_ping_interval": self.ws_ping_interval,
            "ws_ping_grace": self.ws_ping_grace,
            "ws_ping_timeout": self.ws_ping_timeout,
            "cors_origins": self.cors_origins,
        }
