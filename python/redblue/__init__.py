"""Red vs Blue counter service: durable counters with real-time fan-out."""

from .broadcast import BroadcastDispatcher
from .config import Settings
from .errors import (
    ConfigError,
    CounterError,
    InvalidAmountError,
    InvalidColorError,
    NotFoundError,
    ProtocolError,
    StorageError,
    TransportError,
    ValidationError,
)
from .migrations import MigrationManager
from .registry import Connection, ConnectionRegistry, ConnectionState
from .service import CounterService, ServiceResult
from .store import CounterStore
from .version import get_version

__all__ = [
    # Core
    "CounterStore",
    "CounterService",
    "ServiceResult",
    "ConnectionRegistry",
    "Connection",
    "ConnectionState",
    "BroadcastDispatcher",
    "MigrationManager",
    # Config
    "Settings",
    # Errors
    "CounterError",
    "ValidationError",
    "InvalidColorError",
    "InvalidAmountError",
    "NotFoundError",
    "StorageError",
    "ProtocolError",
    "TransportError",
    "ConfigError",
    # Version
    "get_version",
]
