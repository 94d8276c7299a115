"""context-relay: shared context store for switching between chat assistants."""

from __future__ import annotations

__version__ = "1.0.0"

from .compaction import (
    CompactionResult,
    Compactor,
    extract_main_points,
    truncate,
)
from .config import RelayConfig
from .mcp_server import ContextMcpServer
from .models import (
    KNOWN_ASSISTANTS,
    ContextEntry,
    ContextUpdate,
    EntryType,
    NewContextEntry,
    Session,
)
from .protocol import RpcError, RpcErrorCode
from .storage import (
    ContextStore,
    JsonContextStore,
    SqliteContextStore,
    StorageError,
    StoreFactory,
    migrate_json_to_sqlite,
)
from .telemetry import RelayTracer, TelemetryConfig, configure_tracing
from .tokens import CHARS_PER_TOKEN, estimate_tokens, format_token_count

__all__ = [
    "CHARS_PER_TOKEN",
    "KNOWN_ASSISTANTS",
    "CompactionResult",
    "Compactor",
    "ContextEntry",
    "ContextMcpServer",
    "ContextStore",
    "ContextUpdate",
    "EntryType",
    "JsonContextStore",
    "NewContextEntry",
    "RelayConfig",
    "RelayTracer",
    "RpcError",
    "RpcErrorCode",
    "Session",
    "SqliteContextStore",
    "StorageError",
    "StoreFactory",
    "TelemetryConfig",
    "__version__",
    "configure_tracing",
    "estimate_tokens",
    "extract_main_points",
    "format_token_count",
    "migrate_json_to_sqlite",
    "truncate",
]
