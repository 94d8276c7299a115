"""JSON-RPC 2.0 envelopes, error codes and the MCP tool/resource catalogues."""

from __future__ import annotations

from enum import IntEnum
from typing import Any

from .compaction import DEFAULT_BUDGET_TOKENS
from .models import KNOWN_ASSISTANTS, EntryType

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"


class RpcErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class RpcError(Exception):
    """A request-level failure that maps onto a JSON-RPC error object."""

    def __init__(self, code: RpcErrorCode, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"RPC error {int(code)}: {message}")


def error_response(
    req_id: Any,
    code: RpcErrorCode,
    message: str,
    data: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "error": error, "id": req_id}


def result_response(req_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": req_id}


# ---------------------------------------------------------------------------
# Resource URIs
# ---------------------------------------------------------------------------

URI_LIST = "context://session/list"
URI_ENTRY_PREFIX = "context://session/entry/"
URI_SUMMARY = "context://session/summary"
URI_RECENT = "context://session/recent"

DEFAULT_RECENT_LIMIT = 10

RESOURCES: list[dict[str, Any]] = [
    {
        "uri": URI_LIST,
        "name": "List all contexts",
        "description": "Get a list of all context entries in the current session",
        "mimeType": "application/json",
    },
    {
        "uri": URI_ENTRY_PREFIX + "{id}",
        "name": "Get context entry",
        "description": "Get a specific context entry by ID",
        "mimeType": "application/json",
    },
    {
        "uri": URI_SUMMARY,
        "name": "Session summary",
        "description": "Get a summary of all context in the current session",
        "mimeType": "text/plain",
    },
    {
        "uri": URI_RECENT,
        "name": "Recent contexts",
        "description": (
            f"Get recent context entries (default: last {DEFAULT_RECENT_LIMIT}; "
            "append ?limit=N for the last N)"
        ),
        "mimeType": "application/json",
    },
]

# ---------------------------------------------------------------------------
# Tool schemas (MCP tools/list response)
# ---------------------------------------------------------------------------

_ENTRY_TYPES = [t.value for t in EntryType]

TOOLS: list[dict[str, Any]] = [
    {
        "name": "add_context",
        "description": "Add a new context entry (conversation summary, note, decision, etc.)",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The context content to store"},
                "entry_type": {
                    "type": "string",
                    "enum": _ENTRY_TYPES,
                    "description": "Type of context entry",
                    "default": EntryType.SUMMARY.value,
                },
                "source_llm": {
                    "type": "string",
                    "enum": list(KNOWN_ASSISTANTS),
                    "description": "Which assistant created this context",
                },
                "metadata": {"type": "object", "description": "Additional metadata (optional)"},
            },
            "required": ["content"],
        },
    },
    {
        "name": "update_context",
        "description": "Update an existing context entry",
        "inputSchema": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "ID of the context entry to update"},
                "content": {"type": "string", "description": "New content for the entry"},
                "entry_type": {
                    "type": "string",
                    "enum": _ENTRY_TYPES,
                    "description": "New type for the entry (optional)",
                },
                "metadata": {"type": "object", "description": "Replacement metadata (optional)"},
            },
            "required": ["id", "content"],
        },
    },
    {
        "name": "search_context",
        "description": "Search through stored context entries",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query string"},
                "limit": {
                    "type": "integer",
                    "description": "Maximum number of results",
                    "default": 10,
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "get_session_info",
        "description": "Get information about the current session",
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "get_smart_summary",
        "description": (
            "Get context compacted to a token budget; compaction happens on an "
            "assistant switch or when stored context is large"
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "source_llm": {
                    "type": "string",
                    "enum": list(KNOWN_ASSISTANTS),
                    "description": "The assistant used in the previous session",
                },
                "target_llm": {
                    "type": "string",
                    "enum": list(KNOWN_ASSISTANTS),
                    "description": "The assistant being used now",
                },
                "max_tokens": {
                    "type": "integer",
                    "description": f"Maximum tokens for the summary (default: {DEFAULT_BUDGET_TOKENS})",
                    "default": DEFAULT_BUDGET_TOKENS,
                },
            },
            "required": ["target_llm"],
        },
    },
]
