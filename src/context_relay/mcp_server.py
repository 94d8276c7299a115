"""Context MCP server: exposes context storage and compaction via JSON-RPC 2.0.

``handle`` is the transport-independent entry point; ``run_stdio`` serves
line-delimited JSON-RPC over stdin/stdout and ``http_server`` serves HTTP.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import sys
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs

from pydantic import ValidationError

from . import __version__
from .compaction import Compactor
from .models import ContextEntry, ContextUpdate, EntryType, NewContextEntry
from .protocol import (
    DEFAULT_RECENT_LIMIT,
    JSONRPC_VERSION,
    MCP_PROTOCOL_VERSION,
    RESOURCES,
    TOOLS,
    URI_ENTRY_PREFIX,
    URI_LIST,
    URI_RECENT,
    URI_SUMMARY,
    RpcError,
    RpcErrorCode,
    error_response,
    result_response,
)
from .storage import ContextStore
from .telemetry import trace_rpc_request, trace_tool_call
from .tokens import estimate_tokens, format_token_count

logger = logging.getLogger(__name__)

SERVER_NAME = "context-relay"
PREVIEW_CHARS = 100

Params = dict[str, Any]

# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _invalid(field: str, message: str) -> RpcError:
    return RpcError(RpcErrorCode.INVALID_PARAMS, message, {"field": field})


def _require_str(args: Params, field: str) -> str:
    value = args.get(field)
    if value is None or value == "":
        raise _invalid(field, f"Missing required argument: {field}")
    if not isinstance(value, str):
        raise _invalid(field, f"Argument '{field}' must be a string")
    return value


def _optional_str(args: Params, field: str) -> str | None:
    value = args.get(field)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise _invalid(field, f"Argument '{field}' must be a string")
    return value


def _optional_dict(args: Params, field: str) -> dict[str, Any] | None:
    value = args.get(field)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise _invalid(field, f"Argument '{field}' must be an object")
    return value


def _optional_entry_type(args: Params, field: str) -> EntryType | None:
    value = _optional_str(args, field)
    if value is None:
        return None
    try:
        return EntryType(value)
    except ValueError:
        valid = ", ".join(t.value for t in EntryType)
        raise _invalid(field, f"Argument '{field}' must be one of: {valid}") from None


def _positive_int(value: Any, field: str) -> int:
    if isinstance(value, float) and not math.isfinite(value):
        raise _invalid(field, f"Argument '{field}' must be an integer")
    if isinstance(value, bool) or not isinstance(value, int | float) or int(value) != value:
        raise _invalid(field, f"Argument '{field}' must be an integer")
    if value < 1:
        raise _invalid(field, f"Argument '{field}' must be positive")
    return int(value)


def _entry_preview(entry: ContextEntry) -> dict[str, Any]:
    preview: dict[str, Any] = {
        "id": entry.id,
        "entry_type": entry.entry_type.value,
        "token_count": entry.token_count,
        "created_at": entry.created_at,
        "preview": entry.content[:PREVIEW_CHARS],
    }
    if entry.source_llm:
        preview["source_llm"] = entry.source_llm
    return preview


def _search_hit(entry: ContextEntry) -> dict[str, Any]:
    hit: dict[str, Any] = {
        "id": entry.id,
        "content": entry.content,
        "entry_type": entry.entry_type.value,
        "created_at": entry.created_at,
        "token_count": entry.token_count,
    }
    if entry.source_llm:
        hit["source_llm"] = entry.source_llm
    return hit


def _resource(uri: str, mime_type: str, text: str) -> dict[str, Any]:
    return {"contents": [{"uri": uri, "mimeType": mime_type, "text": text}]}


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


class ContextMcpServer:
    """Routes JSON-RPC requests to storage and compaction.

    Holds no state between requests beyond its collaborators; every failure
    is turned into a JSON-RPC error response and never escapes ``handle``.
    """

    def __init__(self, store: ContextStore, compactor: Compactor | None = None) -> None:
        self._store = store
        self._compactor = compactor if compactor is not None else Compactor()
        self._methods: dict[str, Callable[[Params], Any]] = {
            "initialize": self._handle_initialize,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "resources/list": self._handle_resources_list,
            "resources/read": self._handle_resources_read,
        }
        self._tools: dict[str, Callable[[Params], dict[str, Any]]] = {
            "add_context": self._tool_add_context,
            "update_context": self._tool_update_context,
            "search_context": self._tool_search_context,
            "get_session_info": self._tool_get_session_info,
            "get_smart_summary": self._tool_get_smart_summary,
        }

    @property
    def store(self) -> ContextStore:
        return self._store

    # ----- entry points ----------------------------------------------------

    def handle(self, request: Any) -> dict[str, Any] | None:
        """Handle one decoded JSON-RPC request.

        Returns the response envelope, or None for notifications.
        """
        req_id = request.get("id") if isinstance(request, dict) else None
        method = request.get("method") if isinstance(request, dict) else None
        with trace_rpc_request(method if isinstance(method, str) else "<invalid>"):
            try:
                return self._dispatch(request)
            except RpcError as exc:
                return error_response(req_id, exc.code, exc.message, exc.data)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Request %s (id=%r) failed", method, req_id)
                return error_response(
                    req_id,
                    RpcErrorCode.INTERNAL_ERROR,
                    str(exc) or type(exc).__name__,
                    {"type": type(exc).__name__},
                )

    async def handle_message(self, line: str) -> str | None:
        """Parse a JSON-RPC request line, route it, return the JSON response line."""
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            return json.dumps(error_response(None, RpcErrorCode.PARSE_ERROR, "Parse error"))
        response = self.handle(msg)
        return json.dumps(response) if response is not None else None

    async def handle_line(self, raw: bytes) -> str | None:
        """Decode one raw transport line and handle it; bytes that are not UTF-8 are a parse error."""
        try:
            text = raw.decode("utf-8").strip()
        except UnicodeDecodeError:
            logger.warning("Dropping request line that is not valid UTF-8")
            return json.dumps(error_response(None, RpcErrorCode.PARSE_ERROR, "Parse error"))
        if not text:
            return None
        return await self.handle_message(text)

    async def run_stdio(self) -> None:
        """Read stdin line-by-line, handle, write to stdout."""
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)

        logger.info("Serving JSON-RPC on stdio")
        while True:
            line = await reader.readline()
            if not line:
                break
            response = await self.handle_line(line)
            if response is not None:
                sys.stdout.write(response + "\n")
                sys.stdout.flush()

    # ----- envelope --------------------------------------------------------

    def _dispatch(self, request: Any) -> dict[str, Any] | None:
        if not isinstance(request, dict):
            raise RpcError(RpcErrorCode.INVALID_REQUEST, "Request must be a JSON object")
        if request.get("jsonrpc") != JSONRPC_VERSION:
            raise RpcError(RpcErrorCode.INVALID_REQUEST, "Invalid JSON-RPC version")

        method = request.get("method")
        if not isinstance(method, str) or not method:
            raise RpcError(RpcErrorCode.INVALID_REQUEST, "Request method is required")

        if "id" not in request and method.startswith("notifications/"):
            logger.debug("Notification %s received", method)
            return None

        params = request.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise RpcError(RpcErrorCode.INVALID_PARAMS, "params must be an object")

        handler = self._methods.get(method)
        if handler is None:
            raise RpcError(
                RpcErrorCode.METHOD_NOT_FOUND,
                f"Method not found: {method}",
                {"method": method},
            )
        return result_response(request.get("id"), handler(params))

    # ----- methods ---------------------------------------------------------

    def _handle_initialize(self, params: Params) -> dict[str, Any]:  # noqa: ARG002
        session = self._store.get_session()
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {}, "resources": {}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "sessionId": session.id,
        }

    def _handle_tools_list(self, params: Params) -> dict[str, Any]:  # noqa: ARG002
        return {"tools": TOOLS}

    def _handle_tools_call(self, params: Params) -> dict[str, Any]:
        name = params.get("name")
        if not name or not isinstance(name, str):
            raise _invalid("name", "Tool name is required")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise _invalid("arguments", "Tool arguments must be an object")

        tool = self._tools.get(name)
        if tool is None:
            raise RpcError(RpcErrorCode.METHOD_NOT_FOUND, f"Unknown tool: {name}", {"tool": name})
        with trace_tool_call(name):
            return tool(arguments)

    def _handle_resources_list(self, params: Params) -> dict[str, Any]:  # noqa: ARG002
        return {"resources": RESOURCES}

    def _handle_resources_read(self, params: Params) -> dict[str, Any]:
        uri = params.get("uri")
        if not uri or not isinstance(uri, str):
            raise _invalid("uri", "Resource URI is required")

        if uri == URI_LIST:
            return self._resource_list()
        if uri.startswith(URI_ENTRY_PREFIX):
            return self._resource_entry(uri[len(URI_ENTRY_PREFIX):])
        if uri == URI_SUMMARY:
            return self._resource_summary()
        if uri == URI_RECENT or uri.startswith(URI_RECENT + "?"):
            return self._resource_recent(uri)
        raise RpcError(
            RpcErrorCode.METHOD_NOT_FOUND, f"Unknown resource URI: {uri}", {"uri": uri}
        )

    # ----- tools -----------------------------------------------------------

    def _tool_add_context(self, args: Params) -> dict[str, Any]:
        content = _require_str(args, "content")
        entry_type = _optional_entry_type(args, "entry_type") or EntryType.SUMMARY
        source_llm = _optional_str(args, "source_llm")
        metadata = _optional_dict(args, "metadata")

        session = self._store.get_session()
        entry = self._store.add_context(
            NewContextEntry(
                session_id=session.id,
                content=content,
                entry_type=entry_type,
                source_llm=source_llm,
                metadata=metadata,
            )
        )
        logger.info("Stored %s entry %s (%d tokens)", entry.entry_type, entry.id, entry.token_count)
        return {"id": entry.id, "created_at": entry.created_at, "token_count": entry.token_count}

    def _tool_update_context(self, args: Params) -> dict[str, Any]:
        entry_id = _require_str(args, "id")
        content = _require_str(args, "content")
        try:
            update = ContextUpdate(
                content=content,
                entry_type=_optional_entry_type(args, "entry_type"),
                metadata=_optional_dict(args, "metadata"),
            )
        except ValidationError as exc:
            raise RpcError(RpcErrorCode.INVALID_PARAMS, str(exc)) from exc

        updated = self._store.update_context(entry_id, update)
        if updated is None:
            raise RpcError(
                RpcErrorCode.INVALID_PARAMS,
                f"Context entry not found: {entry_id}",
                {"id": entry_id},
            )
        return {
            "success": True,
            "id": updated.id,
            "token_count": updated.token_count,
            "updated_at": updated.updated_at,
        }

    def _tool_search_context(self, args: Params) -> dict[str, Any]:
        query = _require_str(args, "query")
        limit = _positive_int(args.get("limit", 10), "limit")

        session = self._store.get_session()
        results = self._store.search_contexts(query, limit, session_id=session.id)
        return {"results": [_search_hit(e) for e in results], "count": len(results)}

    def _tool_get_session_info(self, args: Params) -> dict[str, Any]:  # noqa: ARG002
        session = self._store.get_session()
        entries = self._store.get_all_contexts(session_id=session.id)
        return {
            "session_id": session.id,
            "created_at": session.created_at,
            "last_accessed": session.last_accessed,
            "entry_count": len(entries),
            "total_tokens": self._store.get_total_tokens(session_id=session.id),
        }

    def _tool_get_smart_summary(self, args: Params) -> dict[str, Any]:
        target_llm = _require_str(args, "target_llm")
        source_llm = _optional_str(args, "source_llm")
        max_tokens = _positive_int(
            args.get("max_tokens", self._compactor.default_budget), "max_tokens"
        )

        session = self._store.get_session()
        entries = self._store.get_all_contexts(session_id=session.id)

        if not entries:
            return {
                "content": "",
                "originalTokens": 0,
                "summaryTokens": 0,
                "compressionRatio": 1.0,
                "summarized": False,
                "message": "No context available",
            }

        if not self._compactor.should_compact(entries, source_llm, target_llm, max_tokens):
            full = "\n\n".join(e.content for e in entries)
            tokens = estimate_tokens(full)
            return {
                "content": full,
                "originalTokens": tokens,
                "summaryTokens": tokens,
                "compressionRatio": 1.0,
                "summarized": False,
                "message": "Context size acceptable, no summarization needed",
            }

        result = self._compactor.compact(entries, max_tokens)
        payload = result.to_dict()
        if result.summarized:
            payload["message"] = (
                f"Summarized: {format_token_count(result.original_tokens)} -> "
                f"{format_token_count(result.summary_tokens)} "
                f"({round(result.compression_ratio * 100)}% of original)"
            )
        else:
            payload["message"] = "No summarization needed"
        logger.info(
            "Smart summary for %s: %d -> %d tokens",
            target_llm,
            result.original_tokens,
            result.summary_tokens,
        )
        return payload

    # ----- resources -------------------------------------------------------

    def _resource_list(self) -> dict[str, Any]:
        session = self._store.get_session()
        entries = self._store.get_all_contexts(session_id=session.id)
        text = json.dumps([_entry_preview(e) for e in entries], indent=2)
        return _resource(URI_LIST, "application/json", text)

    def _resource_entry(self, entry_id: str) -> dict[str, Any]:
        if not entry_id:
            raise _invalid("id", "Missing required argument: id")
        entry = self._store.get_context_by_id(entry_id)
        if entry is None:
            raise RpcError(
                RpcErrorCode.INVALID_PARAMS,
                f"Context entry not found: {entry_id}",
                {"id": entry_id},
            )
        return _resource(
            URI_ENTRY_PREFIX + entry_id, "application/json", json.dumps(entry.to_dict(), indent=2)
        )

    def _resource_summary(self) -> dict[str, Any]:
        session = self._store.get_session()
        entries = self._store.get_all_contexts(session_id=session.id)
        lines = ["# Session Context Summary", ""]

        if not entries:
            lines.append("No context entries yet.")
        else:
            total = sum(e.token_count for e in entries)
            lines += [f"Total entries: {len(entries)} ({format_token_count(total)})", ""]
            for entry_type in EntryType:
                group = [e for e in entries if e.entry_type == entry_type]
                if not group:
                    continue
                lines += [f"## {entry_type.value.capitalize()} ({len(group)})", ""]
                for entry in group:
                    lines.append(f"- {entry.content}")
                    if entry.source_llm:
                        lines.append(f"  *Source: {entry.source_llm}*")
                    lines.append("")

        return _resource(URI_SUMMARY, "text/plain", "\n".join(lines).rstrip() + "\n")

    def _resource_recent(self, uri: str) -> dict[str, Any]:
        limit = DEFAULT_RECENT_LIMIT
        _, _, query = uri.partition("?")
        if query:
            values = parse_qs(query).get("limit")
            if not values:
                raise _invalid("limit", f"Unsupported query in resource URI: {uri}")
            try:
                limit = _positive_int(int(values[0]), "limit")
            except ValueError:
                raise _invalid("limit", "Argument 'limit' must be an integer") from None

        session = self._store.get_session()
        recent = self._store.get_recent_contexts(limit, session_id=session.id)
        return _resource(uri, "application/json", json.dumps([e.to_dict() for e in recent], indent=2))
