"""Tests for the context MCP server: JSON-RPC 2.0 tools and resources."""

from __future__ import annotations

import json

import pytest

from context_relay import __version__
from context_relay.compaction import Compactor
from context_relay.mcp_server import ContextMcpServer
from context_relay.storage import ContextStore


@pytest.fixture
def server(store: ContextStore) -> ContextMcpServer:
    return ContextMcpServer(store)


def _req(method: str, params: dict | None = None, req_id: int = 1) -> str:
    msg: dict = {"jsonrpc": "2.0", "id": req_id, "method": method}
    if params is not None:
        msg["params"] = params
    return json.dumps(msg)


async def _call(server: ContextMcpServer, method: str, params: dict | None = None) -> dict:
    return json.loads(await server.handle_message(_req(method, params)))


async def _tool(server: ContextMcpServer, name: str, arguments: dict | None = None) -> dict:
    params: dict = {"name": name}
    if arguments is not None:
        params["arguments"] = arguments
    return await _call(server, "tools/call", params)


async def _read(server: ContextMcpServer, uri: str) -> dict:
    return await _call(server, "resources/read", {"uri": uri})


# ---------------------------------------------------------------------------
# Handshake and catalogues
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initialize(server: ContextMcpServer):
    """Handshake returns capabilities, server info and the session id."""
    resp = await _call(server, "initialize")
    assert resp["jsonrpc"] == "2.0"
    assert resp["id"] == 1
    result = resp["result"]
    assert result["protocolVersion"] == "2024-11-05"
    assert result["serverInfo"] == {"name": "context-relay", "version": __version__}
    assert set(result["capabilities"]) == {"tools", "resources"}
    assert result["sessionId"] == server.store.get_session().id


@pytest.mark.asyncio
async def test_tools_list(server: ContextMcpServer):
    """Lists all five tools with object input schemas."""
    resp = await _call(server, "tools/list")
    tools = resp["result"]["tools"]
    assert {t["name"] for t in tools} == {
        "add_context",
        "update_context",
        "search_context",
        "get_session_info",
        "get_smart_summary",
    }
    for tool in tools:
        assert tool["inputSchema"]["type"] == "object"
        assert "description" in tool
    by_name = {t["name"]: t for t in tools}
    assert by_name["add_context"]["inputSchema"]["required"] == ["content"]
    assert by_name["update_context"]["inputSchema"]["required"] == ["id", "content"]
    assert by_name["get_smart_summary"]["inputSchema"]["required"] == ["target_llm"]


@pytest.mark.asyncio
async def test_resources_list(server: ContextMcpServer):
    resp = await _call(server, "resources/list")
    uris = {r["uri"] for r in resp["result"]["resources"]}
    assert uris == {
        "context://session/list",
        "context://session/entry/{id}",
        "context://session/summary",
        "context://session/recent",
    }


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_add_context(server: ContextMcpServer):
    resp = await _tool(
        server,
        "add_context",
        {
            "content": "We chose FastAPI for the backend",
            "entry_type": "decision",
            "source_llm": "claude",
            "metadata": {"url": "https://chat.example/1"},
        },
    )
    result = resp["result"]
    assert result["token_count"] == 8
    assert isinstance(result["created_at"], int)

    stored = server.store.get_context_by_id(result["id"])
    assert stored.entry_type == "decision"
    assert stored.source_llm == "claude"
    assert stored.metadata == {"url": "https://chat.example/1"}


@pytest.mark.asyncio
async def test_add_context_defaults_to_summary(server: ContextMcpServer):
    resp = await _tool(server, "add_context", {"content": "plain text"})
    assert server.store.get_context_by_id(resp["result"]["id"]).entry_type == "summary"


@pytest.mark.asyncio
async def test_add_context_missing_content(server: ContextMcpServer):
    resp = await _tool(server, "add_context", {})
    assert resp["error"]["code"] == -32602
    assert resp["error"]["message"] == "Missing required argument: content"
    assert resp["error"]["data"] == {"field": "content"}
    assert server.store.get_all_contexts() == []


@pytest.mark.asyncio
async def test_add_context_rejects_unknown_type(server: ContextMcpServer):
    resp = await _tool(server, "add_context", {"content": "x", "entry_type": "gossip"})
    assert resp["error"]["code"] == -32602
    assert resp["error"]["data"] == {"field": "entry_type"}


@pytest.mark.asyncio
async def test_update_context(server: ContextMcpServer):
    added = (await _tool(server, "add_context", {"content": "draft"}))["result"]
    resp = await _tool(
        server,
        "update_context",
        {"id": added["id"], "content": "z" * 40, "entry_type": "note"},
    )
    result = resp["result"]
    assert result["success"] is True
    assert result["id"] == added["id"]
    assert result["token_count"] == 10
    assert result["updated_at"] >= added["created_at"]
    assert server.store.get_context_by_id(added["id"]).entry_type == "note"


@pytest.mark.asyncio
async def test_update_unknown_entry(server: ContextMcpServer):
    resp = await _tool(server, "update_context", {"id": "nope", "content": "x"})
    assert resp["error"]["code"] == -32602
    assert "not found" in resp["error"]["message"]


@pytest.mark.asyncio
async def test_update_missing_id(server: ContextMcpServer):
    resp = await _tool(server, "update_context", {"content": "x"})
    assert resp["error"]["data"] == {"field": "id"}


@pytest.mark.asyncio
async def test_search_context(server: ContextMcpServer):
    for i in range(4):
        await _tool(server, "add_context", {"content": f"Kafka topic layout {i}"})
    await _tool(server, "add_context", {"content": "unrelated"})

    resp = await _tool(server, "search_context", {"query": "kafka", "limit": 2})
    result = resp["result"]
    assert result["count"] == 2
    assert len(result["results"]) == 2
    for hit in result["results"]:
        assert "Kafka" in hit["content"]
        assert set(hit) >= {"id", "content", "entry_type", "created_at", "token_count"}


@pytest.mark.asyncio
async def test_search_rejects_bad_limit(server: ContextMcpServer):
    resp = await _tool(server, "search_context", {"query": "x", "limit": 0})
    assert resp["error"]["code"] == -32602
    resp = await _tool(server, "search_context", {"query": "x", "limit": "ten"})
    assert resp["error"]["data"] == {"field": "limit"}


@pytest.mark.asyncio
async def test_get_session_info(server: ContextMcpServer):
    await _tool(server, "add_context", {"content": "a" * 8})
    await _tool(server, "add_context", {"content": "b" * 12})
    info = (await _tool(server, "get_session_info"))["result"]
    assert info["session_id"] == server.store.get_session().id
    assert info["entry_count"] == 2
    assert info["total_tokens"] == 5
    assert info["last_accessed"] >= info["created_at"]


@pytest.mark.asyncio
async def test_smart_summary_without_entries(server: ContextMcpServer):
    result = (await _tool(server, "get_smart_summary", {"target_llm": "gemini"}))["result"]
    assert result["content"] == ""
    assert result["summarized"] is False
    assert result["message"] == "No context available"


@pytest.mark.asyncio
async def test_smart_summary_small_same_assistant(server: ContextMcpServer):
    await _tool(server, "add_context", {"content": "first", "source_llm": "claude"})
    await _tool(server, "add_context", {"content": "second", "source_llm": "claude"})
    result = (
        await _tool(
            server, "get_smart_summary", {"target_llm": "claude", "source_llm": "claude"}
        )
    )["result"]
    assert result["summarized"] is False
    assert result["content"] == "second\n\nfirst"
    assert result["compressionRatio"] == 1.0
    assert result["message"] == "Context size acceptable, no summarization needed"


@pytest.mark.asyncio
async def test_smart_summary_handoff_compacts(server: ContextMcpServer):
    await _tool(
        server,
        "add_context",
        {
            "content": "We talked through the onboarding flow for new users. " * 230,
            "source_llm": "claude",
        },
    )
    await _tool(
        server,
        "add_context",
        {
            "content": "Use PostgreSQL for persistence and keep Redis as a cache. " * 69,
            "entry_type": "decision",
        },
    )
    await _tool(
        server,
        "add_context",
        {"content": "Remember to rotate the API keys. " * 60, "entry_type": "note"},
    )

    result = (
        await _tool(
            server,
            "get_smart_summary",
            {"target_llm": "gemini", "source_llm": "claude", "max_tokens": 2500},
        )
    )["result"]
    assert result["summarized"] is True
    assert result["summaryTokens"] <= 2500
    assert result["originalTokens"] > result["summaryTokens"]
    assert result["message"].startswith("Summarized: ")
    assert "% of original" in result["message"]
    content = result["content"]
    assert content.index("# Key Decisions") < content.index("# Notes & TODOs")


@pytest.mark.asyncio
async def test_smart_summary_handoff_that_fits(server: ContextMcpServer):
    await _tool(server, "add_context", {"content": "tiny", "source_llm": "claude"})
    result = (
        await _tool(
            server, "get_smart_summary", {"target_llm": "gemini", "source_llm": "claude"}
        )
    )["result"]
    assert result["summarized"] is False
    assert result["content"] == "# Previous Conversations\n\n[claude] tiny"


@pytest.mark.asyncio
async def test_smart_summary_requires_target(server: ContextMcpServer):
    resp = await _tool(server, "get_smart_summary", {})
    assert resp["error"]["data"] == {"field": "target_llm"}


@pytest.mark.asyncio
async def test_custom_compactor_threshold(store: ContextStore):
    server = ContextMcpServer(store, Compactor(threshold_tokens=1, default_budget=3))
    await _tool(server, "add_context", {"content": "Adopt the hexagonal architecture"})
    result = (await _tool(server, "get_smart_summary", {"target_llm": "claude"}))["result"]
    assert result["summarized"] is True
    assert result["summaryTokens"] <= 3


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resource_list_previews(server: ContextMcpServer):
    await _tool(server, "add_context", {"content": "p" * 250, "source_llm": "chatgpt"})
    resp = await _read(server, "context://session/list")
    contents = resp["result"]["contents"][0]
    assert contents["uri"] == "context://session/list"
    assert contents["mimeType"] == "application/json"
    previews = json.loads(contents["text"])
    assert len(previews) == 1
    assert previews[0]["preview"] == "p" * 100
    assert previews[0]["source_llm"] == "chatgpt"


@pytest.mark.asyncio
async def test_resource_entry(server: ContextMcpServer):
    added = (await _tool(server, "add_context", {"content": "full text"}))["result"]
    resp = await _read(server, f"context://session/entry/{added['id']}")
    entry = json.loads(resp["result"]["contents"][0]["text"])
    assert entry["id"] == added["id"]
    assert entry["content"] == "full text"
    assert "updated_at" not in entry


@pytest.mark.asyncio
async def test_resource_entry_not_found(server: ContextMcpServer):
    resp = await _read(server, "context://session/entry/missing")
    assert resp["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_resource_summary(server: ContextMcpServer):
    await _tool(server, "add_context", {"content": "Use uv", "entry_type": "decision"})
    await _tool(
        server, "add_context", {"content": "Chat recap", "source_llm": "gemini"}
    )
    resp = await _read(server, "context://session/summary")
    contents = resp["result"]["contents"][0]
    assert contents["mimeType"] == "text/plain"
    text = contents["text"]
    assert text.startswith("# Session Context Summary")
    assert "Total entries: 2" in text
    assert text.index("## Summary (1)") < text.index("## Decision (1)")
    assert "*Source: gemini*" in text


@pytest.mark.asyncio
async def test_resource_summary_empty(server: ContextMcpServer):
    resp = await _read(server, "context://session/summary")
    assert "No context entries yet." in resp["result"]["contents"][0]["text"]


@pytest.mark.asyncio
async def test_resource_recent(server: ContextMcpServer):
    for i in range(12):
        await _tool(server, "add_context", {"content": f"entry {i}"})
    default = json.loads((await _read(server, "context://session/recent"))["result"]["contents"][0]["text"])
    assert len(default) == 10
    assert default[0]["content"] == "entry 11"

    limited = json.loads(
        (await _read(server, "context://session/recent?limit=3"))["result"]["contents"][0]["text"]
    )
    assert [e["content"] for e in limited] == ["entry 11", "entry 10", "entry 9"]


@pytest.mark.asyncio
async def test_resource_recent_bad_limit(server: ContextMcpServer):
    resp = await _read(server, "context://session/recent?limit=abc")
    assert resp["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_unknown_resource(server: ContextMcpServer):
    resp = await _read(server, "context://elsewhere")
    assert resp["error"]["code"] == -32601


# ---------------------------------------------------------------------------
# Envelope errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_method(server: ContextMcpServer):
    resp = await _call(server, "nonexistent/method")
    assert resp["error"]["code"] == -32601
    assert resp["id"] == 1


@pytest.mark.asyncio
async def test_unknown_tool(server: ContextMcpServer):
    resp = await _tool(server, "delete_everything", {})
    assert resp["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_parse_error(server: ContextMcpServer):
    resp = json.loads(await server.handle_message("{not json"))
    assert resp["error"]["code"] == -32700
    assert resp["id"] is None


@pytest.mark.asyncio
async def test_wrong_version_is_invalid_request(server: ContextMcpServer):
    resp = json.loads(
        await server.handle_message(json.dumps({"jsonrpc": "1.0", "id": 7, "method": "tools/list"}))
    )
    assert resp["error"]["code"] == -32600
    assert resp["id"] == 7


@pytest.mark.asyncio
async def test_non_object_request(server: ContextMcpServer):
    resp = json.loads(await server.handle_message("[1, 2, 3]"))
    assert resp["error"]["code"] == -32600


@pytest.mark.asyncio
async def test_params_must_be_object(server: ContextMcpServer):
    resp = json.loads(
        await server.handle_message(
            json.dumps({"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": [1]})
        )
    )
    assert resp["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_notification_gets_no_response(server: ContextMcpServer):
    line = json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert await server.handle_message(line) is None


class _BrokenStore(ContextStore):
    """Every storage call fails, as if the disk went away."""

    def _fail(self, *args, **kwargs):
        raise OSError("disk unavailable")

    initialize = _fail
    get_session = _fail
    save_session = _fail
    add_context = _fail
    update_context = _fail
    delete_context = _fail
    get_all_contexts = _fail
    get_context_by_id = _fail
    search_contexts = _fail
    get_recent_contexts = _fail
    get_total_tokens = _fail
    clear_all_contexts = _fail

    def close(self) -> None:
        pass


@pytest.mark.asyncio
async def test_storage_failure_is_internal_error():
    server = ContextMcpServer(_BrokenStore())
    resp = await _tool(server, "get_session_info")
    assert resp["error"]["code"] == -32603
    assert resp["error"]["message"] == "disk unavailable"
    assert resp["error"]["data"] == {"type": "OSError"}

    # the server keeps answering after a failure
    resp = await _call(server, "tools/list")
    assert len(resp["result"]["tools"]) == 5


# ---------------------------------------------------------------------------
# Raw transport lines and numeric edge cases
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_undecodable_line_is_parse_error_and_server_continues(server: ContextMcpServer):
    resp = json.loads(await server.handle_line(b"\xff\xfe\n"))
    assert resp["error"]["code"] == -32700
    assert resp["id"] is None

    follow_up = json.loads(
        await server.handle_line(b'{"jsonrpc":"2.0","id":7,"method":"tools/list"}\n')
    )
    assert follow_up["id"] == 7
    assert len(follow_up["result"]["tools"]) == 5


@pytest.mark.asyncio
async def test_blank_line_gets_no_response(server: ContextMcpServer):
    assert await server.handle_line(b"   \n") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("literal", ["Infinity", "-Infinity", "NaN"])
async def test_non_finite_numbers_are_invalid_params(server: ContextMcpServer, literal: str):
    await _tool(server, "add_context", {"content": "something to summarize"})
    line = (
        '{"jsonrpc":"2.0","id":3,"method":"tools/call","params":{"name":"get_smart_summary",'
        f'"arguments":{{"target_llm":"gemini","max_tokens":{literal}}}}}}}'
    )
    resp = json.loads(await server.handle_message(line))
    assert resp["error"]["code"] == -32602
    assert resp["error"]["data"] == {"field": "max_tokens"}

    line = (
        '{"jsonrpc":"2.0","id":4,"method":"tools/call","params":{"name":"search_context",'
        f'"arguments":{{"query":"something","limit":{literal}}}}}}}'
    )
    resp = json.loads(await server.handle_message(line))
    assert resp["error"]["data"] == {"field": "limit"}


@pytest.mark.asyncio
async def test_huge_search_limit_behaves_the_same_on_every_backend(server: ContextMcpServer):
    await _tool(server, "add_context", {"content": "needle in a haystack"})
    resp = await _tool(server, "search_context", {"query": "needle", "limit": 2**63})
    assert resp["result"]["count"] == 1

    recent = await _read(server, f"context://session/recent?limit={2**64}")
    assert len(json.loads(recent["result"]["contents"][0]["text"])) == 1
