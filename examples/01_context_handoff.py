#!/usr/bin/env python3
"""01_context_handoff.py: carry a conversation from one assistant to another.

Demonstrates the handoff lifecycle against an in-process server:
  1. Open a SQLite store in a temporary directory
  2. Record a few context entries as if they came from one assistant
  3. Search the stored context
  4. Ask for a smart summary aimed at a different assistant
  5. Print the digest

Usage:
    python examples/01_context_handoff.py
"""

from __future__ import annotations

import asyncio
import json
import tempfile

from context_relay import ContextMcpServer, SqliteContextStore


async def rpc(server: ContextMcpServer, method: str, params: dict, req_id: int) -> dict:
    line = json.dumps({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params})
    return json.loads(await server.handle_message(line))


async def call_tool(server: ContextMcpServer, name: str, arguments: dict, req_id: int) -> dict:
    resp = await rpc(server, "tools/call", {"name": name, "arguments": arguments}, req_id)
    if "error" in resp:
        raise RuntimeError(resp["error"]["message"])
    return resp["result"]


async def main() -> None:
    print("=== context-relay handoff demo ===")
    print()

    with tempfile.TemporaryDirectory() as data_dir:
        store = SqliteContextStore(data_dir)
        session = store.initialize()
        server = ContextMcpServer(store)
        print(f"[OK] Session {session.id} ready in {data_dir}")

        # --------------------------------------------------------------
        # 2. Entries captured while chatting with the first assistant.
        # --------------------------------------------------------------
        entries = [
            ("summary", "We mapped out the onboarding flow for new users. " * 120),
            ("decision", "Use PostgreSQL for persistence and Redis as a cache."),
            ("preference", "Answer with short code samples, no long prose."),
            ("code", "def onboard(user):\n    send_welcome(user)\n    create_workspace(user)"),
            ("note", "TODO: confirm the email provider before launch."),
        ]
        for req_id, (entry_type, content) in enumerate(entries, start=1):
            result = await call_tool(
                server,
                "add_context",
                {"content": content, "entry_type": entry_type, "source_llm": "claude"},
                req_id,
            )
            print(f"  + {entry_type:<10} {result['token_count']:>5} tokens")
        print()

        # --------------------------------------------------------------
        # 3. Search what was stored.
        # --------------------------------------------------------------
        found = await call_tool(server, "search_context", {"query": "redis"}, 100)
        print(f"Search 'redis': {found['count']} hit(s)")
        print()

        # --------------------------------------------------------------
        # 4. Hand the conversation over to another assistant.
        # --------------------------------------------------------------
        summary = await call_tool(
            server,
            "get_smart_summary",
            {"target_llm": "gemini", "source_llm": "claude", "max_tokens": 400},
            101,
        )
        print(summary["message"])
        print("-" * 60)
        print(summary["content"])
        print("-" * 60)

        store.close()


if __name__ == "__main__":
    asyncio.run(main())
