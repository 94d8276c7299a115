"""HTTP transport for the context MCP server."""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from . import __version__
from .mcp_server import SERVER_NAME, ContextMcpServer
from .protocol import RpcErrorCode, error_response
from .storage import StoreFactory

logger = logging.getLogger(__name__)

RPC_PATH = "/mcp/v1/rpc"
SSE_PATH = "/mcp/v1/sse"
HEALTH_PATH = "/health"

KEEPALIVE_SECONDS = 30.0


class HttpTransport:
    """
    HTTP binding for :class:`ContextMcpServer`.

    Provides endpoints for:
    - JSON-RPC requests (POST /mcp/v1/rpc)
    - Keep-alive event stream (GET /mcp/v1/sse)
    - Health check (GET /health)
    - Server info (GET /)
    """

    def __init__(
        self,
        server: ContextMcpServer,
        host: str = "localhost",
        port: int = 3000,
        keepalive_seconds: float = KEEPALIVE_SECONDS,
    ):
        """
        Initialize the transport.

        Args:
            server: Dispatcher handling decoded JSON-RPC requests.
            host: Host to bind to.
            port: Port to listen on.
            keepalive_seconds: Interval between SSE keep-alive comments.
        """
        self.server = server
        self.host = host
        self.port = port
        self.keepalive_seconds = keepalive_seconds
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    @property
    def storage_kind(self) -> str:
        return StoreFactory.describe(self.server.store)

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        app.router.add_post(RPC_PATH, self._handle_rpc)
        app.router.add_get(SSE_PATH, self._handle_sse)
        app.router.add_get(HEALTH_PATH, self._handle_health)
        app.router.add_get("/", self._handle_root)
        return app

    async def _handle_rpc(self, request: web.Request) -> web.Response:
        """Decode the body and hand it to the dispatcher in a worker thread."""
        try:
            body = await request.json()
        except ValueError:
            # JSONDecodeError and UnicodeDecodeError both land here
            return web.json_response(
                error_response(None, RpcErrorCode.PARSE_ERROR, "Parse error"),
                status=400,
            )

        response = await asyncio.to_thread(self.server.handle, body)
        if response is None:
            return web.Response(status=204)
        return web.json_response(response)

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        """Hold an event stream open, writing keep-alive comments until the client leaves."""
        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await response.prepare(request)
        await response.write(b'event: connected\ndata: {"status":"connected"}\n\n')
        try:
            while True:
                await asyncio.sleep(self.keepalive_seconds)
                await response.write(b": keepalive\n\n")
        except ConnectionResetError:
            logger.debug("SSE client disconnected")
        return response

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check assembled from storage reads."""
        store = self.server.store
        try:
            session = await asyncio.to_thread(store.get_session)
            entries = await asyncio.to_thread(store.get_all_contexts, session.id)
            tokens = await asyncio.to_thread(store.get_total_tokens, session.id)
        except Exception as e:  # noqa: BLE001
            logger.exception("Health check failed")
            return web.json_response({"status": "error", "error": str(e)}, status=500)

        return web.json_response(
            {
                "status": "ok",
                "session_id": session.id,
                "contexts": len(entries),
                "tokens": tokens,
                "storage": self.storage_kind,
            }
        )

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "name": SERVER_NAME,
                "version": __version__,
                "storage": self.storage_kind,
                "endpoints": [RPC_PATH, SSE_PATH, HEALTH_PATH],
            }
        )

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info("Context relay listening on http://%s:%d (%s storage)",
                    self.host, self.port, self.storage_kind)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        logger.info("Context relay HTTP transport stopped")

    async def serve_forever(self) -> None:
        """Start, then block until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()
