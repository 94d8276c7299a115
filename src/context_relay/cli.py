"""Command line entry point: ``context-relay serve`` / ``context-relay migrate``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from . import __version__
from .config import RelayConfig
from .http_server import HttpTransport
from .mcp_server import ContextMcpServer
from .storage import VALID_BACKENDS, StorageError, StoreFactory, migrate_json_to_sqlite
from .telemetry import TelemetryConfig, configure_tracing

logger = logging.getLogger(__name__)


def configure_logging(level: int) -> None:
    """Log to stderr; stdout belongs to the stdio transport."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="context-relay",
        description="Shared context store for switching between chat assistants.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the JSON-RPC server")
    serve.add_argument("--transport", choices=("stdio", "http"), default="http")
    serve.add_argument("--storage", help="Override CONTEXT_RELAY_STORAGE (json | sqlite)")
    serve.add_argument("--data-dir", type=Path, help="Override CONTEXT_RELAY_DATA_DIR")

    migrate = sub.add_parser("migrate", help="Copy flat-file context into SQLite")
    migrate.add_argument("data_dir", nargs="?", type=Path, help="Data directory to migrate")
    return parser


def _serve(config: RelayConfig, transport: str) -> int:
    configure_tracing(TelemetryConfig(exporter=config.telemetry))
    store = StoreFactory.create(config.storage, config.data_dir)
    try:
        store.initialize()
    except StorageError:
        logger.exception("Storage failed to initialize (%s at %s)", config.storage, config.data_dir)
        return 1

    server = ContextMcpServer(store)
    try:
        if transport == "stdio":
            asyncio.run(server.run_stdio())
        else:
            asyncio.run(HttpTransport(server, config.host, config.port).serve_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        store.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = RelayConfig.from_env()
        if getattr(args, "storage", None):
            storage = args.storage.strip().lower()
            if storage not in VALID_BACKENDS:
                msg = f"Unknown storage backend '{args.storage}'"
                raise ValueError(msg)
            config.storage = storage
    except ValueError as exc:
        print(f"context-relay: {exc}", file=sys.stderr)
        return 2

    configure_logging(config.logging_level)

    if args.command == "migrate":
        data_dir = args.data_dir or config.data_dir
        try:
            count = migrate_json_to_sqlite(data_dir)
        except StorageError:
            logger.exception("Migration failed")
            return 1
        print(f"Migrated {count} context entries in {data_dir}")
        return 0

    if args.data_dir is not None:
        config.data_dir = args.data_dir
    return _serve(config, args.transport)


def run() -> None:
    """Console-script wrapper."""
    sys.exit(main())


if __name__ == "__main__":
    run()
