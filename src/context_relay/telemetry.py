"""OpenTelemetry tracing integration for context-relay.

Spans cover RPC requests, tool calls and compaction runs.  The default
tracer is a no-op; ``configure_tracing`` swaps in a console or OTLP exporter.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import NoOpTracer, Span, Tracer

VALID_EXPORTERS = frozenset({"none", "stdout", "otlp"})

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class TelemetryConfig:
    """Configuration for the tracing subsystem."""

    service_name: str = "context-relay"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"


# ---------------------------------------------------------------------------
# RelayTracer
# ---------------------------------------------------------------------------


class RelayTracer:
    """Wraps OpenTelemetry ``TracerProvider`` setup and span helpers."""

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    def init(self) -> None:
        """Set up the OTel TracerProvider based on config."""
        cfg = self._config

        if not cfg.enabled or cfg.exporter == "none":
            return

        resource = Resource.create({"service.name": cfg.service_name})

        if cfg.exporter == "stdout":
            from opentelemetry.sdk.trace.export import (
                ConsoleSpanExporter,
                SimpleSpanProcessor,
            )

            provider = TracerProvider(resource=resource)
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            self._provider = provider
            self._tracer = provider.get_tracer(cfg.service_name)

        elif cfg.exporter == "otlp":
            try:
                from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                    OTLPSpanExporter,
                )
                from opentelemetry.sdk.trace.export import BatchSpanProcessor
            except ImportError:  # pragma: no cover
                # OTLP exporter is an optional extra; stay on the noop tracer.
                return

            exporter = OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)
            provider = TracerProvider(resource=resource)
            provider.add_span_processor(BatchSpanProcessor(exporter))
            self._provider = provider
            self._tracer = provider.get_tracer(cfg.service_name)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        """Create a span as a context manager.

        Usage::

            with tracer.span("rpc/request", {"rpc.method": "tools/call"}) as s:
                ...
        """
        with self._tracer.start_as_current_span(name) as s:
            if attributes:
                for k, v in attributes.items():
                    s.set_attribute(k, v)
            yield s

    def shutdown(self) -> None:
        """Flush pending spans and shut down the provider.

        Safe to call multiple times.
        """
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None


# ---------------------------------------------------------------------------
# Module-level tracer
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: RelayTracer | None = None


def _get_default_tracer() -> RelayTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = RelayTracer()
    return _DEFAULT_TRACER


def configure_tracing(config: TelemetryConfig) -> RelayTracer:
    """Replace the module-level tracer with one built from *config*."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is not None:
        _DEFAULT_TRACER.shutdown()
    tracer = RelayTracer(config)
    tracer.init()
    _DEFAULT_TRACER = tracer
    return tracer


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_rpc_request(method: str) -> Generator[Span, None, None]:
    """Trace one JSON-RPC request."""
    with _get_default_tracer().span("rpc/request", {"rpc.method": method}) as s:
        yield s


@contextlib.contextmanager
def trace_tool_call(tool_name: str) -> Generator[Span, None, None]:
    """Trace a ``tools/call`` dispatch."""
    with _get_default_tracer().span("mcp/tool", {"mcp.tool": tool_name}) as s:
        yield s


@contextlib.contextmanager
def trace_compaction(entry_count: int, budget: int) -> Generator[Span, None, None]:
    """Trace a compaction run."""
    attrs = {"compaction.entries": entry_count, "compaction.budget": budget}
    with _get_default_tracer().span("compaction/compact", attrs) as s:
        yield s
