"""Observability utilities: optional Langfuse tracing and OpenTelemetry spans.

- Trace wraps a Langfuse trace for one agent run or API call. It is a no-op
  unless LANGFUSE_HOST, LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY are set.
- span() opens an OpenTelemetry span. A console exporter is installed only when
  OTEL_CONSOLE_EXPORT is set; otherwise spans go to whatever provider the host
  process configured (the API default provider discards them).

Tracing is best-effort: failures talking to Langfuse are logged and never
propagate into retrieval, generation or pipeline code.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from langfuse import Langfuse
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from contentforge.config import settings

logger = logging.getLogger(__name__)

_langfuse_client: Optional[Langfuse] = None
_otel_inited: bool = False


def _init_langfuse() -> Optional[Langfuse]:
    """Initialize and memoize a Langfuse client if configuration is present."""
    global _langfuse_client
    if _langfuse_client is not None:
        return _langfuse_client
    if settings.LANGFUSE_HOST and settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY:
        _langfuse_client = Langfuse(
            host=settings.LANGFUSE_HOST,
            public_key=settings.LANGFUSE_PUBLIC_KEY,
            secret_key=settings.LANGFUSE_SECRET_KEY,
        )
        return _langfuse_client
    return None


def _init_otel() -> None:
    """Install a console-exporting tracer provider once, when enabled."""
    global _otel_inited
    if _otel_inited:
        return
    _otel_inited = True
    if not settings.OTEL_CONSOLE_EXPORT:
        return
    tp = TracerProvider()
    tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tp)


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """Context manager wrapping an OpenTelemetry span.

    Args:
        name: Span name (e.g. "retrieval.search").
        attributes: Primitive attributes to attach; None values are skipped.
    """
    _init_otel()
    tracer = trace.get_tracer("contentforge")
    with tracer.start_as_current_span(name) as otel_span:
        for k, v in (attributes or {}).items():
            if v is not None:
                otel_span.set_attribute(k, v)
        yield otel_span


class Trace:
    """Minimal wrapper for a Langfuse trace with no-op methods if not configured."""

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        """Create a trace that wraps optional Langfuse state.

        Args:
            name: Logical name of the trace (e.g. "agent.scribe").
            input: Initial input payload to attach to the trace.
        """
        self.name = name
        self.enabled = False
        self._trace = None
        client = _init_langfuse()
        if client is not None:
            try:
                self._trace = client.trace(name=name, input=input or {})
                self.enabled = True
            except Exception as e:
                logger.debug("Langfuse trace %s could not be created: %s", name, e)

    def event(self, name: str, data: Optional[Dict[str, Any]] = None):
        """Record a structured event on the trace if Langfuse is enabled."""
        if not self.enabled:
            return
        try:
            self._trace.event(name=name, input=data or {})
        except Exception as e:
            logger.debug("Langfuse event %s dropped: %s", name, e)

    def generation(self, name: str, prompt: str, output: str, model: str, metadata: Optional[Dict[str, Any]] = None):
        """Record a generation with input/output text and optional metadata."""
        if not self.enabled:
            return
        try:
            self._trace.generation(
                name=name,
                input=prompt,
                output=output,
                metadata=metadata or {},
                model=model,
            )
        except Exception as e:
            logger.debug("Langfuse generation %s dropped: %s", name, e)

    def end(self, output: Optional[Dict[str, Any]] = None):
        """Finalize the trace with a final output payload."""
        if not self.enabled:
            return
        try:
            self._trace.update(output=output or {})
        except Exception as e:
            logger.debug("Langfuse trace %s could not be finalized: %s", self.name, e)
