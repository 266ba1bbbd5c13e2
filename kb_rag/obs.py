"""Observability utilities: Langfuse traces and OpenTelemetry spans.

- Trace wraps a Langfuse trace and becomes a no-op when LANGFUSE_HOST,
  LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY are not all configured.
- span() opens an OpenTelemetry span. A console exporter is installed only when
  no tracer provider has been configured by the host process.

Tracing failures are logged at debug level and never break the traced request.
Configuration is read from kb_rag.config.settings.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from langfuse import Langfuse
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from kb_rag.config import settings

logger = logging.getLogger(__name__)

_langfuse_client: Optional[Langfuse] = None
_otel_inited: bool = False


def _init_langfuse() -> Optional[Langfuse]:
    """Initialize and memoize a Langfuse client if configuration is present.

    Returns:
        Optional[Langfuse]: Client when all three LANGFUSE_* settings are set, else None.
    """
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


def _init_otel() -> None:
    global _otel_inited
    if _otel_inited:
        return
    _otel_inited = True
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        return
    tp = TracerProvider()
    tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tp)


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[None]:
    """Run the block inside an OpenTelemetry span named name.

    Exceptions raised by the block are recorded on the span and propagate.
    """
    _init_otel()
    tracer = trace.get_tracer("kb_rag")
    with tracer.start_as_current_span(name, attributes=attributes or {}):
        yield


class Trace:
    """Langfuse trace for one request; every method is a no-op when disabled."""

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        self.name = name
        self.enabled = False
        self._trace = None
        client = _init_langfuse()
        if client is not None:
            try:
                self._trace = client.trace(name=name, input=input or {})
                self.enabled = True
            except Exception as e:  # tracing must not fail the request
                logger.debug("Langfuse trace %s could not be created: %s", name, e)

    def event(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        if not self.enabled:
            return
        try:
            self._trace.event(name=name, input=data or {})
        except Exception as e:
            logger.debug("Langfuse event %s dropped: %s", name, e)

    def generation(
        self,
        name: str,
        prompt: str,
        output: str,
        model: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a chat generation with its prompt, output and model name."""
        if not self.enabled:
            return
        try:
            self._trace.generation(name=name, input=prompt, output=output, model=model, metadata=metadata or {})
        except Exception as e:
            logger.debug("Langfuse generation %s dropped: %s", name, e)

    def end(self, output: Optional[Dict[str, Any]] = None) -> None:
        if not self.enabled:
            return
        try:
            self._trace.update(output=output or {})
        except Exception as e:
            logger.debug("Langfuse trace %s could not be closed: %s", self.name, e)
