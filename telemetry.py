#!/usr/bin/env python3
"""
OpenTelemetry tracing for the sweeper.

Spans cover feed sweeps, article processing, cron runs, HTTP fetches and
database operations; aiohttp client calls, sqlite3 and log records are
auto-instrumented. Spans are exported to Azure Monitor only when a
connection string is configured and the optional exporter is installed
(``pip install feed-sweeper[azure]``).

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - APPLICATIONINSIGHTS_INSTRUMENTATIONKEY (legacy)
  - OTEL_SERVICE_NAME (default: feed-sweeper)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to turn everything off
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
from asyncio import iscoroutinefunction
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple

from opentelemetry import trace
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

DEFAULT_SERVICE_NAME = "feed-sweeper"

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Tuple[Optional[str], str]:
    """Return (connection string, where it came from)."""
    conn = os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )
    if conn:
        return conn, "connection_string"
    ikey = os.environ.get("APPLICATIONINSIGHTS_INSTRUMENTATIONKEY") or os.environ.get(
        "APPINSIGHTS_INSTRUMENTATIONKEY"
    )
    if ikey:
        return f"InstrumentationKey={ikey}", "instrumentation_key"
    return None, "none"


def _attach_azure_exporter(provider: TracerProvider, conn: str) -> bool:
    try:
        from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter
    except ImportError as e:
        _logger.warning("Telemetry: Azure exporter not installed (%s); spans stay in-process", e)
        return False
    try:
        provider.add_span_processor(BatchSpanProcessor(AzureMonitorTraceExporter.from_connection_string(conn)))
    except ValueError as e:
        _logger.warning("Telemetry: invalid Azure Monitor connection string: %s", e)
        return False
    return True


def _instrument_libraries() -> None:
    # Trace/span ids go into log records as otelTraceID / otelSpanID
    for instrumentor in (AioHttpClientInstrumentor(), SQLite3Instrumentor(), LoggingInstrumentor()):
        if not instrumentor.is_instrumented_by_opentelemetry:
            instrumentor.instrument()


def _shutdown() -> None:
    if _provider is not None:
        _provider.shutdown()


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Set up the tracer provider once per process; a no-op when disabled."""
    global _initialized, _provider
    if telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        attrs: Dict[str, Any] = {"service.name": svc}
        env = os.environ.get("OTEL_ENVIRONMENT")
        if env:
            attrs["deployment.environment"] = env

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        provider = existing if isinstance(existing, TracerProvider) else TracerProvider(resource=Resource.create(attrs))

        conn, source = _connection_string()
        exporting = bool(conn) and _attach_azure_exporter(provider, conn)
        _logger.info("Telemetry initialized (service=%s, exporter=%s, source=%s)",
                     svc, "azure" if exporting else "none", source)

        if provider is not existing:
            trace.set_tracer_provider(provider)
        _provider = provider
        _instrument_libraries()
        # Short-lived CLI runs must flush the batch processor on exit
        atexit.register(_shutdown)
        _initialized = True


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Run the decorated coroutine (or function) inside a span.

    ``attr_from_args`` receives the call's arguments and returns span
    attributes. Exceptions are recorded on the span and re-raised.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        def _set_attrs(span, args, kwargs) -> None:
            attributes = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attributes.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, AttributeError, KeyError) as e:
                    _logger.debug("Span %s: could not derive attributes: %s", name, e)
            for key, value in attributes.items():
                span.set_attribute(key, value)

        def _record(span, error: Exception) -> None:
            span.record_exception(error)
            span.set_status(Status(StatusCode.ERROR, str(error)))

        if iscoroutinefunction(func):
            @wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name, record_exception=False) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record(span, e)
                        raise
            return _async_wrapper

        @wraps(func)
        def _wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name, record_exception=False) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record(span, e)
                    raise
        return _wrapper

    return _decorator
