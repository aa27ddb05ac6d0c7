#!/usr/bin/env python3
"""
OpenTelemetry wiring for the drainer.

A run produces one ``drainer.run`` span with a child per category, and below those
one span per feed fetch and per webhook post. aiohttp client calls and log records
are instrumented too, so trace ids show up on log records.

Spans are only exported when APPLICATIONINSIGHTS_CONNECTION_STRING (or
AZURE_MONITOR_CONNECTION_STRING) is set and the ``azure-monitor`` extra is
installed. DISABLE_TELEMETRY=true turns everything off. OTEL_SERVICE_NAME and
OTEL_ENVIRONMENT set the resource attributes.
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import threading
from contextlib import contextmanager
from typing import Callable, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

try:
    # Optional extra: rss-drainer[azure-monitor]
    from azure.monitor.opentelemetry.exporter import (
        AzureMonitorLogExporter,
        AzureMonitorTraceExporter,
    )  # type: ignore
    _AZURE_IMPORT_ERROR: Optional[str] = None
except ImportError as _imp_err:
    AzureMonitorTraceExporter = None  # type: ignore
    AzureMonitorLogExporter = None  # type: ignore
    _AZURE_IMPORT_ERROR = repr(_imp_err)

DEFAULT_SERVICE_NAME = "rss-drainer"

_init_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Optional[str]:
    return (os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING")
            or os.environ.get("AZURE_MONITOR_CONNECTION_STRING"))


def _build_resource(service_name: Optional[str]) -> Resource:
    attrs = {"service.name": service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)}
    if os.environ.get("OTEL_ENVIRONMENT"):
        attrs["deployment.environment"] = os.environ["OTEL_ENVIRONMENT"]
    return Resource.create(attrs)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install a tracer provider and instrumentation. Idempotent; no-op when disabled."""
    global _provider
    if telemetry_disabled() or _provider is not None:
        return
    with _init_lock:
        if _provider is not None:
            return

        resource = _build_resource(service_name)
        current = trace.get_tracer_provider()
        # An SDK provider may already be installed by auto-instrumentation
        provider = current if isinstance(current, TracerProvider) else TracerProvider(resource=resource)

        conn = _connection_string()
        exporting = bool(conn) and AzureMonitorTraceExporter is not None
        if exporting:
            try:
                provider.add_span_processor(BatchSpanProcessor(AzureMonitorTraceExporter.from_connection_string(conn)))
                _logger.info("Telemetry: exporting spans to Azure Monitor (service=%s)",
                             resource.attributes.get("service.name"))
            except Exception as e:
                exporting = False
                _logger.warning("Telemetry: Azure Monitor exporter not enabled: %s", e)
        elif conn:
            _logger.warning("Telemetry: connection string set but 'azure-monitor-opentelemetry-exporter' "
                            "is not installed (%s)", _AZURE_IMPORT_ERROR)

        if provider is not current:
            trace.set_tracer_provider(provider)
        _provider = provider

        for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor()):
            try:
                instrumentor.instrument()
            except Exception as e:
                _logger.debug("Telemetry: %s skipped: %s", type(instrumentor).__name__, e)

        if exporting:
            _attach_log_exporter(resource, conn)

        # Short-lived process: flush batched spans on exit
        atexit.register(_shutdown)


def _attach_log_exporter(resource: Resource, conn: str) -> None:
    """Forward stdlib log records to Azure Monitor."""
    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor

        logger_provider = LoggerProvider(resource=resource)
        logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(AzureMonitorLogExporter.from_connection_string(conn))
        )
        set_logger_provider(logger_provider)

        root = logging.getLogger()
        if not any(isinstance(h, LoggingHandler) for h in root.handlers):
            root.addHandler(LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider))
    except Exception as e:
        _logger.warning("Telemetry: log export not enabled: %s", e)


def _shutdown() -> None:
    if _provider is not None:
        try:
            _provider.shutdown()
        except Exception as e:
            _logger.debug("Telemetry shutdown failed: %s", e)


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Run the decorated function (sync or async) inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes; failures there are ignored. Exceptions from the function are
    recorded on the span and re-raised.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        @contextmanager
        def _span(args, kwargs):
            with tracer.start_as_current_span(name) as span:
                attrs = dict(static_attrs or {})
                if attr_from_args is not None:
                    try:
                        attrs.update(attr_from_args(*args, **kwargs) or {})
                    except Exception as e:
                        _logger.debug("Span attributes for %s unavailable: %s", name, e)
                for key, value in attrs.items():
                    span.set_attribute(key, value)
                try:
                    yield span
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR))
                    raise

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with _span(args, kwargs):
                    return await func(*args, **kwargs)
            return _async_wrapper

        @functools.wraps(func)
        def _wrapper(*args, **kwargs):
            with _span(args, kwargs):
                return func(*args, **kwargs)
        return _wrapper

    return _decorator
