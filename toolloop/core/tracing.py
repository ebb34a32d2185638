from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, Mapping
from urllib.parse import urlparse, urlunparse

from opentelemetry import trace as otel_trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

LOGGER = logging.getLogger(__name__)

TRACER_NAME = "toolloop"
TRACES_PATH = "/v1/traces"

_SCALAR_TYPES = (bool, int, float, str)
_configured_service: str | None = None


def configure_tracing(service_name: str = "toolloop", endpoint: str | None = None) -> bool:
    """Export spans over OTLP/HTTP; until this runs spans are no-ops.

    Only the first successful call installs a provider.
    """
    global _configured_service
    if _configured_service is not None:
        return True
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    traces_url = traces_endpoint(endpoint)
    try:
        exporter = OTLPSpanExporter(endpoint=traces_url) if traces_url else OTLPSpanExporter()
        provider.add_span_processor(BatchSpanProcessor(exporter))
        otel_trace.set_tracer_provider(provider)
    except Exception:  # noqa: BLE001
        LOGGER.exception("tracing_configure_failed service=%s", service_name)
        return False
    _configured_service = service_name
    LOGGER.info("tracing_configured service=%s endpoint=%s", service_name, traces_url or "default")
    return True


def configure_tracing_from_env() -> bool:
    if os.getenv("TOOL_LOOP_TRACING_ENABLED", "false").lower() != "true":
        return False
    return configure_tracing(
        os.getenv("OTEL_SERVICE_NAME", "toolloop"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    )


@contextmanager
def start_span(name: str, *, attributes: Mapping[str, Any] | None = None) -> Iterator[Any]:
    tracer = otel_trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        name, record_exception=False, set_status_on_exception=False
    ) as span:
        set_span_attributes(span, attributes)
        try:
            yield span
        except Exception as exc:  # noqa: BLE001
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, f"{exc.__class__.__name__}: {exc}"))
            raise


def set_span_attributes(span: Any, attributes: Mapping[str, Any] | None) -> None:
    for key, value in (attributes or {}).items():
        if not key or not isinstance(key, str):
            continue
        converted = _attribute_value(value)
        if converted is not None:
            span.set_attribute(key, converted)


def _attribute_value(value: Any) -> Any:
    if value is None or isinstance(value, _SCALAR_TYPES):
        return value
    if isinstance(value, (list, tuple)):
        # OTel only accepts homogeneous scalar sequences; drop nested values.
        items = [item for item in value if isinstance(item, _SCALAR_TYPES)]
        return items or None
    return str(value)


def traces_endpoint(endpoint: str | None) -> str | None:
    """Append ``/v1/traces`` to a bare collector URL."""
    candidate = (endpoint or "").strip()
    if not candidate:
        return None
    parsed = urlparse(candidate)
    if not (parsed.scheme and parsed.netloc) or parsed.path.endswith(TRACES_PATH):
        return candidate
    return urlunparse(parsed._replace(path=parsed.path.rstrip("/") + TRACES_PATH))
