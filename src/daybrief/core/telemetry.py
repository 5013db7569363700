"""OpenTelemetry initialization and span helpers for the automation engine."""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "daybrief"

# True once the global TracerProvider has been installed, so repeated
# init_telemetry() calls do not trigger provider-override warnings.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "daybrief") -> trace.Tracer:
    """Initialize OpenTelemetry tracing for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call. Otherwise the global no-op
    provider stays in place and every span is silent.

    Args:
        service_name: Service name attached to the tracing resource.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(_TRACER_NAME)

    if _tracer_provider_installed:
        logger.debug("TracerProvider already initialized; reusing for service=%s", service_name)
        return trace.get_tracer(_TRACER_NAME)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(_TRACER_NAME)


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


class action_span:
    """Create a span for one automation action (sweep, change check, summary).

    The span is named ``daybrief.<action>`` and carries a ``daybrief.user_id``
    attribute when a user is given. Exceptions are recorded on the span and
    re-raised.
    """

    def __init__(self, action: str, *, user_id: str | None = None) -> None:
        self._action = action
        self._user_id = user_id
        self._span_name = f"daybrief.{action}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        self._span = get_tracer().start_span(self._span_name)
        if self._user_id is not None:
            self._span.set_attribute("daybrief.user_id", self._user_id)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)
