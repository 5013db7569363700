"""OpenTelemetry metrics instruments for change detection and dispatch.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``). When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global
no-op MeterProvider is used and all recordings are silent.

Instruments
-----------
  daybrief.changes.detected_total     Counter  (label: change_type)
      Changes classified by the detector.

  daybrief.dispatch.sent_total        Counter  (label: kind)
      Messages delivered to a recipient.

  daybrief.dispatch.failed_total      Counter  (label: kind)
      Sends that failed or timed out.

  daybrief.fetch.failed_total         Counter
      Remote calendar fetches that returned a failure signal.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "daybrief"


def init_metrics(service_name: str = "daybrief") -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


class DaybriefMetrics:
    """Thin facade over the daybrief instruments.

    Instruments are created once per instance; recording methods never raise.
    """

    def __init__(self, meter: metrics.Meter | None = None) -> None:
        meter = meter or get_meter()
        self._changes_detected = meter.create_counter(
            name="daybrief.changes.detected_total",
            description="Calendar changes classified by the detector",
            unit="changes",
        )
        self._dispatch_sent = meter.create_counter(
            name="daybrief.dispatch.sent_total",
            description="Notifications delivered to a recipient",
            unit="messages",
        )
        self._dispatch_failed = meter.create_counter(
            name="daybrief.dispatch.failed_total",
            description="Notification sends that failed or timed out",
            unit="messages",
        )
        self._fetch_failed = meter.create_counter(
            name="daybrief.fetch.failed_total",
            description="Remote calendar fetches that failed",
            unit="fetches",
        )

    def record_change(self, change_type: str) -> None:
        self._changes_detected.add(1, {"change_type": change_type})

    def record_sent(self, kind: str, count: int = 1) -> None:
        if count:
            self._dispatch_sent.add(count, {"kind": kind})

    def record_failed(self, kind: str, count: int = 1) -> None:
        if count:
            self._dispatch_failed.add(count, {"kind": kind})

    def record_fetch_failure(self) -> None:
        self._fetch_failed.add(1)
