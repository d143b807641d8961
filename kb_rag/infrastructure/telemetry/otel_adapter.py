"""OpenTelemetry metrics and traces for the RAG pipeline.

The SDK and exporters are imported lazily. When they cannot be loaded the
adapter keeps working as a no-op, so telemetry never fails a request.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from importlib import import_module
from typing import Any

from kb_rag.application.ports.telemetry_port import TelemetryPort

logger = logging.getLogger(__name__)

_OTLP_GRPC = "opentelemetry.exporter.otlp.proto.grpc"


@dataclass(frozen=True)
class OtelConfig:
    service_name: str = "kb-rag"
    exporter_endpoint: str | None = None  # OTLP/gRPC collector, e.g. "http://localhost:4317"
    deployment: str = "production"
    console_export: bool = False


class OpenTelemetryAdapter(TelemetryPort):
    """TelemetryPort backed by the OpenTelemetry SDK.

    Counters (`incr`): rag.queries.total, rag.errors.total.
    Histograms (`observe`): rag.query.latency_ms, rag.ingest.chunks.
    Spans (`span`): rag.retrieve, rag.build_context, rag.generate, rag.ingest.
    """

    def __init__(self, cfg: OtelConfig) -> None:
        self._cfg = cfg
        self._instruments: dict[tuple[str, str], Any] = {}
        self._meter = self._build_meter()
        self._tracer = self._build_tracer()

    def _resource(self) -> Any:
        resources = import_module("opentelemetry.sdk.resources")
        return resources.Resource.create(
            {"service.name": self._cfg.service_name, "deployment.environment": self._cfg.deployment}
        )

    def _build_meter(self) -> Any | None:
        try:
            api = import_module("opentelemetry.metrics")
            sdk = import_module("opentelemetry.sdk.metrics")
            export = import_module("opentelemetry.sdk.metrics.export")

            exporters: list[Any] = []
            if self._cfg.exporter_endpoint:
                otlp = import_module(f"{_OTLP_GRPC}.metric_exporter")
                exporters.append(otlp.OTLPMetricExporter(endpoint=self._cfg.exporter_endpoint))
            if self._cfg.console_export:
                exporters.append(export.ConsoleMetricExporter())

            api.set_meter_provider(
                sdk.MeterProvider(
                    resource=self._resource(),
                    metric_readers=[export.PeriodicExportingMetricReader(e) for e in exporters],
                )
            )
            return api.get_meter("kb_rag")
        except Exception as ex:  # noqa: BLE001
            logger.debug("opentelemetry metrics disabled: %s", ex)
            return None

    def _build_tracer(self) -> Any | None:
        try:
            api = import_module("opentelemetry.trace")
            sdk = import_module("opentelemetry.sdk.trace")
            export = import_module("opentelemetry.sdk.trace.export")

            provider = sdk.TracerProvider(resource=self._resource())
            if self._cfg.exporter_endpoint:
                otlp = import_module(f"{_OTLP_GRPC}.trace_exporter")
                provider.add_span_processor(
                    export.BatchSpanProcessor(
                        otlp.OTLPSpanExporter(endpoint=self._cfg.exporter_endpoint)
                    )
                )
            if self._cfg.console_export:
                provider.add_span_processor(
                    export.SimpleSpanProcessor(export.ConsoleSpanExporter())
                )
            api.set_tracer_provider(provider)
            return api.get_tracer("kb_rag")
        except Exception as ex:  # noqa: BLE001
            logger.debug("opentelemetry tracing disabled: %s", ex)
            return None

    def _instrument(self, kind: str, name: str) -> Any:
        key = (kind, name)
        if key not in self._instruments:
            assert self._meter is not None
            factory = (
                self._meter.create_counter if kind == "counter" else self._meter.create_histogram
            )
            self._instruments[key] = factory(name=name, description=f"kb-rag {kind} {name}")
        return self._instruments[key]

    def incr(self, name: str, tags: dict[str, Any] | None = None) -> None:
        if self._meter is None:
            return
        try:
            self._instrument("counter", name).add(1, attributes=tags or {})
        except Exception as ex:  # noqa: BLE001
            logger.debug("dropping counter %s: %s", name, ex)

    def observe(self, name: str, value: float, tags: dict[str, Any] | None = None) -> None:
        if self._meter is None:
            return
        try:
            self._instrument("histogram", name).record(value, attributes=tags or {})
        except Exception as ex:  # noqa: BLE001
            logger.debug("dropping histogram value %s: %s", name, ex)

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
        if self._tracer is None:
            yield None
            return
        with self._tracer.start_as_current_span(name, attributes=attributes or {}) as current:
            yield current
