"""
Eval engine metrics on the OpenTelemetry Meter API.

Instruments are created lazily on first use, so they bind to whichever
MeterProvider is installed at that point (the no-op one unless
``configure_metrics`` ran).
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation

logger = logging.getLogger(__name__)

_METER_NAME = "promptgate.eval"


def _get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


def tag_value(value: Any) -> str:
    if value is None:
        return "unknown"
    return str(getattr(value, "value", value))


class EvalMetrics:
    """Queue depth gauge plus run and case execution timers."""

    _run_execution_seconds: Optional[metrics.Histogram] = None
    _case_execution_seconds: Optional[metrics.Histogram] = None
    _queue_depth: Optional[metrics.ObservableGauge] = None
    _queue_depth_source: Optional[Callable[[], int]] = None

    @classmethod
    def run_execution_seconds(cls) -> metrics.Histogram:
        if cls._run_execution_seconds is None:
            cls._run_execution_seconds = _get_meter().create_histogram(
                name="eval_run_execution_seconds",
                description="Wall time spent processing one eval run",
                unit="s",
            )
        return cls._run_execution_seconds

    @classmethod
    def case_execution_seconds(cls) -> metrics.Histogram:
        if cls._case_execution_seconds is None:
            cls._case_execution_seconds = _get_meter().create_histogram(
                name="eval_case_execution_seconds",
                description="Wall time spent processing one eval case",
                unit="s",
            )
        return cls._case_execution_seconds

    @classmethod
    def register_queue_depth(cls, source: Callable[[], int]) -> metrics.ObservableGauge:
        """Expose ``source()`` (the number of QUEUED runs) as the eval_queue_depth gauge."""
        cls._queue_depth_source = source
        if cls._queue_depth is None:
            cls._queue_depth = _get_meter().create_observable_gauge(
                name="eval_queue_depth",
                callbacks=[cls._observe_queue_depth],
                description="Eval runs waiting in QUEUED status",
                unit="1",
            )
        return cls._queue_depth

    @classmethod
    def _observe_queue_depth(cls, options: CallbackOptions) -> Iterable[Observation]:
        source = cls._queue_depth_source
        if source is None:
            return []
        try:
            depth = int(source())
        except Exception as exc:
            # Runs on the exporter thread; a failed read only drops this sample.
            logger.warning("Eval queue depth read failed: %s", exc)
            return []
        return [Observation(depth)]

    @classmethod
    def record_run_execution(cls, elapsed_seconds: float, mode: Any, trigger_type: Any) -> None:
        cls.run_execution_seconds().record(
            max(0.0, elapsed_seconds),
            {"mode": tag_value(mode), "trigger_type": tag_value(trigger_type)},
        )

    @classmethod
    def record_case_execution(cls, elapsed_seconds: float, status: Any) -> None:
        cls.case_execution_seconds().record(max(0.0, elapsed_seconds), {"status": tag_value(status)})

    @classmethod
    def reset(cls) -> None:
        """Drop cached instruments so the next use binds to the current provider."""
        cls._run_execution_seconds = None
        cls._case_execution_seconds = None
        cls._queue_depth = None
        cls._queue_depth_source = None


def configure_metrics(settings) -> Optional[Any]:
    """Install an SDK MeterProvider when metrics are enabled; returns it, or None."""
    if not settings.otel_metrics_enabled:
        return None

    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource

    endpoint = (settings.otel_exporter_otlp_endpoint or "").strip()
    if endpoint:
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter

        exporter = OTLPMetricExporter(endpoint=endpoint)
    else:
        exporter = ConsoleMetricExporter()

    readers: List[Any] = [
        PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=max(1.0, float(settings.otel_metrics_export_interval_seconds)) * 1000,
        )
    ]
    provider = MeterProvider(resource=Resource.create({SERVICE_NAME: "promptgate"}), metric_readers=readers)
    metrics.set_meter_provider(provider)
    EvalMetrics.reset()
    logger.info("Metrics export enabled exporter=%s", "otlp" if endpoint else "console")
    return provider
