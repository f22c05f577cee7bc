"""Tracing and log correlation for queue tasks.

Every claimed task runs inside :func:`task_span`; log lines emitted while it is
open carry the task kind and id next to the trace id, so one grep finds every
line written on behalf of a subject.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from reconciler.core.config import Settings
from reconciler.schemas.tasks import QueueTask

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s task=%(task_kind)s:%(task_id)s trace_id=%(trace_id)s %(message)s"
NO_TASK = "-"

_current_task: ContextVar[QueueTask | None] = ContextVar("reconciler_current_task", default=None)
_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()

tracer = trace.get_tracer("reconciler.worker")


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


def current_task() -> QueueTask | None:
    return _current_task.get()


@contextmanager
def task_span(task: QueueTask) -> Iterator[Span]:
    """Open the per-task span and bind ``task`` to log records for its duration."""
    token = _current_task.set(task)
    try:
        with tracer.start_as_current_span(
            "worker.process_task",
            attributes={
                "task.id": task.id,
                "task.kind": task.kind,
                "task.subject_id": task.subject_id,
                "task.attempt": task.attempt,
                "task.priority": task.priority,
            },
        ) as span:
            yield span
    finally:
        _current_task.reset(token)


def record_task_outcome(span: Span, status: str, outcome: str, error: BaseException | None = None) -> None:
    span.set_attribute("task.status", status)
    span.set_attribute("task.outcome", outcome)
    if error is not None:
        span.record_exception(error)
    if status != "done":
        span.set_status(Status(StatusCode.ERROR, outcome))


def configure_worker_logging(level: int = logging.INFO) -> None:
    install_log_correlation()
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)
    if settings.otel_log_correlation:
        install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create(
            {SERVICE_NAME: settings.otel_service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            headers=parse_header_list(settings.otel_exporter_otlp_headers) or None,
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        logging.getLogger(__name__).info("no OTLP endpoint configured; task spans stay in-process")
    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def parse_header_list(raw: str | None) -> dict[str, str]:
    """Parse ``k1=v1,k2=v2`` into a dict, skipping malformed items."""
    if not raw:
        return {}
    headers: dict[str, str] = {}
    for item in raw.split(","):
        key, sep, value = item.partition("=")
        key = key.strip()
        if sep and key:
            headers[key] = value.strip()
    return headers


def install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        task = _current_task.get()
        record.task_id = task.id if task is not None else NO_TASK
        record.task_kind = task.kind if task is not None else NO_TASK
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else NO_TASK
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
