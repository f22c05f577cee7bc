import logging

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from reconciler.core import telemetry
from reconciler.core.config import Settings
from reconciler.core.telemetry import (
    current_task,
    install_log_correlation,
    parse_header_list,
    record_task_outcome,
    setup_worker_telemetry,
    task_span,
)
from reconciler.schemas.tasks import QueueTask


def _record() -> logging.LogRecord:
    return logging.getLogRecordFactory()("reconciler", logging.INFO, __file__, 1, "hello", (), None)


def _task(**overrides) -> QueueTask:
    values = {"id": "task-7", "subject_id": "work-3", "kind": "fetch-facts", "attempt": 2, "priority": 8}
    values.update(overrides)
    return QueueTask(**values)


def test_parse_header_list_skips_malformed_items() -> None:
    assert parse_header_list("api-key=abc, x-team = data ,broken,=empty") == {"api-key": "abc", "x-team": "data"}
    assert parse_header_list(None) == {}


def test_disabled_telemetry_is_a_noop() -> None:
    runtime = setup_worker_telemetry(Settings(otel_enabled=False))
    assert runtime.enabled is False
    assert runtime.provider is None


def test_log_records_outside_a_task_carry_placeholders() -> None:
    install_log_correlation()
    record = _record()
    assert record.task_id == "-"
    assert record.task_kind == "-"
    assert record.trace_id == "-"


def test_log_records_inside_task_span_carry_the_task() -> None:
    install_log_correlation()
    task = _task()
    with task_span(task):
        assert current_task() is task
        record = _record()
    assert record.task_id == "task-7"
    assert record.task_kind == "fetch-facts"
    assert current_task() is None
    assert _record().task_id == "-"


def test_task_span_records_attributes_and_failure_status(monkeypatch) -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(telemetry, "tracer", provider.get_tracer("test"))

    with task_span(_task()) as span:
        record_task_outcome(span, "done", "updated")
    with task_span(_task(id="task-8", kind="resolve-id")) as span:
        record_task_outcome(span, "failed", "error", RuntimeError("boom"))

    done, failed = exporter.get_finished_spans()
    assert done.name == "worker.process_task"
    assert done.attributes["task.id"] == "task-7"
    assert done.attributes["task.subject_id"] == "work-3"
    assert done.attributes["task.attempt"] == 2
    assert done.attributes["task.outcome"] == "updated"
    assert done.status.status_code is StatusCode.UNSET

    assert failed.attributes["task.kind"] == "resolve-id"
    assert failed.attributes["task.status"] == "failed"
    assert failed.status.status_code is StatusCode.ERROR
    assert failed.events[0].name == "exception"
