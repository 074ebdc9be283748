import logging

from opentelemetry import trace

from stacksignal.core.config import Settings, get_settings
from stacksignal.core.telemetry import TraceContextFilter, setup_telemetry, shutdown_telemetry


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("SS_BATCH_DELAY_SECONDS", "0.25")
    monkeypatch.setenv("SS_DEDUPE_SIMILARITY_THRESHOLD", "0.85")
    monkeypatch.setenv("SS_WORKER_ENABLED", "true")
    get_settings.cache_clear()
    try:
        settings = get_settings()
    finally:
        get_settings.cache_clear()

    assert settings.batch_delay_seconds == 0.25
    assert settings.dedupe_similarity_threshold == 0.85
    assert settings.worker_enabled is True
    assert settings.queue_max_size == 1000
    assert settings.openai_model == "gpt-5-mini"


def test_otlp_headers_skip_malformed_items() -> None:
    assert Settings().otlp_headers == {}
    settings = Settings(otel_exporter_otlp_headers="api-key=abc, x-team = growth ,broken,=empty")
    assert settings.otlp_headers == {"api-key": "abc", "x-team": "growth"}


def test_setup_telemetry_disabled_returns_inert_runtime() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False))
    assert runtime.enabled is False
    assert runtime.provider is None
    shutdown_telemetry(runtime)


def test_trace_context_filter_stamps_span_ids() -> None:
    record = logging.LogRecord("stacksignal", logging.INFO, __file__, 1, "hello", None, None)
    assert TraceContextFilter().filter(record) is True
    assert record.trace_id == "-"
    assert record.span_id == "-"

    context = trace.SpanContext(trace_id=0xABC, span_id=0x12, is_remote=False)
    with trace.use_span(trace.NonRecordingSpan(context)):
        TraceContextFilter().filter(record)
    assert record.trace_id == format(0xABC, "032x")
    assert record.span_id == format(0x12, "016x")
