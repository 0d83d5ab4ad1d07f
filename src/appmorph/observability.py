from __future__ import annotations

from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
import json
import logging
import sys
from threading import Lock
from typing import Iterator

# Correlation fields stamped on every log line emitted while a task runs.
LOG_CONTEXT_FIELDS = ('task_id', 'user_id', 'group_id')

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f'appmorph_{name}', default=None) for name in LOG_CONTEXT_FIELDS
}


@contextmanager
def task_log_context(
    *,
    task_id: str | None = None,
    user_id: str | None = None,
    group_id: str | None = None,
) -> Iterator[dict[str, str]]:
    """Bind task correlation fields for the duration of the block.

    Pool threads are reused across tasks, so the previous values are restored
    on exit instead of leaking into the next task's log lines.
    """
    values = {'task_id': task_id, 'user_id': user_id, 'group_id': group_id}
    tokens = [(_context_vars[name], _context_vars[name].set(value)) for name, value in values.items()]
    try:
        yield current_log_context()
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_log_context() -> dict[str, str]:
    context: dict[str, str] = {}
    for name, var in _context_vars.items():
        value = var.get()
        if value:
            context[name] = value
    return context


def _current_trace_id() -> str | None:
    try:
        from opentelemetry import trace
    except Exception:
        return None
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None
    return format(span_context.trace_id, '032x')


class TaskLogFormatter(logging.Formatter):
    """One JSON object per line: task correlation fields plus the active trace id."""

    def __init__(self, service_name: str = 'appmorph'):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'service': self.service_name,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        context = current_log_context()
        for name in LOG_CONTEXT_FIELDS:
            value = getattr(record, name, None) or context.get(name)
            if value:
                payload[name] = value
        trace_id = _current_trace_id()
        if trace_id:
            payload['trace_id'] = trace_id
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    """Install the JSON log handler once and, given an endpoint, an OTLP span exporter."""
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('appmorph')
            if not any(isinstance(handler.formatter, TaskLogFormatter) for handler in root.handlers):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(TaskLogFormatter(service_name))
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return
    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logging.getLogger('appmorph.observability').warning(
            'OpenTelemetry import failed; tracing disabled', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint


def get_tracer(name: str):
    try:
        from opentelemetry import trace
        return trace.get_tracer(name)
    except Exception:
        logging.getLogger('appmorph.observability').debug('OpenTelemetry tracer unavailable', exc_info=True)
        return None


@contextmanager
def span(tracer, name: str, attributes: dict) -> Iterator[object]:
    """Start a span on *tracer*, dropping ``None`` attributes; no-op without a tracer."""
    if tracer is None:
        with nullcontext() as ctx:
            yield ctx
        return
    with tracer.start_as_current_span(name) as current:
        for key, value in attributes.items():
            if value is None:
                continue
            current.set_attribute(key, value)
        yield current
