"""Logging for forkcascade runs, built on logfire.

Log calls become OpenTelemetry spans. Sinks decide where they go:
the console (through logfire itself), a per-run file, an OTLP
collector, or logfire.dev. Every message that concerns a record is
logged with a record_id attribute; file lines show it as a prefix so
one record's history can be grepped out of a long monitor log.
"""

from __future__ import annotations

import contextlib
import os
from abc import abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from opentelemetry.proto.logs.v1 import logs_pb2
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult
from pydantic import Field, PrivateAttr, model_validator

from forkcascade.core.base import BaseConfig

_active: Logger | None = None


class _LoggerProxy:
    """Module-level `logger`; a no-op until setup_logger() has run."""

    def __getattr__(self, name):
        if _active is not None:
            return getattr(_active, name)
        if name == "span":
            return lambda *args, **kwargs: contextlib.nullcontext()
        return lambda *args, **kwargs: None

    def __enter__(self):
        return self if _active is None else _active.__enter__()

    def __exit__(self, *exc):
        return False if _active is None else _active.__exit__(*exc)


logger = _LoggerProxy()


# Our level names on the OpenTelemetry severity scale. spew sits
# below trace and carries raw git/gh output.
SEVERITY = {
    'spew': logs_pb2.SEVERITY_NUMBER_TRACE,
    'trace': logs_pb2.SEVERITY_NUMBER_TRACE3,
    'debug': logs_pb2.SEVERITY_NUMBER_DEBUG,
    'info': logs_pb2.SEVERITY_NUMBER_INFO,
    'warn': logs_pb2.SEVERITY_NUMBER_WARN,
    'error': logs_pb2.SEVERITY_NUMBER_ERROR,
    'fatal': logs_pb2.SEVERITY_NUMBER_FATAL,
}


def severity_name(number: int) -> str:
    best = "unknown"
    for name, value in SEVERITY.items():
        if number >= value:
            best = name
    return best


def span_severity(span: ReadableSpan) -> int:
    return (span.attributes or {}).get('logfire.level_num', SEVERITY['info'])


class MinimumLevelExporter(SpanExporter):
    """Wraps an exporter and drops spans below min_level."""

    def __init__(self, exporter: SpanExporter, min_level: str | None):
        self._exporter = exporter
        self._threshold = SEVERITY.get((min_level or "info").lower(), SEVERITY['info'])

    def export(self, spans: list[ReadableSpan]) -> SpanExportResult:
        kept = [span for span in spans if span_severity(span) >= self._threshold]
        if not kept:
            return SpanExportResult.SUCCESS
        return self._exporter.export(kept)

    def shutdown(self) -> None:
        self._exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self._exporter.force_flush(timeout_millis)


# Span attributes set by logfire/OpenTelemetry rather than by our
# log calls; they are not repeated after the message.
INTERNAL_ATTRIBUTES = frozenset({
    'code.filepath', 'code.lineno', 'code.function',
    'logfire.msg', 'logfire.level_num', 'logfire.span_type',
    'logfire.msg_template', 'logfire.json_schema',
    'record_id',
})
INTERNAL_PREFIXES = ('otel.', 'telemetry.', 'service.', 'process.')


def template_fields(span: ReadableSpan) -> dict[str, Any]:
    """Values a sink's format_template may refer to."""
    attrs = span.attributes or {}
    filepath = attrs.get("code.filepath", "")
    lineno = attrs.get("code.lineno", "")
    record_id = attrs.get("record_id")
    return {
        'timestamp': datetime.fromtimestamp(span.start_time / 1e9, tz=UTC),
        'level': severity_name(span_severity(span)),
        'message': attrs.get("logfire.msg", span.name),
        'record': f"[{record_id}]" if record_id is not None else "",
        'filepath': filepath,
        'lineno': lineno,
        'location': f"{filepath}:{lineno}" if filepath else "",
        'function': attrs.get("code.function", ""),
    }


def extra_attributes(span: ReadableSpan) -> dict[str, Any]:
    return {
        key: value
        for key, value in (span.attributes or {}).items()
        if key not in INTERNAL_ATTRIBUTES and not key.startswith(INTERNAL_PREFIXES)
    }


class Sink(BaseConfig):
    """One log destination; enabled sinks get a span processor."""

    enabled: bool = Field(default=True, description="Enable this sink")
    level: str | None = Field(
        default=None,
        description=(
            "Minimum level for this sink (default: logger.level). "
            "One of spew, trace, debug, info, warn, error, fatal"
        ),
    )
    escape_special_characters: bool = Field(
        default=False,
        description="Write newlines and tabs in messages as \\n and \\t",
    )
    format_template: str | None = Field(
        default=None,
        description=(
            "str.format template per line, or None for JSON. Fields: "
            "timestamp, level, message, record, location, filepath, lineno, function"
        ),
    )

    _processor: Any = PrivateAttr(default=None)

    def render(self, span: ReadableSpan) -> str:
        """One output line for span."""
        if not self.format_template:
            return span.to_json() + os.linesep

        fields = template_fields(span)
        if self.escape_special_characters:
            fields['message'] = (
                fields['message']
                .replace('\\', '\\\\')
                .replace('\n', '\\n')
                .replace('\r', '\\r')
                .replace('\t', '\\t')
            )
        try:
            line = self.format_template.format(**fields)
        except KeyError as e:
            return f"ERROR: Invalid template field {e}\n"

        extra = extra_attributes(span)
        if extra:
            line += " │ " + " ".join(f"{k}={v!r}" for k, v in sorted(extra.items()))
        return line + '\n'

    @abstractmethod
    def create_processor(self, log_root: Path, run_name: str):
        """Span processor for this sink, or None if logfire handles it."""

    def close(self):
        if self._processor:
            with contextlib.suppress(Exception):
                self._processor.shutdown()


class ConsoleSink(Sink):
    """Terminal output, rendered by logfire's console exporter."""

    verbose: bool = Field(default=False, description="Show span details")
    colors: str = Field(default="auto", description="auto, always or never")

    def create_processor(self, log_root: Path, run_name: str):
        return None


class OTLPSink(Sink):
    """Export to an OTLP collector (SigNoz, Jaeger, ...)."""

    enabled: bool = Field(default=False, description="Enable OTLP export")
    endpoint: str = Field(default="http://localhost:4317", description="OTLP gRPC endpoint")
    insecure: bool = Field(default=True, description="Connect without TLS")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Extra headers, e.g. for authentication"
    )

    def create_processor(self, log_root: Path, run_name: str):
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        exporter: SpanExporter = OTLPSpanExporter(
            endpoint=self.endpoint,
            insecure=self.insecure,
            headers=self.headers or None,
        )
        if self.level:
            exporter = MinimumLevelExporter(exporter, self.level)
        return BatchSpanProcessor(exporter)


class FileSink(Sink):
    """Per-run text log under log_root."""

    enabled: bool = Field(default=False, description="Enable file logging")
    path: str = Field(
        default="{log_root}/{run_name}/forkcascade.log",
        description="Log file path; {log_root} and {run_name} are filled in",
    )
    format_template: str | None = Field(
        default="{timestamp:%Y-%m-%d %H:%M:%S} {level:<5} {record} {message}",
        description="Line template (None for JSON)",
    )

    _file: Any = PrivateAttr(default=None)

    def log_path(self, log_root: Path, run_name: str) -> Path:
        return Path(self.path.format(log_root=log_root, run_name=run_name))

    def create_processor(self, log_root: Path, run_name: str):
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
        )

        path = self.log_path(log_root, run_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Line buffered; closed in close().
        self._file = open(path, "a", buffering=1, encoding="utf-8")  # noqa: SIM115
        exporter = ConsoleSpanExporter(out=self._file, formatter=self.render)
        return BatchSpanProcessor(MinimumLevelExporter(exporter, self.level))

    def close(self):
        super().close()
        if self._file and not self._file.closed:
            with contextlib.suppress(OSError):
                self._file.close()


class LogfireSink(Sink):
    """logfire.dev cloud; handled by logfire.configure()."""

    enabled: bool = Field(default=False, description="Send telemetry to logfire.dev")
    token: str | None = Field(default=None, description="Token (or LOGFIRE_TOKEN)")

    def create_processor(self, log_root: Path, run_name: str):
        return None


class Logger(BaseConfig):
    """The `logger:` config section and the object behind `logger`."""

    level: str = Field(
        default="info",
        description="Default minimum level for sinks that do not set one",
    )
    console: ConsoleSink = Field(default_factory=ConsoleSink)
    otlp: OTLPSink = Field(default_factory=OTLPSink)
    file: FileSink = Field(default_factory=FileSink)
    logfire: LogfireSink = Field(default_factory=LogfireSink)

    @model_validator(mode='after')
    def _default_sink_levels(self) -> 'Logger':
        for sink in (self.console, self.file):
            sink.level = sink.level or self.level
        return self

    def setup(self, log_root: Path, run_name: str):
        """Open the sinks and hand their processors to logfire."""
        import logfire
        from logfire import ConsoleOptions

        for sink in (self.console, self.otlp, self.file, self.logfire):
            if sink.enabled:
                sink._processor = sink.create_processor(log_root, run_name)

        processors = [
            sink._processor
            for sink in (self.otlp, self.file)
            if sink.enabled and sink._processor
        ]
        console = False
        if self.console.enabled:
            console = ConsoleOptions(
                min_log_level=self.console.level,
                verbose=self.console.verbose,
                colors=self.console.colors,
                include_timestamps=True,
            )

        logfire.configure(
            service_name=f"forkcascade-{run_name}",
            send_to_logfire=self.logfire.enabled,
            token=self.logfire.token if self.logfire.enabled else None,
            console=console,
            additional_span_processors=processors or None,
        )
        logfire.instrument_pydantic_ai()

    def log(self, level: str, msg: str, **kwargs):
        import logfire
        logfire.log(
            level=SEVERITY.get(level, level),
            msg_template=msg,
            attributes=kwargs or None,
        )

    def spew(self, msg: str, **kwargs):
        self.log('spew', msg, **kwargs)

    def trace(self, msg: str, **kwargs):
        self.log('trace', msg, **kwargs)

    def debug(self, msg: str, **kwargs):
        import logfire
        logfire.debug(msg, **kwargs)

    def info(self, msg: str, **kwargs):
        import logfire
        logfire.info(msg, **kwargs)

    def warn(self, msg: str, **kwargs):
        import logfire
        logfire.warn(msg, **kwargs)

    warning = warn

    def error(self, msg: str, **kwargs):
        import logfire
        logfire.error(msg, **kwargs)

    def span(self, msg: str, **kwargs):
        import logfire
        return logfire.span(msg, **kwargs)

    def __getattr__(self, name):
        import logfire
        return getattr(logfire, name)


def setup_logger(
    log_root: Path,
    run_name: str,
    level: str = "info",
    console: ConsoleSink | None = None,
    otlp: OTLPSink | None = None,
    file: FileSink | None = None,
    logfire: LogfireSink | None = None,
) -> Logger:
    """Replace the active logger; Config calls this after loading."""
    global _active

    if _active is not None:
        _active.close()

    _active = Logger(
        level=level,
        console=console or ConsoleSink(),
        otlp=otlp or OTLPSink(),
        file=file or FileSink(),
        logfire=logfire or LogfireSink(),
    )
    _active.setup(log_root, run_name)
    return _active
