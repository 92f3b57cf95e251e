"""Structured logging for the calsync service.

structlog's ProcessorFormatter renders records from ordinary
``logging.getLogger(__name__)`` call sites, so modules never import
structlog themselves.  The console gets colored text or JSON lines
(``[logging] format``); with ``log_root`` set, two JSON files are written::

    {log_root}/calsync.log   # everything except the HTTP server and client
    {log_root}/uvicorn.log   # uvicorn, httpx and httpcore records

Every record carries the service name plus the trace and span ids of the
active OpenTelemetry span.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from opentelemetry import trace

APP_LOG = "calsync.log"
TRANSPORT_LOG = "uvicorn.log"

# Shown on the console from WARNING up; the transport log keeps the rest.
TRANSPORT_LOGGERS = ("uvicorn", "httpx", "httpcore")


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id`` and ``span_id``; zeros outside a recording span."""
    ctx = trace.get_current_span().get_span_context()
    event_dict["trace_id"] = format(ctx.trace_id, "032x")
    event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def service_name_adder(service_name: str) -> structlog.types.Processor:
    """Return a processor stamping every record with *service_name*."""

    def add_service_name(logger, method_name, event_dict):  # noqa: ARG001
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service_name


class _TransportFilter(logging.Filter):
    """Pass transport records only, or everything else when *inverted*."""

    def __init__(self, *, inverted: bool = False) -> None:
        super().__init__()
        self._inverted = inverted

    def filter(self, record: logging.LogRecord) -> bool:
        is_transport = record.name.split(".", 1)[0] in TRANSPORT_LOGGERS
        return is_transport != self._inverted


def _quiet_transport(record: logging.LogRecord) -> bool:
    if record.name.split(".", 1)[0] in TRANSPORT_LOGGERS:
        return record.levelno >= logging.WARNING
    return True


def _pre_chain(service_name: str, timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        service_name_adder(service_name),
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(
    handler: logging.Handler,
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str = "calsync",
) -> None:
    """(Re)configure the root logger; repeated calls replace earlier handlers.

    Parameters
    ----------
    level:
        Root level name, case-insensitive; unknown names fall back to INFO.
    fmt:
        ``"json"`` for JSON lines on stderr, anything else for colored text.
    log_root:
        Directory for the JSON log files, created when missing.
    service_name:
        Value of the ``service`` field on every record.
    """
    if fmt == "json":
        console_chain = _pre_chain(service_name, "iso")
        console_renderer = structlog.processors.JSONRenderer()
    else:
        console_chain = _pre_chain(service_name, "%H:%M:%S")
        console_renderer = structlog.dev.ConsoleRenderer()

    console = _handler(logging.StreamHandler(sys.stderr), console_renderer, console_chain)
    console.addFilter(_quiet_transport)
    handlers = [console]

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_chain = _pre_chain(service_name, "iso")
        for filename, inverted in ((APP_LOG, True), (TRANSPORT_LOG, False)):
            handler = _handler(
                logging.FileHandler(log_dir / filename),
                structlog.processors.JSONRenderer(),
                file_chain,
            )
            handler.addFilter(_TransportFilter(inverted=inverted))
            handlers.append(handler)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
