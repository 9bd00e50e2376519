"""Process-wide logging setup built on structlog.

Standard ``logging.getLogger(__name__)`` loggers keep working unchanged: a
structlog ``ProcessorFormatter`` sits on every handler and renders stdlib
records through the same processor chain as ``structlog.get_logger()``.

Every record carries the member currently being synced (see
:func:`set_member_context`) and the active OpenTelemetry trace/span ids.

With ``log_root`` set, JSON copies are also written to disk::

    <log_root>/app/<service>.log     everything reaching the root logger
    <log_root>/http/<service>.log    uvicorn and httpx chatter only
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_member_context: ContextVar[str | None] = ContextVar("coup_member", default=None)

# Loggers held at WARNING on the console and mirrored into the http/ file.
_NOISE_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore")

_ZERO_TRACE = "0" * 32
_ZERO_SPAN = "0" * 16


def set_member_context(member_id: str | None) -> None:
    _member_context.set(member_id)


def get_member_context() -> str | None:
    return _member_context.get()


def add_member_context(logger, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    event_dict["member"] = _member_context.get()
    return event_dict


def add_otel_context(logger, method_name: str, event_dict: dict) -> dict:  # noqa: ARG001
    """Stamp ``trace_id``/``span_id`` hex ids, zeroed outside any span."""
    span_ctx = trace.get_current_span().get_span_context()
    if span_ctx is not None and span_ctx.trace_id:
        event_dict["trace_id"] = f"{span_ctx.trace_id:032x}"
        event_dict["span_id"] = f"{span_ctx.span_id:016x}"
    else:
        event_dict["trace_id"] = _ZERO_TRACE
        event_dict["span_id"] = _ZERO_SPAN
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_member_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer, pre_chain: list) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def _json_file(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str = "coup",
) -> None:
    """(Re)install the root handlers.

    ``fmt`` is ``"text"`` for a coloured dev console or ``"json"`` for one
    JSON object per line. Calling this again replaces earlier handlers.
    """
    if fmt == "json":
        console_chain = _pre_chain("iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, console_chain))

    root = logging.getLogger()
    for stale in root.handlers:
        stale.close()
    root.handlers = [console]
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))

    noisy = [logging.getLogger(name) for name in _NOISE_LOGGERS]
    for noisy_logger in noisy:
        noisy_logger.setLevel(logging.WARNING)

    if log_root is not None:
        base = Path(log_root)
        root.addHandler(_json_file(base / "app" / f"{service_name}.log"))
        http_file = _json_file(base / "http" / f"{service_name}.log")
        for noisy_logger in noisy:
            noisy_logger.addHandler(http_file)

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
