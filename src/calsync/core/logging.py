"""Structured logging for calsync.

All modules keep logging through ``logging.getLogger(__name__)``; this module
routes the stdlib records through structlog's ``ProcessorFormatter`` so they
come out either as coloured console lines (``text``) or JSON lines (``json``).

The calendar being synchronized and the user behind a push connection are
bound as structlog context variables, so every record emitted while a sync or
a connection is in flight carries ``calendar_id`` / ``user_id``. The current
OpenTelemetry span ids are attached as ``trace_id`` / ``span_id``.

When ``log_root`` is set, a JSON copy of everything (uvicorn's transport logs
included) is written to ``{log_root}/{log_name}.log``.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from opentelemetry import trace

_QUIET_LOGGERS = ("uvicorn.access", "uvicorn.error", "caldav", "urllib3")


def _bind(key: str, value: int | None) -> None:
    if value is None:
        structlog.contextvars.unbind_contextvars(key)
    else:
        structlog.contextvars.bind_contextvars(**{key: value})


def set_calendar_context(calendar_id: int | None) -> None:
    """Tag subsequent records in this task with *calendar_id* (``None`` clears it)."""
    _bind("calendar_id", calendar_id)


def set_user_context(user_id: int | None) -> None:
    """Tag subsequent records in this task with *user_id* (``None`` clears it)."""
    _bind("user_id", user_id)


def add_trace_ids(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Attach the ids of the active OTel span, if there is one."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_trace_ids,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    log_name: str = "calsync",
) -> None:
    """Install the console (and optional file) handlers on the root logger.

    Safe to call more than once; earlier handlers are replaced.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{log_name}.log")
        file_handler.setFormatter(
            _formatter(structlog.processors.JSONRenderer(), _pre_chain("iso"))
        )
        root.addHandler(file_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
