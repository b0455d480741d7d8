"""Structured logging for the APKG importer.

Every module logs structlog events with snake_case names
(``apkg_format_selected``, ``apkg_import_completed``) and keyword context.
Lines emitted while one upload is parsed can carry an ``import_id`` so that
concurrent imports stay distinguishable in the host's log stream.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TextIO
from uuid import uuid4

import structlog

IMPORT_ID_KEY = "import_id"


def new_import_id() -> str:
    """Return a fresh random import ID."""
    return uuid4().hex


@contextmanager
def import_scope(import_id: str | None = None, **context: object) -> Iterator[str]:
    """Bind an import ID, plus any extra context, to log lines inside the block.

    Args:
        import_id: ID to bind. If None, a new one is generated.
        **context: Additional key-value pairs for every log line in the block.

    Yields:
        The import ID that was bound.
    """
    import_id = import_id or new_import_id()
    with structlog.contextvars.bound_contextvars(**{IMPORT_ID_KEY: import_id}, **context):
        yield import_id


def current_import_id() -> str | None:
    """Return the import ID bound by the innermost ``import_scope``, if any."""
    value = structlog.contextvars.get_contextvars().get(IMPORT_ID_KEY)
    return value if isinstance(value, str) else None


def configure_logging(
    *,
    debug: bool = False,
    json_output: bool = False,
    log_stream: TextIO | None = None,
) -> None:
    """Configure structlog for an entry point (CLI, host service).

    Args:
        debug: Emit DEBUG events (per-warning details, stage summaries).
        json_output: One JSON object per line instead of the console renderer.
        log_stream: Output stream; defaults to ``sys.stderr``.
    """
    stream = log_stream or sys.stderr
    level = logging.DEBUG if debug else logging.INFO

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=stream.isatty())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    # zipfile and friends log through the stdlib; send them to the same stream
    logging.basicConfig(
        stream=stream,
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


def get_logger(**initial_context: object) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger with ``initial_context`` bound."""
    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(**initial_context)
    return logger
