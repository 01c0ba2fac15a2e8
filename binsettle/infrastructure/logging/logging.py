"""Logging setup using structlog.

Every settlement step is logged as a structured event so that an order's
history can be reconstructed from the log stream alone:
- JSON lines in production, colored console output for local runs.
- ``order_id`` / ``user_id`` / ``symbol`` are carried through contextvars while
  an order is being opened or resolved, so nested components inherit them.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog


def configure_logging(log_level: str = "INFO", *, json_logs: bool = True) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    # websockets logs every keepalive at DEBUG
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger().bind(component=component, **kwargs)


@contextmanager
def order_context(**fields: Any) -> Iterator[None]:
    """Bind order fields (order_id, user_id, symbol...) for the duration of a block."""
    clean = {k: v for k, v in fields.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**clean):
        yield
