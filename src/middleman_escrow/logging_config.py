"""Structured logging for the middleman escrow core, built on structlog.

Event names are dotted ``<component>.<what happened>``:

    trade.*        TradeLifecycle (created, status_changed, cancelled)
    escrow.*       EscrowLedger (hold_created, hold_verified, payment_mismatch,
                   released, refunded, late_capture_refunded)
    deadline.*     payment deadline enforcement
    dispatcher.*   middleman offers, answers, timeouts and supervision
    payment.*      the simulated processor
    sweep.*        the periodic sweeper

Context is carried in contextvars. The API binds ``request_id``, and every
coordinator operation on a trade binds ``trade_id`` through
``trade_log_context``, so one lookup by trade id finds every line an
operation wrote, including the services it called.

Usage:
    from middleman_escrow.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger(__name__)
    logger.info("trade.created", trade_id="abc-123", price_minor=5000)
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx", "httpcore")


def setup_logging(log_level: str = "DEBUG", json_logs: bool = False) -> None:
    """Route structlog and stdlib logging through one renderer.

    Args:
        log_level: Standard Python log level string (DEBUG, INFO, WARNING, etc.)
        json_logs: JSON lines when True (staging, production), colored console otherwise.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # stdlib records (uvicorn, SQLAlchemy) get the same timestamp and level keys
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.DEBUG))

    for noisy_logger in NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


@contextmanager
def trade_log_context(trade_id: object | None, **extra: object) -> Iterator[None]:
    """Bind ``trade_id`` (and any extra keys) for the duration of one operation.

    Keys bound by an outer scope, such as ``request_id``, stay bound. A
    ``None`` trade id binds only the extra keys.
    """
    bound: dict[str, object] = {k: v for k, v in extra.items() if v is not None}
    if trade_id is not None:
        bound["trade_id"] = str(trade_id)
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger; ``name`` is normally the module's ``__name__``."""
    return structlog.get_logger(name)
