"""structlog setup for navsync.

Sync cycles bind their generation number into structlog's contextvars before
spawning batch tasks. Each task copies the context at creation, so every line
a batch logs carries the cycle it belongs to without passing it around.
"""

import logging
import os

import structlog

#: Third-party loggers that are too chatty at DEBUG.
NOISY_LOGGERS = ("aiosqlite", "ccxt.base.exchange", "asyncio")


def setup_logging(log_level: str = "INFO", log_format: str | None = None) -> None:
    """Route stdlib and structlog output through one renderer.

    Args:
        log_level: Root level name, e.g. "DEBUG".
        log_format: "json" or "console". Falls back to the LOG_FORMAT
            environment variable, then "console".
    """
    log_format = (log_format or os.environ.get("LOG_FORMAT", "console")).lower()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_logger.level, logging.INFO))


def bind_cycle_context(generation: int) -> None:
    """Tag subsequent log lines (and tasks spawned afterwards) with a sync generation."""
    structlog.contextvars.bind_contextvars(generation=generation)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
