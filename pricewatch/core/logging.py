"""structlog configuration for the worker and CLI processes."""

import logging

import structlog


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog once at process start.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ...)
        json_logs: Emit one JSON object per line instead of coloured console output
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso" if json_logs else "%H:%M:%S"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Quiet noisy libraries that log through the stdlib
    logging.basicConfig(level=numeric_level, format="%(message)s")
    for name in ("httpx", "apscheduler", "asyncio"):
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
