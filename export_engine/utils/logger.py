# export_engine/utils/logger.py

import logging
import sys

import structlog


def configure_logging(level: str = "INFO") -> None:
    """
    Configure stdlib logging and structlog to emit one JSON object per line.

    Called once by process entrypoints (Celery worker, scripts). Modules only
    ever call get_logger().
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    """Return a structlog logger bound to the module name."""
    return structlog.get_logger(name)
