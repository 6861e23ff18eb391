"""
JSON logging for the API process and the Dramatiq workers.

Both structlog events and standard-library records (SQLAlchemy, Dramatiq,
APScheduler, pybreaker listener) go to stdout as one JSON object per line,
tagged with the correlation id of the request that caused them.
"""

import logging
import os
import sys

import structlog
from asgi_correlation_id.context import correlation_id
from pythonjsonlogger import jsonlogger

SERVICE_NAME = "tradechain-coordinator"

# Libraries that log every HTTP round trip at INFO
NOISY_LOGGERS = ("web3", "urllib3", "httpx", "httpcore", "apscheduler.executors")

_HANDLER_NAME = "tradechain-json"


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """python-json-logger formatter adding correlation_id, service and environment."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["correlation_id"] = correlation_id.get() or "none"
        log_record["service"] = SERVICE_NAME
        log_record["environment"] = os.getenv("ENVIRONMENT", "development")


def add_correlation_id(logger, method_name, event_dict):
    """structlog processor: same correlation_id field as the stdlib formatter."""
    event_dict.setdefault("correlation_id", correlation_id.get() or "none")
    return event_dict


def setup_logging(level: str = "INFO") -> logging.Handler:
    """
    Route all logging to stdout as JSON.

    Safe to call more than once (the API module and the worker both call
    it at import): the previous handler is replaced, not stacked.

    Returns:
        The installed root handler
    """
    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(CorrelationJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={"timestamp": "asctime", "level": "levelname"},
    ))
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            add_correlation_id,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
    )

    return handler
