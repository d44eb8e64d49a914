"""
Structured logging.

structlog events are handed to the stdlib root logger as a message plus
``extra`` fields, and python-json-logger writes every record, ours and
uvicorn's, sqlalchemy's or stripe's, as one flat JSON line on stdout.
Request and event ids bound with ``structlog.contextvars`` ride along.
"""
import logging
import sys
from typing import Any, Callable, Dict

import structlog
from pythonjsonlogger.json import JsonFormatter

from billing_ledger.config import get_settings

EventDict = Dict[str, Any]


def _static_fields(**fields: Any) -> Callable[[Any, str, EventDict], EventDict]:
    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return processor


def setup_logging() -> None:
    """Configure structlog and the root JSON handler. Safe to call repeatedly."""
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            _static_fields(app_name=settings.app_name, app_env=settings.app_env),
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(settings.log_level)

    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
