"""
Structured logging for the billing worker.

structlog builds the event dict; python-json-logger renders it as one flat
JSON object per line. Delivery context (``event_id``, ``payment_event``,
``subscription_id``, ``event_type``) is bound with
``structlog.contextvars.bound_contextvars`` by the webhook receiver and the
payment event processor, so every line logged while a delivery is handled
carries it without being passed around.
"""
import logging
import sys
from typing import Any, Callable

import structlog
from pythonjsonlogger.json import JsonFormatter

from subscription_billing.config import Settings, get_settings

# Third-party loggers that only matter when something is wrong
QUIET_LOGGERS = ("stripe", "redis", "asyncio", "aiosqlite")


def service_context(settings: Settings) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    """Processor stamping the service name and environment on every event."""

    def add_service_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_service_context


def build_json_handler(stream: Any = None) -> logging.Handler:
    """Handler writing one JSON document per record; structlog keys become top-level fields."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter("%(message)s", rename_fields={"message": "event"}))
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog and the root stdlib logger for JSON output.

    Safe to call more than once; the root handlers are replaced each time.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", key="@timestamp"),
            structlog.processors.format_exc_info,
            service_context(settings),
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(build_json_handler())

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )


def get_logger(name: str) -> Any:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
