"""
Structured logging configuration.

structlog renders every event as one JSON line; messages are event names
(``settlement_completed``) and everything else is keyword context. The HTTP
middleware binds ``request_id`` through ``structlog.contextvars`` so every
line of one webhook delivery can be correlated. Customer emails and phone
numbers are masked before rendering.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from booking_settlement.config import get_settings


# Customer contact fields, as log keys and as checkout metadata keys.
CONTACT_FIELDS = frozenset({"customer_email", "customer_phone", "email", "telephone"})


def mask_contact(value: str) -> str:
    """``marie.curie@example.com`` -> ``m***@example.com``; phones keep their last two digits."""
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{value[-2:]}" if len(value) > 4 else "***"


def _mask_fields(values: dict[str, Any]) -> dict[str, Any]:
    return {
        key: mask_contact(value) if key in CONTACT_FIELDS and isinstance(value, str) else value
        for key, value in values.items()
    }


def mask_customer_contact(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask customer emails and phone numbers, including inside logged booking metadata."""
    event_dict = _mask_fields(event_dict)
    if isinstance(event_dict.get("metadata"), dict):
        event_dict["metadata"] = _mask_fields(event_dict["metadata"])
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp every event with the service name and environment."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger for JSON output.

    Safe to call more than once; the root logger's handlers are replaced.
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            mask_customer_contact,
            structlog.processors.JSONRenderer(),
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

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={
            "asctime": "@timestamp",
            "levelname": "level",
            "name": "logger",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
