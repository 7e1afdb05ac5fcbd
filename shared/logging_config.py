"""
logging_config.py - Centralized JSON Logging Configuration

PURPOSE:
    Structured JSON logging for the order and inventory services, with the
    service name injected into every record and the protocol's correlation
    fields (order_number, product_id, event_id, ...) lifted from `extra=`.

JSON LOG FIELDS:
    - timestamp: ISO 8601 in the configured timezone (UTC by default)
    - level, logger, message
    - service_name: injected by ServiceFilter
    - any of CONTEXT_FIELDS passed through `extra=`
    - exception: stack trace when exc_info is set

USAGE:
    from shared.logging_config import setup_logging
    setup_logging("inventory-service", level="INFO")

    logger = logging.getLogger(__name__)
    logger.info("Reserved stock", extra={"product_id": 7, "order_number": "ORD-1A2B3C4D"})

EXAMPLE OUTPUT:
    {
        "timestamp": "2026-10-17T22:48:51.001014+00:00",
        "level": "INFO",
        "logger": "services.inventory_service.reservation",
        "message": "Reserved stock",
        "service_name": "inventory-service",
        "product_id": 7,
        "order_number": "ORD-1A2B3C4D"
    }
"""

import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict
from zoneinfo import ZoneInfo

CONTEXT_FIELDS = (
    "service_name",
    "correlation_id",
    "event_id",
    "event_type",
    "order_number",
    "product_id",
    "quantity",
    "message_key",
    "partition",
    "offset",
)


class JsonFormatter(logging.Formatter):
    """Custom formatter that outputs JSON logs with correlation context."""

    def __init__(self, tz: str = "UTC"):
        super().__init__()
        self.tz = ZoneInfo(tz)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, self.tz).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ServiceFilter(logging.Filter):
    """Stamp every record with the owning service's name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        return True


def setup_logging(service_name: str, level: str = "INFO", tz: str = "UTC") -> None:
    """Setup JSON logging for a service. Calling it again replaces the previous setup."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler.formatter, JsonFormatter):
            root.removeHandler(handler)
    for existing in list(root.filters):
        if isinstance(existing, ServiceFilter):
            root.removeFilter(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter(tz))
    handler.addFilter(ServiceFilter(service_name))

    root.setLevel(level)
    root.addHandler(handler)
