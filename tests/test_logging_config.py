import json
import logging
import sys

from shared.logging_config import JsonFormatter, ServiceFilter, setup_logging


def make_record(msg="Reserved stock", **extra):
    record = logging.LogRecord("services.inventory_service.reservation", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_lifts_context_fields():
    record = make_record(product_id=7, order_number="ORD-1A2B3C4D", unrelated="dropped")
    data = json.loads(JsonFormatter().format(record))

    assert data["level"] == "INFO"
    assert data["message"] == "Reserved stock"
    assert data["logger"] == "services.inventory_service.reservation"
    assert data["product_id"] == 7
    assert data["order_number"] == "ORD-1A2B3C4D"
    assert "unrelated" not in data
    assert data["timestamp"].endswith("+00:00")


def test_exception_is_included():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    data = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in data["exception"]


def test_service_filter_stamps_name():
    record = make_record()
    assert ServiceFilter("order-service").filter(record) is True
    assert json.loads(JsonFormatter().format(record))["service_name"] == "order-service"


def test_setup_logging_replaces_previous_handler():
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        setup_logging("inventory-service", level="DEBUG")
        setup_logging("inventory-service", level="INFO")
        json_handlers = [h for h in root.handlers if isinstance(h.formatter, JsonFormatter)]
        assert len(json_handlers) == 1
        assert root.level == logging.INFO
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
