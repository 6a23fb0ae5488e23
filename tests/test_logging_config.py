"""Tests for structured logging."""

import json
import logging

import pytest
from opentelemetry.sdk.trace import TracerProvider

from logging_config import QUIET_LOGGERS, StorefrontJsonFormatter, setup_logging


def make_record(msg="Order created", **extra):
    record = logging.LogRecord("services.order_service", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestFormatter:
    def test_record_fields(self):
        formatter = StorefrontJsonFormatter(service="storefront", environment="test")

        payload = json.loads(formatter.format(make_record(order_id=7)))

        assert payload["msg"] == "Order created"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "services.order_service"
        assert payload["service"] == "storefront"
        assert payload["env"] == "test"
        assert payload["order_id"] == 7
        assert "trace_id" not in payload

    def test_trace_context_inside_a_span(self):
        formatter = StorefrontJsonFormatter()
        tracer = TracerProvider().get_tracer(__name__)

        with tracer.start_as_current_span("checkout") as span:
            payload = json.loads(formatter.format(make_record()))
            ctx = span.get_span_context()

        assert payload["trace_id"] == format(ctx.trace_id, "032x")
        assert payload["span_id"] == format(ctx.span_id, "016x")


class TestSetupLogging:
    def test_configures_root_logger(self, restore_root_logger):
        setup_logging("DEBUG")

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, StorefrontJsonFormatter)
        for name, level in QUIET_LOGGERS.items():
            assert logging.getLogger(name).level == level

    def test_repeated_setup_does_not_stack_handlers(self, restore_root_logger):
        setup_logging(logging.WARNING)
        setup_logging(logging.WARNING)

        assert len(restore_root_logger.handlers) == 1
        assert restore_root_logger.level == logging.WARNING
