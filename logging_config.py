"""Structured logging configuration.

Every record goes to stdout as one JSON object carrying the service name,
the deployment environment and, inside a request, the active trace and span
ids. With ``OTEL_ENABLED`` the same records are also shipped to the collector.
"""
import logging
import sys
from typing import Optional, Union
from pythonjsonlogger import jsonlogger
from opentelemetry import trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource

from config import (
    DEPLOYMENT_ENV,
    LOG_LEVEL,
    OTEL_ENABLED,
    OTEL_EXPORTER_OTLP_ENDPOINT,
    SERVICE_NAME,
)

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


class StorefrontJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter stamping each record with service and trace context."""

    def __init__(self, service: str = SERVICE_NAME, environment: str = DEPLOYMENT_ENV):
        super().__init__(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp", "name": "logger"}
        )
        self.service = service
        self.environment = environment

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        ctx = trace.get_current_span().get_span_context()
        if ctx.is_valid:
            log_record["trace_id"] = format(ctx.trace_id, "032x")
            log_record["span_id"] = format(ctx.span_id, "016x")

        log_record["service"] = self.service
        log_record["env"] = self.environment

        if "message" in log_record:
            log_record["msg"] = log_record.pop("message")


def _otlp_handler(level: int) -> Optional[logging.Handler]:
    """Build a handler exporting records to the OTLP collector."""
    try:
        logger_provider = LoggerProvider(resource=Resource.create({
            "service.name": SERVICE_NAME,
            "deployment.environment": DEPLOYMENT_ENV
        }))
        logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True))
        )
        set_logger_provider(logger_provider)
        return LoggingHandler(level=level, logger_provider=logger_provider)
    except Exception as e:
        logging.warning(f"Failed to configure OTLP logging handler: {e}")
        return None


def setup_logging(level: Union[int, str, None] = None) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level; defaults to ``LOG_LEVEL``
    """
    level = logging.getLevelName(level or LOG_LEVEL) if not isinstance(level, int) else level

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StorefrontJsonFormatter())
    root_logger.addHandler(console_handler)

    if OTEL_ENABLED:
        otlp_handler = _otlp_handler(level)
        if otlp_handler is not None:
            root_logger.addHandler(otlp_handler)
            logging.info("Logs exported to OTLP collector", extra={"endpoint": OTEL_EXPORTER_OTLP_ENDPOINT})

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
