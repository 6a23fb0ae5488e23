"""Monitoring and observability setup.

Tracing and metrics are exported over OTLP when ``OTEL_ENABLED`` is set.
Otherwise the OpenTelemetry API falls back to its no-op providers, so the
instruments below can always be used unconditionally.

Exemplars are attached automatically to histograms recorded inside an active
trace (checkout amounts, payment provider latency).
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
import pyroscope

from config import (
    OTEL_ENABLED,
    OTEL_EXPORTER_OTLP_ENDPOINT,
    PROFILING_ENABLED,
    PYROSCOPE_SERVER,
    SERVICE_NAME,
)

logger = logging.getLogger(__name__)


def init_tracing() -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Returns:
        Tracer instance
    """
    if OTEL_ENABLED:
        resource = Resource.create({"service.name": SERVICE_NAME})

        tracer_provider = TracerProvider(resource=resource)
        otlp_span_exporter = OTLPSpanExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        tracer_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))
        trace.set_tracer_provider(tracer_provider)

        logger.info(f"Tracing initialized with endpoint: {OTEL_EXPORTER_OTLP_ENDPOINT}")

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Returns:
        Meter instance
    """
    if OTEL_ENABLED:
        resource = Resource.create({"service.name": SERVICE_NAME})

        otlp_metric_exporter = OTLPMetricExporter(
            endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=True
        )
        otlp_metric_reader = PeriodicExportingMetricReader(
            otlp_metric_exporter,
            export_interval_millis=5000
        )

        meter_provider = MeterProvider(
            resource=resource,
            metric_readers=[otlp_metric_reader]
        )
        metrics.set_meter_provider(meter_provider)

        logger.info("Metrics initialized with OTLP exporter")

    return metrics.get_meter(__name__)


def init_profiling() -> None:
    """Initialize Pyroscope profiling."""
    if not PROFILING_ENABLED:
        return
    try:
        pyroscope.configure(
            application_name=SERVICE_NAME,
            server_address=PYROSCOPE_SERVER,
            tags={"env": "demo"}
        )
        logger.info(f"Profiling initialized with server: {PYROSCOPE_SERVER}")
    except Exception as e:
        logger.warning(f"Failed to initialize profiling: {e}")


# Initialize tracer and meter
tracer = init_tracing()
meter = init_metrics()

# Cart metrics
cart_mutations_counter = meter.create_counter(
    "storefront.cart.mutations",
    description="Cart mutations by operation",
    unit="1"
)

# Checkout metrics
checkout_counter = meter.create_counter(
    "storefront.checkouts",
    description="Total number of checkouts by outcome",
    unit="1"
)

checkout_amount_histogram = meter.create_histogram(
    "storefront.checkout.amount",
    description="Order total at checkout",
    unit="EUR"
)

# Inventory metrics
inventory_reservation_failures_counter = meter.create_counter(
    "storefront.inventory.reservation_failures",
    description="Reservations rejected for insufficient stock",
    unit="1"
)

inventory_releases_counter = meter.create_counter(
    "storefront.inventory.releases",
    description="Units returned to stock by cancellations and deletions",
    unit="1"
)

low_stock_counter = meter.create_counter(
    "storefront.inventory.low_stock",
    description="Reservations that left a product at or below its low-stock threshold",
    unit="1"
)

# Order lifecycle metrics
order_transitions_counter = meter.create_counter(
    "storefront.orders.transitions",
    description="Applied order status transitions",
    unit="1"
)

# Payment metrics
payment_webhooks_counter = meter.create_counter(
    "storefront.payments.webhooks",
    description="Payment provider events by type and outcome",
    unit="1"
)

orphan_payments_counter = meter.create_counter(
    "storefront.payments.orphans",
    description="Payment events that matched no order",
    unit="1"
)

captured_on_cancelled_counter = meter.create_counter(
    "storefront.payments.captured_on_cancelled",
    description="Payments captured for orders that were already cancelled",
    unit="1"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "storefront.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)

auth_attempts_counter = meter.create_counter(
    "storefront.auth.attempts",
    description="Total number of authentication attempts",
    unit="1"
)

rate_limit_exceeded_counter = meter.create_counter(
    "storefront.rate_limit.exceeded",
    description="Total number of rate limit violations",
    unit="1"
)

suspicious_activity_counter = meter.create_counter(
    "storefront.security.suspicious_activity",
    description="Total number of suspicious activity detections",
    unit="1"
)

# External service call metrics
external_payment_duration_histogram = meter.create_histogram(
    "storefront.external.payment.duration",
    description="Duration of payment provider calls",
    unit="s"
)

external_notification_duration_histogram = meter.create_histogram(
    "storefront.external.notification.duration",
    description="Duration of notification service calls",
    unit="s"
)
