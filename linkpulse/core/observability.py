"""Observability setup: logging, tracing, metrics, and error tracking."""

import logging
import time
import uuid
from contextvars import ContextVar

import sentry_sdk
import structlog
from fastapi import FastAPI, Request, Response
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from linkpulse.core.config import Settings

# Context variable for request ID (accessible throughout the request lifecycle)
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# Prometheus metrics - HTTP requests
REQUEST_COUNT = Counter(
    "linkpulse_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "linkpulse_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

REDIRECT_COUNT = Counter(
    "linkpulse_redirects_total",
    "Total short link redirects",
    ["status_code"],
)

LINK_OPERATIONS = Counter(
    "linkpulse_link_operations_total",
    "Total link operations",
    ["operation"],  # create, delete
)

# Prometheus metrics - Visit ingestion
VISITS_ENQUEUED = Counter(
    "linkpulse_visits_enqueued_total",
    "Visit events handed to the ingestion queue",
    ["backend"],
)

VISITS_SKIPPED = Counter(
    "linkpulse_visits_skipped_total",
    "Visits not enqueued",
    ["reason"],  # bot, enqueue_error
)

VISITS_RECORDED = Counter(
    "linkpulse_visits_recorded_total",
    "Visit events merged into an hourly aggregate",
)

VISITS_FAILED = Counter(
    "linkpulse_visits_failed_total",
    "Visit events whose delivery failed",
    ["reason"],
)

VISITS_DROPPED = Counter(
    "linkpulse_visits_dropped_total",
    "Visit events given up on without being recorded",
    ["backend"],
)

RECORD_LATENCY = Histogram(
    "linkpulse_visit_record_duration_seconds",
    "Time to merge one visit into its hourly aggregate",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

# Prometheus metrics - Stats rollup
ROLLUP_DURATION = Histogram(
    "linkpulse_stats_rollup_duration_seconds",
    "Time to compute a stats report from aggregate rows",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

STATS_CACHE = Counter(
    "linkpulse_stats_cache_total",
    "Stats cache lookups",
    ["result"],  # hit, miss
)

# Prometheus metrics - Service state
CONSUMER_RUNNING = Gauge(
    "linkpulse_consumer_running",
    "Whether the visit queue consumer is running (1) or stopped (0)",
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to add a unique request ID to each request.

    The request ID is:
    - Generated if not provided in X-Request-ID header
    - Stored in context variable for access throughout the request
    - Added to response headers
    - Bound to structlog context for all log messages
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_ctx.reset(token)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log all requests with timing information."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        logger = structlog.get_logger()
        start_time = time.perf_counter()

        logger.info(
            "Request started",
            client_ip=request.client.host if request.client else None,
        )

        response = await call_next(request)
        duration = time.perf_counter() - start_time

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )

        # Use the route template to avoid high cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()

        REQUEST_LATENCY.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON logging with context variables."""
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
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=logging.INFO if not settings.debug else logging.DEBUG,
    )


def setup_opentelemetry(app: FastAPI, settings: Settings) -> None:
    """Set up OpenTelemetry tracing."""
    if not settings.otlp_endpoint:
        structlog.get_logger().info("OpenTelemetry disabled (no OTLP endpoint configured)")
        return

    resource = Resource(attributes={
        SERVICE_NAME: "linkpulse",
    })
    provider = TracerProvider(resource=resource)

    otlp_exporter = OTLPSpanExporter(
        endpoint=settings.otlp_endpoint,
        insecure=True,  # Set to False in production with TLS
    )
    provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app)

    structlog.get_logger().info(
        "OpenTelemetry configured",
        otlp_endpoint=settings.otlp_endpoint,
    )


def setup_sentry(settings: Settings) -> None:
    """Set up Sentry for error tracking."""
    if not settings.sentry_dsn:
        structlog.get_logger().info("Sentry disabled (no DSN configured)")
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment="development" if settings.debug else "production",
        traces_sample_rate=0.1,  # Sample 10% of transactions
        profiles_sample_rate=0.1,  # Sample 10% of profiles
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        # Don't send PII
        send_default_pii=False,
    )

    structlog.get_logger().info("Sentry configured")


def get_prometheus_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def setup_observability(app: FastAPI, settings: Settings) -> None:
    """Set up all observability components.

    Call this function during app initialization to configure:
    - Structured logging with request context
    - OpenTelemetry tracing
    - Sentry error tracking
    - Prometheus metrics endpoint

    Request ID and request logging middleware are added by the app factory.
    """
    configure_structlog(settings)

    setup_sentry(settings)
    setup_opentelemetry(app, settings)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=get_prometheus_metrics(),
            media_type="text/plain; charset=utf-8",
        )

    structlog.get_logger().info("Observability setup complete")


# Helper functions to record custom metrics
def record_redirect(status_code: int) -> None:
    """Record a redirect operation."""
    REDIRECT_COUNT.labels(status_code=str(status_code)).inc()


def record_link_operation(operation: str) -> None:
    """Record a link CRUD operation."""
    LINK_OPERATIONS.labels(operation=operation).inc()


def record_visit_enqueued(backend: str) -> None:
    VISITS_ENQUEUED.labels(backend=backend).inc()


def record_visit_skipped(reason: str) -> None:
    VISITS_SKIPPED.labels(reason=reason).inc()


def record_visit_recorded(duration: float) -> None:
    """Record a visit merged into its aggregate row."""
    VISITS_RECORDED.inc()
    RECORD_LATENCY.observe(duration)


def record_visit_failed(reason: str) -> None:
    """Record a visit delivery that raised or could not be parsed."""
    VISITS_FAILED.labels(reason=reason).inc()


def record_visit_dropped(backend: str) -> None:
    """Record a visit abandoned without being recorded."""
    VISITS_DROPPED.labels(backend=backend).inc()


def record_rollup(duration: float) -> None:
    ROLLUP_DURATION.observe(duration)


def record_stats_cache(hit: bool) -> None:
    STATS_CACHE.labels(result="hit" if hit else "miss").inc()


def set_consumer_running(running: bool) -> None:
    """Set the consumer running state."""
    CONSUMER_RUNNING.set(1 if running else 0)
