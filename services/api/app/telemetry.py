"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics owned by a MetricsCollector instance

The collector keeps its own CollectorRegistry and is handed to the app at
startup (app.state.metrics), so tests and multiple apps never share counters.
"""
import logging
import time

from fastapi import FastAPI, Request
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from app.config import settings

logger = logging.getLogger(__name__)


# ─────────────────────────── Prometheus Metrics ───────────────────────────
class MetricsCollector:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.request_latency = Histogram(
            "http_request_duration_seconds",
            "Latency of HTTP requests by route",
            ["method", "route", "status"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
            registry=self.registry,
        )
        self.feed_latency = Histogram(
            "feed_latency_seconds",
            "Latency of feed generation",
            ["algorithm"],  # 'ranked' | 'suggestions' | 'chronological'
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
            registry=self.registry,
        )
        self.feed_items = Counter(
            "feed_items_returned_total",
            "Items returned by feed endpoints",
            ["algorithm"],
            registry=self.registry,
        )
        self.messages_sent = Counter(
            "messages_sent_total",
            "Messages persisted, by initial delivery status",
            ["status"],
            registry=self.registry,
        )
        self.realtime_connections = Gauge(
            "realtime_connections",
            "Open WebSocket connections on this worker",
            registry=self.registry,
        )
        self.realtime_emit_errors = Counter(
            "realtime_emit_errors_total",
            "Realtime emissions that failed and were dropped",
            ["event"],
            registry=self.registry,
        )

    def observe_request(self, method: str, route: str, status: int, seconds: float) -> None:
        self.request_latency.labels(method=method, route=route, status=str(status)).observe(seconds)


def install_request_metrics(app: FastAPI) -> None:
    """Record latency for every request against the route template."""

    @app.middleware("http")
    async def _record_latency(request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", None) or "unmatched"
            metrics = getattr(request.app.state, "metrics", None)
            if metrics is not None:
                metrics.observe_request(request.method, path, status, time.perf_counter() - t0)


def get_metrics(request: Request) -> MetricsCollector:
    return request.app.state.metrics


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing() -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    if not settings.tracing_enabled:
        logger.info("Tracing disabled")
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Auto-instrument libraries so their spans appear in traces
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)
