"""Prometheus metrics for the gateway."""

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("gateway", "Wellness AI gateway info")
APP_INFO.info({"version": "1.0.0", "name": "wellness_ai_gateway"})

GATEWAY_CALLS = Counter(
    "gateway_calls_total",
    "Gateway calls by terminal outcome",
    ["provider", "outcome"],
)

PROVIDER_LATENCY = Histogram(
    "gateway_provider_latency_seconds",
    "Provider adapter invocation latency in seconds",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 20, 45, 90],
)

CIRCUIT_TRANSITIONS = Counter(
    "gateway_circuit_transitions_total",
    "Circuit breaker state transitions",
    ["provider", "from_state", "to_state"],
)

QUEUE_EVENTS = Counter(
    "gateway_queue_events_total",
    "Durability queue events (enqueued, acked, nacked, dead_lettered, evicted, deferred, removed)",
    ["provider", "event"],
)

CACHE_LOOKUPS = Counter(
    "gateway_cache_lookups_total",
    "Response cache lookups",
    ["result"],
)

ADMISSION_DECISIONS = Counter(
    "gateway_admission_decisions_total",
    "Admission controller decisions",
    ["provider", "decision"],
)


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
