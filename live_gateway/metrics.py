"""
Prometheus metrics server for the Live Gateway.
"""

import structlog
from prometheus_client import Counter, Histogram, Gauge, start_http_server

logger = structlog.get_logger(__name__)

# --- Counters ---
EVENTS_RECEIVED = Counter(
    "live_events_received_total",
    "Total raw events received from live sources",
    ["room_id", "event_kind"],
)

EVENTS_DEDUPLICATED = Counter(
    "live_events_deduplicated_total",
    "Total duplicate events dropped",
    ["event_kind", "layer"],
)

EVENTS_DISPATCHED = Counter(
    "live_events_dispatched_total",
    "Total canonical events dispatched to handlers",
    ["event_kind"],
)

HANDLER_FAILURES = Counter(
    "live_handler_failures_total",
    "Total handler invocations that raised",
    ["event_kind"],
)

MALFORMED_EVENTS = Counter(
    "live_malformed_events_total",
    "Total events whose viewer identity could not be resolved",
    ["event_kind"],
)

GIFT_COINS = Counter(
    "live_gift_coins_total",
    "Total coins from counted gifts",
    ["room_id"],
)

# --- Histograms ---
EVENT_PROCESSING_LATENCY = Histogram(
    "live_event_processing_seconds",
    "Time to process an event through the pipeline, dispatch included",
    ["event_kind"],
    buckets=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.5],
)

# --- Gauges ---
DEDUP_CACHE_SIZE = Gauge(
    "live_dedup_cache_size",
    "Current size of the deduplication caches",
    ["room_id", "layer"],
)

CONNECTED_ROOMS = Gauge(
    "live_connected_rooms",
    "Number of rooms with a connected source",
)


class MetricsServer:
    """Prometheus metrics HTTP server."""

    def __init__(self, config: dict):
        self.enabled = config.get("enabled", True)
        self.port = config.get("port", 9090)

    async def start(self):
        if not self.enabled:
            logger.info("metrics_server_disabled")
            return
        start_http_server(self.port)
        logger.info("metrics_server_started", port=self.port)

    async def stop(self):
        pass  # prometheus_client handles cleanup
