"""Prometheus metrics for the relay.

Minimum signals to tell a healthy reader from a silent one:
- messages delivered / stale entries skipped / undecodable entries
- subscription restarts (watermark advances)
- faults by kind (completed, query, index_required, connect)
- current watermark and relay state
"""

import logging
from datetime import datetime
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Info, REGISTRY, start_http_server

logger = logging.getLogger(__name__)

# Numeric encoding of RelayState for the state gauge
STATE_CODES = {
    "uninitialized": 0,
    "connecting": 1,
    "ready": 2,
    "faulted": -1,
    "shutting_down": 3,
    "terminated": 4,
}


class RelayMetrics:
    """Relay Prometheus metrics.

    Each instance registers into its own ``CollectorRegistry`` unless one
    is given, so several relays (or tests) can coexist in one process.
    """

    def __init__(self, port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self._port = port
        self._started = False
        self.registry = registry if registry is not None else CollectorRegistry()

        # === Delivery ===
        self.messages_delivered = Counter(
            'relay_messages_delivered_total',
            'Entries emitted to message observers',
            ['room'],
            registry=self.registry,
        )

        self.entries_stale = Counter(
            'relay_entries_stale_total',
            'Entries skipped because they were at or before the watermark',
            ['room'],
            registry=self.registry,
        )

        self.decode_errors = Counter(
            'relay_decode_errors_total',
            'Store documents that could not be decoded into entries',
            ['room'],
            registry=self.registry,
        )

        # === Subscription ===
        self.subscription_restarts = Counter(
            'relay_subscription_restarts_total',
            'Live query restarts after a watermark advance',
            ['room'],
            registry=self.registry,
        )

        self.watermark = Gauge(
            'relay_watermark_seconds',
            'Current watermark as a Unix timestamp',
            ['room'],
            registry=self.registry,
        )

        # === Faults / state ===
        self.faults = Counter(
            'relay_faults_total',
            'Subscription teardowns and connect failures by kind',
            ['kind'],
            registry=self.registry,
        )

        self.relay_state = Gauge(
            'relay_state',
            'Relay state (2=ready, 1=connecting, -1=faulted, 4=terminated)',
            registry=self.registry,
        )

        self.build_info = Info(
            'relay_build',
            'Build information',
            registry=self.registry,
        )

    def observe_watermark(self, room: str, watermark: datetime) -> None:
        self.watermark.labels(room=room).set(watermark.timestamp())

    def observe_state(self, state: str) -> None:
        self.relay_state.set(STATE_CODES.get(state, 0))

    def start_server(self):
        """Start Prometheus HTTP server."""
        if self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
            self._started = True
            logger.info(f"Prometheus metrics server started on port {self._port}")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")

    def set_build_info(self, version: str, instance_id: str, environment: str):
        """Set build information."""
        self.build_info.info({
            'version': version,
            'instance_id': instance_id,
            'environment': environment,
        })


# Singleton
_metrics: Optional[RelayMetrics] = None

def get_metrics(port: int = 8000) -> RelayMetrics:
    global _metrics
    if _metrics is None:
        _metrics = RelayMetrics(port, registry=REGISTRY)
    return _metrics
