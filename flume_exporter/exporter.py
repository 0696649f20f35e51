"""Prometheus metrics exporter module.

This module handles:
- Defining operational Prometheus gauges for the scrape loop
- Exposing them over HTTP on a configurable port
- Recording the outcome of each ingestion run
"""

import logging
import time
from typing import Optional, Sequence

from prometheus_client import CollectorRegistry, Gauge, REGISTRY, start_http_server

from flume_exporter.readings import Point

# Configure module logger
logger = logging.getLogger(__name__)


class FlumeMetrics:
    """Operational metrics for the Flume exporter daemon.

    Exposes the following metrics:
    - flume_scrape_success: Whether the last scrape succeeded (1=success, 0=failure)
    - flume_scrape_timestamp: Unix timestamp of last scrape
    - flume_scrape_duration_seconds: Duration of last scrape operation
    - flume_readings_written: Points written by the last scrape
    - flume_last_reading_timestamp: Timestamp of the newest reading seen

    Attributes:
        port: HTTP server port (default 9121)
    """

    def __init__(self, port: int = 9121, registry: Optional[CollectorRegistry] = None):
        """Initialize the metrics.

        Args:
            port: Port to run the HTTP server on
            registry: Optional custom registry for testing. If None, uses default REGISTRY.
        """
        self.port = port
        self._registry = registry if registry is not None else REGISTRY
        self._server_started = False

        self._scrape_success = Gauge(
            'flume_scrape_success',
            'Whether the last scrape succeeded (1=success, 0=failure)',
            registry=self._registry
        )

        self._scrape_timestamp = Gauge(
            'flume_scrape_timestamp',
            'Unix timestamp of the last scrape',
            registry=self._registry
        )

        self._scrape_duration = Gauge(
            'flume_scrape_duration_seconds',
            'Duration of the last scrape operation in seconds',
            registry=self._registry
        )

        self._readings_written = Gauge(
            'flume_readings_written',
            'Number of points written by the last scrape',
            registry=self._registry
        )

        self._last_reading_timestamp = Gauge(
            'flume_last_reading_timestamp',
            'Unix timestamp of the newest reading ingested',
            registry=self._registry
        )

    def record_points(self, points: Sequence[Point]) -> None:
        """Record the points produced by a scrape."""
        self._readings_written.set(len(points))
        if points:
            self._last_reading_timestamp.set(max(p.timestamp for p in points))

    def set_scrape_success(self, success: bool, duration: float) -> None:
        """Record the outcome of a scrape.

        Args:
            success: Whether the scrape succeeded
            duration: How long the scrape took in seconds
        """
        self._scrape_success.set(1 if success else 0)
        self._scrape_timestamp.set(time.time())
        self._scrape_duration.set(duration)

    def start(self) -> None:
        """Start the Prometheus HTTP server."""
        if self._server_started:
            logger.warning("Metrics server already started")
            return

        start_http_server(self.port, registry=self._registry)
        self._server_started = True
        logger.info(f"Prometheus metrics available on port {self.port}")
