"""InfluxDB exporter module.

This module handles:
- Pushing converted Flume readings to InfluxDB with their actual timestamps
- Each per-minute reading is stored at its bucket start time
- Re-writing an overlapping window overwrites identical points in place
"""

import logging
from typing import Dict, List, Optional, Sequence

from influxdb_client import InfluxDBClient, Point as InfluxPoint, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from flume_exporter.readings import Point

# Configure module logger
logger = logging.getLogger(__name__)


class InfluxDBExporter:
    """InfluxDB sink for Flume usage points.

    Points are keyed by measurement, tags and timestamp, so writing the same
    reading twice leaves exactly one point per timestamp.

    Attributes:
        url: InfluxDB server URL
        token: InfluxDB API token
        org: InfluxDB organization
        bucket: InfluxDB bucket name
        tags: Tags attached to every point (e.g. device_id)
    """

    def __init__(
        self,
        url: str = "http://localhost:8086",
        token: str = "",
        org: str = "flume",
        bucket: str = "flume",
        tags: Optional[Dict[str, str]] = None,
    ):
        """Initialize the InfluxDB exporter.

        Args:
            url: InfluxDB server URL
            token: InfluxDB API token (required for writes)
            org: InfluxDB organization name
            bucket: InfluxDB bucket name
            tags: Tags attached to every point
        """
        self.url = url
        self.token = token
        self.org = org
        self.bucket = bucket
        self.tags = dict(tags or {})
        self._client: Optional[InfluxDBClient] = None
        self._write_api = None

    def connect(self) -> bool:
        """Connect to InfluxDB.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self._client = InfluxDBClient(
                url=self.url,
                token=self.token,
                org=self.org
            )
            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)

            health = self._client.health()
            if health.status == "pass":
                logger.info(f"Connected to InfluxDB at {self.url}")
                return True
            else:
                logger.error(f"InfluxDB health check failed: {health.message}")
                return False
        except Exception as e:
            logger.error(f"Failed to connect to InfluxDB: {e}")
            return False

    def close(self) -> None:
        """Close the InfluxDB connection."""
        if self._client:
            self._client.close()
            self._client = None
            self._write_api = None
            logger.info("InfluxDB connection closed")

    def to_record(self, point: Point, tags: Optional[Dict[str, str]] = None) -> InfluxPoint:
        """Build the InfluxDB point for a converted reading."""
        record = InfluxPoint(point.series)
        for key, value in sorted({**self.tags, **(tags or {})}.items()):
            record = record.tag(key, value)
        return record.field("value", point.value).time(point.timestamp, WritePrecision.S)

    def write_points(self, points: Sequence[Point], tags: Optional[Dict[str, str]] = None) -> int:
        """Write a batch of points to InfluxDB.

        Args:
            points: Converted readings
            tags: Extra tags for this batch, merged over the default tags

        Returns:
            Number of points written

        Raises:
            RuntimeError: If not connected to InfluxDB
        """
        if not self._write_api:
            raise RuntimeError("Not connected to InfluxDB. Call connect() first.")

        if not points:
            logger.warning("No points to write")
            return 0

        records: List[InfluxPoint] = [self.to_record(point, tags) for point in points]

        try:
            self._write_api.write(bucket=self.bucket, org=self.org, record=records)
            logger.info(f"Wrote {len(records)} points to InfluxDB bucket {self.bucket}")
        except Exception as e:
            logger.error(f"Failed to write to InfluxDB: {e}")
            raise

        return len(records)
