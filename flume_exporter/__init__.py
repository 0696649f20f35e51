"""Flume InfluxDB Exporter package.

A scheduled agent that authenticates with the Flume water metering API,
downloads per-minute usage readings, and writes them to InfluxDB with their
historical timestamps.
"""

__version__ = "0.1.0"
