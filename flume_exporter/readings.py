"""Flume usage readings module.

This module handles:
- Parsing the query API response into raw readings
- Converting each reading into a time-series point

Query response format:
    {"data": [{"graph": [{"datetime": "2024-01-01 00:00:00", "value": 1.5}, ...]}]}
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Union

DEFAULT_SERIES = "flow"


class ReadingParseError(Exception):
    """Exception raised for readings that cannot be parsed."""
    pass


@dataclass(frozen=True)
class RawReading:
    """A single per-minute reading as returned by the API.

    Attributes:
        datetime: Local civil timestamp of the bucket start
        value: Usage in the bucket (gallons), number or decimal string
    """
    datetime: str
    value: Union[str, int, float]


@dataclass(frozen=True)
class Point:
    """A time-series point ready to be written.

    Attributes:
        series: Measurement name
        value: Usage amount
        timestamp: Seconds since the Unix epoch
    """
    series: str
    value: float
    timestamp: int


def parse_graph(payload: Any) -> List[RawReading]:
    """Extract the graph readings from a query response body.

    Args:
        payload: Decoded JSON response

    Returns:
        List of RawReading in response order

    Raises:
        ReadingParseError: If the response does not have the expected shape
    """
    try:
        graph = payload["data"][0]["graph"]
    except (KeyError, IndexError, TypeError):
        raise ReadingParseError(f"Unexpected query response: {str(payload)[:200]}")

    if not isinstance(graph, list):
        raise ReadingParseError(f"Expected graph list, got {type(graph).__name__}")

    readings = []
    for index, item in enumerate(graph):
        if not isinstance(item, dict) or "datetime" not in item or "value" not in item:
            raise ReadingParseError(f"Reading {index}: missing datetime/value: {item}")
        readings.append(RawReading(datetime=item["datetime"], value=item["value"]))

    return readings


def parse_timestamp(value: str) -> int:
    """Convert a reading timestamp to Unix epoch seconds.

    Naive timestamps are interpreted in the local time zone, which is how
    the query window is expressed to the API.

    Example:
        >>> parse_timestamp("2024-01-01 00:01:00") - parse_timestamp("2024-01-01 00:00:00")
        60
    """
    if not isinstance(value, str):
        raise ReadingParseError(f"Invalid reading datetime: {value!r}")
    try:
        dt = datetime.fromisoformat(value.strip())
    except ValueError:
        raise ReadingParseError(f"Invalid reading datetime: {value!r}")
    return int(dt.timestamp())


def parse_value(value: Union[str, int, float]) -> float:
    """Convert a reading value to float."""
    if isinstance(value, bool) or value is None:
        raise ReadingParseError(f"Invalid reading value: {value!r}")
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ReadingParseError(f"Invalid reading value: {value!r}")

    # InfluxDB cannot store NaN or infinity
    if not math.isfinite(result):
        raise ReadingParseError(f"Non-finite reading value: {value!r}")
    return result


def convert(reading: RawReading, series: str = DEFAULT_SERIES) -> Point:
    """Convert a raw reading into a point.

    Args:
        reading: Reading from the query API
        series: Measurement name to attach

    Returns:
        Point carrying the parsed value and epoch timestamp

    Raises:
        ReadingParseError: If the datetime or value cannot be parsed
    """
    return Point(
        series=series,
        value=parse_value(reading.value),
        timestamp=parse_timestamp(reading.datetime),
    )
