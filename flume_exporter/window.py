"""Query window module.

Computes the [since, until) range requested from the Flume query API. The
range ends one minute before "now" (minus any offset) so the upstream has
finished aggregating the last bucket, and reaches back a fixed lookback span
so that missed runs are caught up on the next one.
"""

from dataclasses import dataclass
from datetime import datetime

# Flume expects naive local civil time at second precision
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Catch-up span: an 18 hour window tolerates missed runs without gaps
DEFAULT_LOOKBACK_HOURS = 18

SETTLE_SECONDS = 60


@dataclass(frozen=True)
class QueryWindow:
    """Immutable query time range.

    Attributes:
        since: Inclusive start (local time, second precision)
        until: End (local time, second precision)
    """
    since: datetime
    until: datetime

    def __post_init__(self):
        # Compare instants: naive local times repeat when clocks fall back
        if not self.since.timestamp() < self.until.timestamp():
            raise ValueError(f"Window start {self.since} must be before end {self.until}")

    @property
    def since_datetime(self) -> str:
        return self.since.strftime(DATETIME_FORMAT)

    @property
    def until_datetime(self) -> str:
        return self.until.strftime(DATETIME_FORMAT)


def build_window(
    now: datetime,
    offset_hours: int = 0,
    lookback_hours: int = DEFAULT_LOOKBACK_HOURS,
) -> QueryWindow:
    """Build the query window for a run.

    Args:
        now: Current local time
        offset_hours: Shift the whole window this many hours into the past
        lookback_hours: Length of the window in hours

    Returns:
        QueryWindow with until = now - offset - 60s and
        since = now - (offset + lookback) + 1s

    Raises:
        ValueError: If offset is negative or lookback is not positive

    Example:
        >>> w = build_window(datetime(2024, 1, 1, 12, 0, 0), 0, 1)
        >>> w.since_datetime, w.until_datetime
        ('2024-01-01 11:00:01', '2024-01-01 11:59:00')
    """
    if offset_hours < 0:
        raise ValueError(f"offset_hours must be >= 0, got {offset_hours}")
    if lookback_hours < 1:
        raise ValueError(f"lookback_hours must be >= 1, got {lookback_hours}")

    # Offsets are elapsed seconds, so a DST change inside the window keeps its length
    now_ts = int(now.timestamp())
    until = datetime.fromtimestamp(now_ts - offset_hours * 3600 - SETTLE_SECONDS)
    since = datetime.fromtimestamp(now_ts - (offset_hours + lookback_hours) * 3600 + 1)
    return QueryWindow(since=since, until=until)
